"""Shared types for sending one request stream to many JSON-RPC providers."""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any


class VersusError(Exception):
    """Base class for errors that stop a comparison run or a pool entry."""


class EndpointError(VersusError):
    """An endpoint address is not a usable http(s) URL."""


class MalformedRequestError(VersusError):
    """An input line is not a JSON-RPC call or a batch of calls."""


class InconsistentRequestError(VersusError):
    """The same sequence id maps to different requests on two providers."""

    def __init__(self, seq_id: int, provider: str, expected: "Envelope", got: "Envelope"):
        self.seq_id = seq_id
        self.provider = provider
        self.expected = expected
        self.got = got
        super().__init__(
            f"request {seq_id} on {provider} was {got.describe()}, "
            f"baseline saw {expected.describe()}"
        )


def canonical_json(value: Any) -> str:
    """Serialize a JSON value so structurally equal values give equal strings."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


@dataclass(frozen=True)
class RpcCall:
    method: str
    params: Any = None

    def payload(self, request_id: int) -> dict:
        """Build the JSON-RPC 2.0 request object for this call."""
        payload = {"jsonrpc": "2.0", "method": self.method, "id": request_id}
        if self.params is not None:
            payload["params"] = self.params
        return payload


class EnvelopeKind(str, Enum):
    SINGLE = "single"
    BATCH = "batch"


@dataclass(frozen=True)
class Envelope:
    """One input line: a single call, or an ordered batch sharing one id."""

    kind: EnvelopeKind
    calls: tuple[RpcCall, ...]

    @classmethod
    def single(cls, call: RpcCall) -> "Envelope":
        return cls(EnvelopeKind.SINGLE, (call,))

    @classmethod
    def batch(cls, calls: list[RpcCall]) -> "Envelope":
        return cls(EnvelopeKind.BATCH, tuple(calls))

    @property
    def is_batch(self) -> bool:
        return self.kind is EnvelopeKind.BATCH

    def describe(self) -> str:
        if self.is_batch:
            return f"batch[{', '.join(c.method for c in self.calls)}]"
        return self.calls[0].method

    def to_dict(self) -> dict | list:
        calls = [{"method": c.method, "params": c.params} for c in self.calls]
        return calls if self.is_batch else calls[0]


def _parse_call(obj: Any) -> RpcCall:
    if not isinstance(obj, dict):
        raise MalformedRequestError(f"expected a JSON object, got {type(obj).__name__}")
    method = obj.get("method")
    if not isinstance(method, str) or not method:
        raise MalformedRequestError("missing or non-string 'method'")
    return RpcCall(method, obj.get("params"))


def parse_envelope(line: str) -> Envelope:
    """
    Parse one input line into an Envelope.

    A JSON object is a single call and a non-empty JSON array of objects is a
    batch. The shape is decided here from the top-level JSON type, never from
    the members, so a batch can't be mistaken for a params list.
    """
    try:
        data = json.loads(line)
    except ValueError as e:
        raise MalformedRequestError(f"invalid JSON: {e}") from e

    if isinstance(data, list):
        if not data:
            raise MalformedRequestError("empty batch")
        return Envelope.batch([_parse_call(item) for item in data])
    return Envelope.single(_parse_call(data))


class FailureKind(str, Enum):
    TRANSPORT = "transport"
    STATUS = "status"
    MALFORMED = "malformed"
    RPC_ERROR = "rpc_error"


@dataclass(frozen=True)
class Outcome:
    """
    Result of one call against one provider.

    Failures carry two strings: ``message`` is provider-neutral and is what
    gets compared across providers, ``detail`` is for humans only.
    """

    value: Any = None
    failure: FailureKind | None = None
    message: str = ""
    detail: str = ""

    @classmethod
    def success(cls, value: Any) -> "Outcome":
        return cls(value=value)

    @classmethod
    def fail(cls, kind: FailureKind, message: str, detail: str = "") -> "Outcome":
        return cls(failure=kind, message=message, detail=detail or message)

    @property
    def ok(self) -> bool:
        return self.failure is None

    def body(self) -> str:
        return canonical_json(self.value)

    def same_as(self, other: "Outcome") -> bool:
        """Structural equality for successes, message equality for failures."""
        if self.ok and other.ok:
            return self.body() == other.body()
        if self.ok or other.ok:
            return False
        return self.message == other.message

    def summary(self, max_len: int = 100) -> str:
        text = self.body() if self.ok else f"{self.failure.value}: {self.message}"
        if len(text) > max_len:
            return text[:max_len] + "..."
        return text

    def to_dict(self) -> dict:
        if self.ok:
            return {"result": self.value}
        return {"failure": self.failure.value, "message": self.message, "detail": self.detail}


@dataclass(frozen=True)
class Record:
    """What one provider did with one envelope."""

    envelope: Envelope
    outcomes: tuple[Outcome, ...]
    elapsed: float

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    def body(self) -> str:
        """Canonical body of the whole record; batches compare as one unit."""
        if self.envelope.is_batch:
            return canonical_json([o.value for o in self.outcomes])
        return self.outcomes[0].body()

    def error_messages(self) -> list[str]:
        return [o.message for o in self.outcomes if not o.ok]
