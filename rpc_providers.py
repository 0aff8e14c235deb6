"""
JSON-RPC providers under test, and the pool that vets them.

Every provider gets its own requests session. A provider is only used by one
thread at a time: the identity check during pool build, then its worker.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable
from urllib.parse import urlsplit

import requests

from rpc_types import EndpointError, FailureKind, Outcome, RpcCall, canonical_json

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120
DEFAULT_CHAIN_METHOD = "eth_chainId"
IDENTITY_REQUEST_ID = 0


@dataclass(frozen=True)
class Endpoint:
    raw: str
    url: str


def parse_endpoint(raw: str) -> Endpoint:
    """Validate an endpoint address. Only http(s) URLs with a host are accepted."""
    address = raw.strip()
    try:
        parts = urlsplit(address)
    except ValueError as e:
        raise EndpointError(f"{raw!r}: {e}") from e
    if parts.scheme not in ("http", "https"):
        raise EndpointError(f"{raw!r}: scheme must be http or https")
    if not parts.hostname:
        raise EndpointError(f"{raw!r}: missing host")
    try:
        parts.port
    except ValueError as e:
        raise EndpointError(f"{raw!r}: {e}") from e
    return Endpoint(raw=raw, url=address)


class Provider:
    """One endpoint plus the session used to call it."""

    def __init__(
        self,
        endpoint: Endpoint,
        session: requests.Session | None = None,
        headers: dict[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.endpoint = endpoint
        self.session = session if session is not None else requests.Session()
        if headers:
            self.session.headers.update(headers)
        self.timeout = timeout
        self.identity: str | None = None

    @property
    def label(self) -> str:
        return self.endpoint.raw

    def __repr__(self) -> str:
        return f"Provider({self.label!r})"

    def request(self, call: RpcCall, request_id: int) -> tuple[Outcome, float]:
        """
        Send one call and classify what came back.

        Never raises for a per-call failure; those are returned as Outcomes.
        """
        start = time.perf_counter()
        outcome = self._send(call, request_id)
        elapsed = time.perf_counter() - start
        if not outcome.ok:
            logger.debug("%s %s #%d failed: %s", self.label, call.method, request_id, outcome.detail)
        return outcome, elapsed

    def _send(self, call: RpcCall, request_id: int) -> Outcome:
        try:
            resp = self.session.post(self.endpoint.url, json=call.payload(request_id), timeout=self.timeout)
        except requests.RequestException as e:
            return Outcome.fail(FailureKind.TRANSPORT, f"transport error: {type(e).__name__}", str(e))

        try:
            resp.raise_for_status()
        except requests.HTTPError as e:
            return Outcome.fail(FailureKind.STATUS, f"HTTP {resp.status_code}", f"{e}: {resp.text[:200]}")

        try:
            body = resp.json()
        except ValueError:
            return Outcome.fail(FailureKind.MALFORMED, "malformed response: not JSON", resp.text[:200])

        if not isinstance(body, dict):
            return Outcome.fail(
                FailureKind.MALFORMED,
                f"malformed response: expected object, got {type(body).__name__}",
                resp.text[:200],
            )
        if body.get("id") != request_id:
            return Outcome.fail(
                FailureKind.MALFORMED,
                "malformed response: id does not match request",
                f"sent id {request_id}, got {body.get('id')!r}",
            )
        if "error" in body and body["error"] is not None:
            return Outcome.fail(FailureKind.RPC_ERROR, canonical_json(body["error"]))
        if "result" not in body:
            return Outcome.fail(FailureKind.MALFORMED, "malformed response: no result or error", resp.text[:200])
        return Outcome.success(body["result"])

    def identify(self, method: str = DEFAULT_CHAIN_METHOD) -> Outcome:
        """Ask the provider which network it serves."""
        outcome, _ = self.request(RpcCall(method, []), IDENTITY_REQUEST_ID)
        if outcome.ok:
            self.identity = outcome.body()
        return outcome

    def close(self) -> None:
        self.session.close()


@dataclass
class PoolResult:
    providers: list[Provider] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def comparable(self) -> bool:
        return len(self.providers) >= 2

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)


def build_pool(
    addresses: list[str],
    chain_method: str = DEFAULT_CHAIN_METHOD,
    headers: dict[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT,
    session_factory: Callable[[], requests.Session] | None = None,
) -> PoolResult:
    """
    Build providers for the given addresses and drop the ones we can't compare.

    Bad addresses, unreachable providers and providers on a different network
    than the first identified one are skipped with a warning. Having fewer
    than two providers left is reported through ``PoolResult.comparable``,
    not raised.
    """
    pool = PoolResult()
    candidates = []
    for address in addresses:
        try:
            endpoint = parse_endpoint(address)
        except EndpointError as e:
            pool._warn(f"Skipping endpoint: {e}")
            continue
        session = session_factory() if session_factory else None
        candidates.append(Provider(endpoint, session=session, headers=headers, timeout=timeout))

    if not candidates:
        return pool

    # Identify in parallel, but judge in address order so the baseline is stable
    with ThreadPoolExecutor(max_workers=len(candidates)) as executor:
        futures = [executor.submit(p.identify, chain_method) for p in candidates]
        outcomes = [f.result() for f in futures]

    reference = None
    for provider, outcome in zip(candidates, outcomes):
        if not outcome.ok:
            pool._warn(f"Skipping {provider.label}: {chain_method} failed ({outcome.detail})")
            provider.close()
            continue
        if reference is None:
            reference = provider
        elif provider.identity != reference.identity:
            pool._warn(
                f"Skipping {provider.label}: {chain_method} is {provider.identity}, "
                f"{reference.label} reports {reference.identity}"
            )
            provider.close()
            continue
        logger.info("%s: %s %s", provider.label, chain_method, provider.identity)
        pool.providers.append(provider)

    if not pool.comparable:
        pool._warn(f"Only {len(pool.providers)} usable provider(s), nothing to compare against")
    return pool
