import json
import threading
from typing import Any, Callable

import requests

from rpc_providers import Endpoint, Provider


def make_response(status_code: int = 200, payload: Any = None, text: str | None = None) -> requests.Response:
    resp = requests.Response()
    resp.status_code = status_code
    resp.reason = "OK" if status_code < 400 else "Error"
    resp.url = "http://fake"
    resp.encoding = "utf-8"
    body = text if text is not None else json.dumps(payload)
    resp._content = body.encode()
    return resp


def result(request: dict, value: Any) -> requests.Response:
    return make_response(payload={"jsonrpc": "2.0", "id": request["id"], "result": value})


def error(request: dict, code: int, message: str) -> requests.Response:
    return make_response(
        payload={"jsonrpc": "2.0", "id": request["id"], "error": {"code": code, "message": message}}
    )


class FakeSession:
    """Stands in for requests.Session; ``handler`` maps a request payload to a Response."""

    def __init__(self, handler: Callable[[dict], requests.Response]):
        self.handler = handler
        self.headers: dict[str, str] = {}
        self.calls: list[dict] = []
        self.timeouts: list[float | None] = []
        self.closed = False
        self._lock = threading.Lock()

    def post(self, url: str, json: dict | None = None, timeout: float | None = None, **kwargs) -> requests.Response:
        with self._lock:
            self.calls.append(json)
            self.timeouts.append(timeout)
        return self.handler(json)

    def close(self) -> None:
        self.closed = True


def node(chain_id: str = "0x1", answers: dict[str, Any] | None = None, overrides: dict[int, Any] | None = None):
    """
    Handler for a well-behaved node.

    ``answers`` maps method to result, ``overrides`` maps request id to a
    result (or a callable taking the request) that wins over ``answers``.
    """
    answers = answers or {}
    overrides = overrides or {}

    def handler(request: dict) -> requests.Response:
        if request["method"] == "eth_chainId":
            return result(request, chain_id)
        if request["id"] in overrides:
            override = overrides[request["id"]]
            if callable(override):
                return override(request)
            return result(request, override)
        if request["method"] in answers:
            return result(request, answers[request["method"]])
        return result(request, {"method": request["method"], "params": request.get("params")})

    return handler


def make_provider(handler: Callable[[dict], requests.Response], url: str = "http://node-a:8545") -> Provider:
    return Provider(Endpoint(url, url), session=FakeSession(handler))


def lines_of(*requests_: Any) -> list[str]:
    return [r if isinstance(r, str) else json.dumps(r) for r in requests_]
