from __future__ import annotations

import asyncio
import base64
import json
import time
from dataclasses import dataclass, field
from typing import Any

import pytest
from fastapi.websockets import WebSocketState

from fyers_auth import FyersConfig
from fyers_client import UpstreamResponse


def make_jwt(claims: dict[str, Any]) -> str:
    def seg(obj: dict[str, Any]) -> str:
        raw = json.dumps(obj).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    return f"{seg({'alg': 'HS256', 'typ': 'JWT'})}.{seg(claims)}.signature"


def jwt_expiring_in(seconds: float) -> str:
    return make_jwt({"sub": "XA0001", "exp": int(time.time() + seconds)})


def ok_grant(access_token: str, refresh_token: str | None = None) -> UpstreamResponse:
    payload: dict[str, Any] = {"s": "ok", "code": 200, "access_token": access_token}
    if refresh_token:
        payload["refresh_token"] = refresh_token
    return UpstreamResponse(200, payload)


def quote_item(symbol: str, lp: float, chp: float = 0.0, tt: int = 1_700_000_000) -> dict[str, Any]:
    return {"n": symbol, "s": "ok", "v": {"symbol": symbol, "lp": lp, "chp": chp, "tt": tt}}


def quotes_ok(*items: dict[str, Any]) -> UpstreamResponse:
    return UpstreamResponse(200, {"s": "ok", "code": 200, "d": list(items)})


INVALID_TOKEN = UpstreamResponse(401, {"s": "error", "code": -16, "message": "Invalid token"})


@dataclass
class Call:
    method: str
    url: str
    headers: dict[str, str]
    body: dict[str, Any] | None


@dataclass
class _Route:
    method: str
    fragment: str
    responses: list[Any] = field(default_factory=list)

    def next(self) -> Any:
        # The last scripted response repeats.
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class FakeUpstream:
    """Scripted stand-in for fyers_client.request_json."""

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self._routes: list[_Route] = []

    def add(self, method: str, fragment: str, *responses: Any) -> "FakeUpstream":
        self._routes.append(_Route(method.upper(), fragment, list(responses)))
        return self

    def count(self, fragment: str) -> int:
        return sum(1 for c in self.calls if fragment in c.url)

    def calls_to(self, fragment: str) -> list[Call]:
        return [c for c in self.calls if fragment in c.url]

    async def __call__(self, method, url, *, headers=None, body=None, timeout=None):
        self.calls.append(Call(method.upper(), url, dict(headers or {}), body))
        await asyncio.sleep(0)
        for route in self._routes:
            if route.method == method.upper() and route.fragment in url:
                resp = route.next()
                if isinstance(resp, BaseException):
                    raise resp
                return resp
        raise AssertionError(f"unexpected upstream call {method} {url}")


class FakeSocket:
    def __init__(self, state: WebSocketState = WebSocketState.CONNECTED) -> None:
        self.sent: list[str] = []
        self.client_state = state
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, text: str) -> None:
        self.sent.append(text)

    def messages(self) -> list[dict[str, Any]]:
        return [json.loads(s) for s in self.sent]


@pytest.fixture()
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture()
def fyers_cfg() -> FyersConfig:
    return FyersConfig(
        app_id="APP-100",
        secret_id="secret-xyz",
        redirect_uri="http://localhost:3000/auth/callback",
        pin="1234",
    )
