from __future__ import annotations

import asyncio
import json
import os
import ssl
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import certifi

USER_AGENT = "FyersPowerDesk/0.1 (+local)"


class UpstreamError(RuntimeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


@dataclass(frozen=True)
class UpstreamResponse:
    status: int
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        # "no_data" is a successful call with an empty result (e.g. history on a holiday).
        return self.status < 400 and str(self.payload.get("s") or "").lower() in {"ok", "no_data"}

    @property
    def message(self) -> str:
        p = self.payload
        msg = p.get("message") or p.get("msg") or p.get("s")
        if msg:
            return str(msg)
        return f"HTTP {self.status}"


# Same call shape as request_json(method, url, *, headers=, body=, timeout=).
Transport = Callable[..., Awaitable[UpstreamResponse]]


def _build_https_context() -> ssl.SSLContext | None:
    ca_bundle = (os.getenv("FYERS_CA_BUNDLE") or "").strip()
    if not ca_bundle:
        ca_bundle = (os.getenv("SSL_CERT_FILE") or os.getenv("REQUESTS_CA_BUNDLE") or "").strip()
    if not ca_bundle:
        ca_bundle = certifi.where()
    try:
        return ssl.create_default_context(cafile=ca_bundle)
    except (OSError, ssl.SSLError):
        return None


_https_context = _build_https_context()


def _urlopen(req: urllib.request.Request, *, timeout: float):
    if _https_context is not None and str(getattr(req, "full_url", "")).startswith("https://"):
        return urllib.request.urlopen(req, timeout=timeout, context=_https_context)
    return urllib.request.urlopen(req, timeout=timeout)


def _decode_payload(raw: bytes) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return {"s": "error", "message": "invalid_json_from_upstream"}
    if isinstance(data, dict):
        return data
    return {"s": "ok", "d": data}


def _request_json_blocking(
    method: str,
    url: str,
    headers: dict[str, str] | None,
    body: dict[str, Any] | None,
    timeout: float,
) -> UpstreamResponse:
    hdrs = {"Accept": "application/json", "User-Agent": USER_AGENT}
    hdrs.update(headers or {})
    data = None
    if body is not None:
        data = json.dumps(body).encode("utf-8")
        hdrs["Content-Type"] = "application/json"
    req = urllib.request.Request(url, data=data, headers=hdrs, method=method.upper())
    try:
        with _urlopen(req, timeout=timeout) as resp:
            return UpstreamResponse(status=int(resp.status), payload=_decode_payload(resp.read()))
    except urllib.error.HTTPError as exc:
        # FYERS reports most failures (bad token, bad symbol) as JSON bodies on 4xx.
        try:
            raw = exc.read()
        except OSError:
            raw = b""
        return UpstreamResponse(status=int(exc.code), payload=_decode_payload(raw))
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        reason = getattr(exc, "reason", None) or exc
        raise UpstreamError(f"network_error: {reason}") from exc


async def request_json(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    body: dict[str, Any] | None = None,
    timeout: float = 15.0,
) -> UpstreamResponse:
    return await asyncio.to_thread(_request_json_blocking, method, url, headers, body, timeout)


def auth_headers(app_id: str, access_token: str) -> dict[str, str]:
    return {"Authorization": f"{app_id}:{access_token}"}


def quotes_url(data_host: str, symbols: list[str]) -> str:
    qs = urllib.parse.urlencode({"symbols": ",".join(symbols)})
    return f"{data_host.rstrip('/')}/data/quotes?{qs}"


def depth_url(data_host: str, symbol: str) -> str:
    qs = urllib.parse.urlencode({"symbol": symbol, "ot_flag": "1"})
    return f"{data_host.rstrip('/')}/data/depth?{qs}"


def history_url(data_host: str, params: dict[str, str]) -> str:
    return f"{data_host.rstrip('/')}/data/history?{urllib.parse.urlencode(params)}"


def refresh_token_url(token_host: str) -> str:
    return f"{token_host.rstrip('/')}/api/v3/validate-refresh-token"
