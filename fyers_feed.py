from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable, Iterable

from fastapi.websockets import WebSocketState

from fyers_auth import CredentialRefresher, FyersConfig, TokenStore
from fyers_client import (
    Transport,
    UpstreamError,
    UpstreamResponse,
    auth_headers,
    depth_url,
    history_url,
    quotes_url,
    request_json,
)
from fyers_market import (
    STATUS_ERROR,
    STATUS_NO_DATA,
    STATUS_NO_KEY,
    STATUS_OK,
    WATCHLIST,
    SymbolStatusRegistry,
    build_history_request,
    company_meta,
    detail_from_cached,
    find_depth_node,
    normalize_detail_quote,
    normalize_history,
    normalize_quote,
    normalize_trade,
)

MAX_ATTEMPTS = 2  # initial call + one retry after a forced refresh
AUTH_ERROR_MARKERS = ("token", "auth", "unauthorized", "invalid", "expired")


@dataclass
class DashboardContext:
    """Process-wide live state. One instance per app; tests build their own."""

    cfg: FyersConfig
    tokens: TokenStore
    refresher: CredentialRefresher
    transport: Transport = request_json
    watchlist: list[str] = field(default_factory=lambda: list(WATCHLIST))
    quotes: dict[str, dict[str, Any]] = field(default_factory=dict)
    statuses: SymbolStatusRegistry = field(default_factory=SymbolStatusRegistry)


def build_context(
    cfg: FyersConfig,
    *,
    transport: Transport = request_json,
    watchlist: Iterable[str] | None = None,
) -> DashboardContext:
    tokens = TokenStore(cfg.access_token, cfg.refresh_token)
    return DashboardContext(
        cfg=cfg,
        tokens=tokens,
        refresher=CredentialRefresher(cfg, tokens, transport),
        transport=transport,
        watchlist=list(watchlist) if watchlist is not None else list(WATCHLIST),
    )


def is_auth_error(message: str | None) -> bool:
    text = str(message or "").lower()
    return any(marker in text for marker in AUTH_ERROR_MARKERS)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def _items(resp: UpstreamResponse) -> list[Any]:
    data = resp.payload.get("d")
    return data if isinstance(data, list) else []


async def ensure_access_token(ctx: DashboardContext, *, allow_refresh: bool = True) -> str:
    """Return a usable access token, refreshing first when it is missing or about to lapse."""
    tokens = ctx.tokens
    if allow_refresh and ctx.refresher.enabled and tokens.refresh_token:
        if not tokens.access_token:
            await ctx.refresher.refresh()
        elif tokens.access_token_expires_soon(ctx.cfg.refresh_lead_s):
            # Best effort: an older token may still be accepted upstream.
            await ctx.refresher.refresh()
    if not ctx.cfg.app_id:
        return ""
    return tokens.access_token


def _no_key_message(ctx: DashboardContext) -> str:
    if not ctx.cfg.app_id:
        return "FYERS_APP_ID not set"
    return "No FYERS access token; complete login at /auth/start"


class QuoteFetcher:
    def __init__(self, ctx: DashboardContext) -> None:
        self._ctx = ctx

    async def fetch(self, symbols: Iterable[str]) -> list[dict[str, Any]]:
        """Fetch streaming quotes for ``symbols``. Never raises; failures land in the status registry."""
        ctx = self._ctx
        symbols = list(symbols)
        if not symbols:
            return []

        for attempt in range(MAX_ATTEMPTS):
            retried = attempt > 0
            token = await ensure_access_token(ctx, allow_refresh=not retried)
            if not token:
                ctx.statuses.set_many(symbols, STATUS_NO_KEY, _no_key_message(ctx))
                return []

            try:
                resp = await ctx.transport(
                    "GET",
                    quotes_url(ctx.cfg.data_host, symbols),
                    headers=auth_headers(ctx.cfg.app_id, token),
                    timeout=ctx.cfg.http_timeout_s,
                )
            except Exception as exc:
                message = str(exc) or repr(exc)
                if not retried and ctx.refresher.enabled and is_auth_error(message):
                    print(f"[poll] quote fetch failed ({message}); refreshing token and retrying")
                    await ctx.refresher.refresh()
                    continue
                print(f"[poll] quote fetch error: {message}")
                ctx.statuses.set_many(symbols, STATUS_ERROR, message)
                return []

            items = _items(resp)
            if not resp.ok and not items:
                message = resp.message
                if not retried and ctx.refresher.enabled and is_auth_error(message):
                    print(f"[poll] upstream rejected quotes ({message}); refreshing token and retrying")
                    await ctx.refresher.refresh()
                    continue
                print(f"[poll] upstream error: {message}")
                ctx.statuses.set_many(symbols, STATUS_ERROR, message)
                return []

            return self._collect(symbols, items)
        return []

    def _collect(self, symbols: list[str], items: list[Any]) -> list[dict[str, Any]]:
        statuses = self._ctx.statuses
        seen: set[str] = set()
        out: list[dict[str, Any]] = []
        for item in items:
            quote = normalize_quote(item)
            if quote is None:
                continue
            seen.add(quote["symbol"])
            out.append(quote)
            statuses.set(quote["symbol"], STATUS_OK, "Quote available")
        for symbol in symbols:
            if symbol not in seen:
                statuses.set(symbol, STATUS_NO_DATA, "No quote data returned")
        return out


async def call_with_auth_retry(
    ctx: DashboardContext,
    label: str,
    call: Callable[[str], Awaitable[UpstreamResponse]],
) -> UpstreamResponse:
    """Run ``call(access_token)``; on an auth-shaped failure refresh once and run it again.

    Raises UpstreamError when the call still fails.
    """
    message = f"{label}_failed"
    status: int | None = None
    for attempt in range(MAX_ATTEMPTS):
        try:
            resp = await call(ctx.tokens.access_token)
        except Exception as exc:
            message, status = str(exc) or repr(exc), getattr(exc, "status", None)
        else:
            if resp.ok:
                return resp
            message, status = resp.message, resp.status
        if attempt + 1 < MAX_ATTEMPTS and ctx.refresher.enabled and is_auth_error(message):
            print(f"[company] {label} failed ({message}); refreshing token and retrying")
            await ctx.refresher.refresh()
            continue
        break
    raise UpstreamError(message, status)


class QuoteBroadcaster:
    """Fans the quote snapshot out to connected push-channel subscribers."""

    def __init__(self, ctx: DashboardContext) -> None:
        self._ctx = ctx
        self._clients: set[Any] = set()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def hello_message(self) -> str:
        return json.dumps({"type": "hello", "symbols": list(self._ctx.watchlist)})

    def snapshot_message(self) -> str:
        return json.dumps({"type": "quotes", "data": list(self._ctx.quotes.values())})

    async def connect(self, ws: Any) -> None:
        await ws.send_text(self.hello_message())
        # Registered before the snapshot so a broadcast during that send still reaches it.
        self._clients.add(ws)
        try:
            await ws.send_text(self.snapshot_message())
        except Exception:
            self._clients.discard(ws)
            raise

    def disconnect(self, ws: Any) -> None:
        self._clients.discard(ws)

    async def broadcast(self) -> int:
        message = self.snapshot_message()
        sent = 0
        for ws in list(self._clients):
            if not _is_open(ws):
                self._clients.discard(ws)
                continue
            try:
                await ws.send_text(message)
                sent += 1
            except Exception as exc:
                print(f"[ws] dropping subscriber: {exc!r}")
                self._clients.discard(ws)
        return sent


def _is_open(ws: Any) -> bool:
    return (
        getattr(ws, "client_state", None) == WebSocketState.CONNECTED
        and getattr(ws, "application_state", None) == WebSocketState.CONNECTED
    )


class QuotePoller:
    def __init__(
        self,
        ctx: DashboardContext,
        fetcher: QuoteFetcher,
        broadcaster: QuoteBroadcaster,
        interval_s: float = 12.0,
    ) -> None:
        self._ctx = ctx
        self._fetcher = fetcher
        self._broadcaster = broadcaster
        self._interval_s = max(0.5, float(interval_s))
        self._task: asyncio.Task | None = None
        self._adhoc: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.running:
            return False
        print(f"[poll] starting FYERS polling every {self._interval_s:g}s")
        self._task = asyncio.create_task(self._run())
        return True

    def trigger(self) -> asyncio.Task:
        """Schedule one out-of-band tick (e.g. right after login)."""
        task = asyncio.create_task(self.tick())
        self._adhoc.add(task)
        task.add_done_callback(self._adhoc.discard)
        return task

    async def stop(self) -> None:
        tasks = [t for t in (self._task, *self._adhoc) if t is not None]
        self._task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while True:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                print(f"[poll] tick failed: {exc!r}")
            await asyncio.sleep(self._interval_s)

    async def tick(self) -> int:
        data = await self._fetcher.fetch(self._ctx.watchlist)
        if not data:
            return 0
        # No await between the upserts, so subscribers never see half a tick.
        for quote in data:
            self._ctx.quotes[quote["symbol"]] = quote
        return await self._broadcaster.broadcast()


def _get(ctx: DashboardContext, url: str, token: str) -> Awaitable[UpstreamResponse]:
    return ctx.transport("GET", url, headers=auth_headers(ctx.cfg.app_id, token), timeout=ctx.cfg.http_timeout_s)


def _pick_detail_quote(resp: UpstreamResponse, symbol: str) -> dict[str, Any] | None:
    fallback = None
    for item in _items(resp):
        quote = normalize_detail_quote(item)
        if quote is None:
            continue
        if quote["symbol"] == symbol:
            return quote
        fallback = fallback or quote
    return fallback


_ENRICH_FROM_TRADE = ("open", "high", "low", "previousClose", "volume", "upperCircuit", "lowerCircuit")


async def fetch_company_detail(ctx: DashboardContext, symbol: str) -> tuple[int, dict[str, Any]]:
    company = company_meta(symbol)
    cached = ctx.quotes.get(symbol)

    token = await ensure_access_token(ctx)
    if not token:
        quote = None
        if cached:
            chp = cached.get("changePercent")
            quote = {
                "symbol": symbol,
                "price": cached.get("price"),
                "changePercent": chp * 100 if isinstance(chp, (int, float)) else None,
                "timestamp": cached.get("timestamp"),
            }
        warning = "FYERS credentials unavailable; " + (
            "showing last cached quote" if cached else "complete login at /auth/start"
        )
        return 503, {
            "symbol": symbol,
            "company": company,
            "quote": quote,
            "trade": None,
            "availability": {"quote": "unavailable", "depth": "unavailable"},
            "warnings": [warning],
            "warning": warning,
            "fetchedAt": _now_iso(),
        }

    host = ctx.cfg.data_host
    quote_res, depth_res = await asyncio.gather(
        call_with_auth_retry(ctx, "quote", lambda tok: _get(ctx, quotes_url(host, [symbol]), tok)),
        call_with_auth_retry(ctx, "depth", lambda tok: _get(ctx, depth_url(host, symbol), tok)),
        return_exceptions=True,
    )
    for res in (quote_res, depth_res):
        if isinstance(res, BaseException) and not isinstance(res, Exception):
            raise res

    warnings: list[str] = []
    availability: dict[str, str] = {}

    quote = None
    if isinstance(quote_res, Exception):
        availability["quote"] = "error"
        warnings.append(f"Live quote unavailable: {quote_res}")
        ctx.statuses.set(symbol, STATUS_ERROR, str(quote_res))
    else:
        quote = _pick_detail_quote(quote_res, symbol)
        availability["quote"] = "ok" if quote else "error"
        if quote:
            ctx.statuses.set(symbol, STATUS_OK, "Quote available")
        else:
            warnings.append("No live quote returned")
            ctx.statuses.set(symbol, STATUS_NO_DATA, "No quote data returned")
    if quote is None and cached:
        quote = detail_from_cached(cached)
        warnings.append("Showing last streamed quote")

    trade = None
    if isinstance(depth_res, Exception):
        availability["depth"] = "error"
        warnings.append(f"Market depth unavailable: {depth_res}")
    else:
        trade = normalize_trade(find_depth_node(depth_res.payload.get("d"), symbol))
        availability["depth"] = "ok" if trade else "error"
        if trade is None:
            warnings.append("No market depth returned")

    if quote and trade:
        for key in _ENRICH_FROM_TRADE:
            if quote.get(key) is None and trade.get(key) is not None:
                quote[key] = trade[key]

    if warnings:
        print(f"[company] {symbol}: {'; '.join(warnings)}")
    return 200, {
        "symbol": symbol,
        "company": company,
        "quote": quote,
        "trade": trade,
        "availability": availability,
        "warnings": warnings,
        "warning": warnings[0] if warnings else None,
        "fetchedAt": _now_iso(),
    }


async def fetch_company_history(
    ctx: DashboardContext,
    symbol: str,
    range_token: str | None = None,
    resolution: str | None = None,
) -> tuple[int, dict[str, Any]]:
    req = build_history_request(symbol, range_token, resolution)
    body: dict[str, Any] = {
        "symbol": symbol,
        "company": company_meta(symbol),
        "range": req.range,
        "resolution": req.resolution,
        "points": [],
        "count": 0,
        "warning": None,
        "fetchedAt": _now_iso(),
    }

    token = await ensure_access_token(ctx)
    if not token:
        msg = "FYERS credentials unavailable; complete login at /auth/start"
        return 503, {**body, "error": msg, "warning": msg}

    url = history_url(ctx.cfg.data_host, req.params())
    try:
        resp = await call_with_auth_retry(ctx, "history", lambda tok: _get(ctx, url, tok))
    except UpstreamError as exc:
        print(f"[history] {symbol} {req.range}/{req.resolution} failed: {exc.message}")
        msg = f"History fetch failed: {exc.message}"
        return 502, {**body, "error": msg, "warning": msg}

    points = normalize_history(resp.payload)
    return 200, {
        **body,
        "points": points,
        "count": len(points),
        "warning": None if points else "No candles returned for this range",
    }
