from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fyers_auth import (
    AuthCodeExchanger,
    AuthExchangeError,
    FyersConfig,
    build_consent_url,
    load_fyers_config,
    missing_auth_config,
    save_tokens,
)
from fyers_client import Transport, request_json
from fyers_feed import (
    QuoteBroadcaster,
    QuoteFetcher,
    QuotePoller,
    build_context,
    fetch_company_detail,
    fetch_company_history,
)
from fyers_market import WATCHLIST, company_meta

load_dotenv()


@dataclass(frozen=True)
class BridgeConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    poll_ms: int = 12_000
    frontend_dir: str = "frontend"
    poll_on_startup: bool = True
    watchlist: tuple[str, ...] = tuple(WATCHLIST)


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


def create_app(cfg: BridgeConfig, fyers_cfg: FyersConfig, *, transport: Transport = request_json) -> FastAPI:
    app = FastAPI(title="FYERS Power Desk", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    ctx = build_context(fyers_cfg, transport=transport, watchlist=cfg.watchlist)
    fetcher = QuoteFetcher(ctx)
    broadcaster = QuoteBroadcaster(ctx)
    poller = QuotePoller(ctx, fetcher, broadcaster, interval_s=cfg.poll_ms / 1000.0)
    exchanger = AuthCodeExchanger(fyers_cfg, transport)

    app.state.ctx = ctx
    app.state.poller = poller
    app.state.broadcaster = broadcaster

    frontend_root = os.path.realpath(cfg.frontend_dir)

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail))

    @app.on_event("startup")
    async def _startup() -> None:
        if not fyers_cfg.app_id or not ctx.tokens.access_token:
            print("[auth] FYERS_APP_ID or FYERS_ACCESS_TOKEN not set; quotes wait for login at /auth/start")
        if cfg.poll_on_startup:
            poller.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await poller.stop()

    def resolve_watchlist_symbol(raw: str) -> str:
        symbol = (raw or "").strip().upper()
        if not symbol:
            raise StarletteHTTPException(status_code=400, detail="missing_symbol")
        if symbol not in ctx.watchlist:
            raise StarletteHTTPException(status_code=404, detail=f"unknown_symbol: {symbol}")
        return symbol

    @app.get("/api/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/quotes")
    async def quotes() -> JSONResponse:
        return JSONResponse(list(ctx.quotes.values()), headers={"Cache-Control": "no-store"})

    @app.get("/api/companies")
    async def companies() -> JSONResponse:
        payload = [{**company_meta(s), **ctx.statuses.company_fields(s)} for s in ctx.watchlist]
        return JSONResponse(payload, headers={"Cache-Control": "no-store"})

    @app.get("/api/company")
    @app.get("/api/company/")
    async def company_missing() -> JSONResponse:
        return _error(400, "missing_symbol")

    @app.get("/api/company/{symbol}")
    async def company_detail(symbol: str) -> JSONResponse:
        sym = resolve_watchlist_symbol(symbol)
        status_code, payload = await fetch_company_detail(ctx, sym)
        return JSONResponse(payload, status_code=status_code, headers={"Cache-Control": "no-store"})

    @app.get("/api/company/{symbol}/history")
    async def company_history(
        symbol: str,
        range_token: str | None = Query(None, alias="range"),
        resolution: str | None = Query(None),
    ) -> JSONResponse:
        sym = resolve_watchlist_symbol(symbol)
        status_code, payload = await fetch_company_history(ctx, sym, range_token, resolution)
        return JSONResponse(payload, status_code=status_code, headers={"Cache-Control": "no-store"})

    @app.get("/api/auth/status")
    async def auth_status() -> JSONResponse:
        expiry = ctx.tokens.access_token_expiry
        return JSONResponse(
            {
                "loggedIn": ctx.tokens.is_logged_in(),
                "hasRefreshToken": bool(ctx.tokens.refresh_token),
                "accessTokenExpiresAt": expiry.isoformat() if expiry else None,
                "refreshEnabled": ctx.refresher.enabled,
                "refreshInFlight": ctx.refresher.in_flight,
            },
            headers={"Cache-Control": "no-store"},
        )

    @app.get("/auth/start")
    @app.get("/auth/login")
    @app.get("/api/auth/start")
    async def auth_start(state: str | None = Query(None)) -> Any:
        missing = missing_auth_config(fyers_cfg)
        if missing:
            return _error(400, f"Missing {', '.join(missing)}")
        return RedirectResponse(build_consent_url(fyers_cfg, state), status_code=302)

    @app.get("/auth/callback")
    @app.get("/auth/fyers/callback")
    @app.get("/api/auth/callback")
    async def auth_callback(
        auth_code: str | None = Query(None),
        s: str | None = Query(None),
        message: str | None = Query(None),
    ) -> JSONResponse:
        missing = missing_auth_config(fyers_cfg)
        if missing:
            return _error(400, f"Missing {', '.join(missing)}")
        code = (auth_code or "").strip()
        if not code:
            if (s or "").strip().lower() == "error":
                return _error(400, message or "FYERS login was not completed")
            return _error(400, "Missing auth_code in callback")

        try:
            grant = await exchanger.exchange(code)
        except AuthExchangeError as exc:
            print(f"[auth] {exc}")
            return _error(502, str(exc), attempts=exc.failures)
        except Exception as exc:
            print(f"[auth] callback error: {exc!r}")
            return _error(500, repr(exc))

        ctx.tokens.set_tokens(access_token=grant.access_token, refresh_token=grant.refresh_token)
        save_tokens(fyers_cfg, ctx.tokens)
        print("[auth] login complete; polling now")
        poller.trigger()
        return JSONResponse(
            {
                "status": "ok",
                "message": "FYERS login complete; quotes will refresh shortly",
                "hasAccessToken": bool(ctx.tokens.access_token),
                "hasRefreshToken": bool(ctx.tokens.refresh_token),
            }
        )

    @app.websocket("/")
    @app.websocket("/ws")
    async def quotes_socket(ws: WebSocket) -> None:
        await ws.accept()
        print(f"[ws] client connected ({broadcaster.client_count + 1} total)")
        try:
            await broadcaster.connect(ws)
            while True:
                # Clients never send anything useful; block until they go away.
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.disconnect(ws)
            print("[ws] client disconnected")

    @app.get("/{full_path:path}", include_in_schema=False)
    async def frontend(full_path: str) -> Any:
        if full_path:
            candidate = os.path.realpath(os.path.join(frontend_root, full_path))
            inside = os.path.commonpath([frontend_root, candidate]) == frontend_root
            if inside and os.path.isfile(candidate):
                return FileResponse(candidate)
        index = os.path.join(frontend_root, "index.html")
        if os.path.isfile(index):
            return FileResponse(index)
        return _error(404, "frontend_not_built")

    return app


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Dashboard server that polls FYERS quotes and pushes them to browsers.")
    p.add_argument("--host", default=os.getenv("HOST") or "0.0.0.0")
    p.add_argument("--port", type=int, default=_env_int("PORT", 3000))
    p.add_argument(
        "--poll-ms",
        type=int,
        default=_env_int("FYERS_POLL_INTERVAL_MS", 12_000),
        help="How often to poll FYERS for quotes.",
    )
    p.add_argument("--frontend-dir", default=os.getenv("FRONTEND_DIR") or "frontend", help="Built UI to serve.")
    p.add_argument("--no-poll", action="store_true", help="Do not start the quote poller.")
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    cfg = BridgeConfig(
        host=args.host,
        port=args.port,
        poll_ms=args.poll_ms if args.poll_ms > 0 else 12_000,
        frontend_dir=args.frontend_dir,
        poll_on_startup=not args.no_poll,
    )
    fyers_cfg = load_fyers_config()

    import uvicorn

    app = create_app(cfg, fyers_cfg)
    print(f"[server] listening on http://{cfg.host}:{cfg.port}")
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_level="info")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
