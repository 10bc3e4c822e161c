from __future__ import annotations

import asyncio
import time
from urllib.parse import parse_qs, urlparse

import pytest
from conftest import INVALID_TOKEN, ok_grant, quote_item, quotes_ok
from fastapi.testclient import TestClient

from fyers_auth import FyersConfig
from fyers_bridge_server import BridgeConfig, _parse_args, create_app
from fyers_client import UpstreamResponse
from fyers_market import WATCHLIST


def _app(upstream, tmp_path, fyers_cfg=None):
    cfg = BridgeConfig(poll_on_startup=False, frontend_dir=str(tmp_path))
    return create_app(cfg, fyers_cfg or FyersConfig(), transport=upstream)


@pytest.fixture()
def live_cfg(fyers_cfg):
    return FyersConfig(
        app_id=fyers_cfg.app_id,
        secret_id=fyers_cfg.secret_id,
        redirect_uri=fyers_cfg.redirect_uri,
        access_token="access-1",
        refresh_token="refresh-1",
    )


def test_no_credentials_end_to_end(upstream, tmp_path):
    app = _app(upstream, tmp_path)
    asyncio.run(app.state.poller.tick())
    client = TestClient(app)

    companies = client.get("/api/companies").json()
    assert [c["symbol"] for c in companies] == WATCHLIST
    assert {c["status"] for c in companies} == {"no_key"}
    assert all(c["statusUpdatedAt"] for c in companies)

    with client.websocket_connect("/") as ws:
        assert ws.receive_json() == {"type": "hello", "symbols": WATCHLIST}
        assert ws.receive_json() == {"type": "quotes", "data": []}
    assert upstream.calls == []


def test_configured_watchlist_drives_routes_and_hello(upstream, tmp_path):
    cfg = BridgeConfig(poll_on_startup=False, frontend_dir=str(tmp_path), watchlist=("NSE:NTPC-EQ", "NSE:FOO-EQ"))
    client = TestClient(create_app(cfg, FyersConfig(), transport=upstream))

    companies = client.get("/api/companies").json()
    assert [c["symbol"] for c in companies] == ["NSE:NTPC-EQ", "NSE:FOO-EQ"]
    assert companies[1]["name"] == "FOO"
    assert client.get("/api/company/NSE:NHPC-EQ").status_code == 404
    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json() == {"type": "hello", "symbols": ["NSE:NTPC-EQ", "NSE:FOO-EQ"]}


def test_companies_before_first_poll_are_pending(upstream, tmp_path):
    client = TestClient(_app(upstream, tmp_path))
    first = client.get("/api/companies").json()[0]
    assert first == {
        "symbol": "NSE:NTPC-EQ",
        "name": "NTPC Limited",
        "sector": "Power Generation",
        "status": "pending",
        "statusMessage": "Waiting for quote fetch",
        "statusUpdatedAt": None,
    }


def test_quotes_endpoint_and_ws_alias_share_snapshot(upstream, tmp_path, live_cfg):
    upstream.add("GET", "/data/quotes", quotes_ok(quote_item("NSE:NTPC-EQ", 350.5, 1.0)))
    app = _app(upstream, tmp_path, live_cfg)
    assert asyncio.run(app.state.poller.tick()) == 0
    client = TestClient(app)

    quotes = client.get("/api/quotes").json()
    assert [q["symbol"] for q in quotes] == ["NSE:NTPC-EQ"]
    assert quotes[0]["changePercent"] == 0.01

    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        assert ws.receive_json()["data"] == quotes


def test_company_route_validation(upstream, tmp_path):
    client = TestClient(_app(upstream, tmp_path))
    assert client.get("/api/company").status_code == 400
    resp = client.get("/api/company/NSE:UNLISTED-EQ")
    assert resp.status_code == 404
    assert "error" in resp.json()
    assert client.get("/api/company/NSE:UNLISTED-EQ/history").status_code == 404


def test_company_detail_without_credentials_is_503(upstream, tmp_path):
    resp = TestClient(_app(upstream, tmp_path)).get("/api/company/NSE:NTPC-EQ")
    assert resp.status_code == 503
    body = resp.json()
    assert body["availability"] == {"quote": "unavailable", "depth": "unavailable"}
    assert body["trade"] is None
    assert body["warning"]


def test_company_detail_live(upstream, tmp_path, live_cfg):
    upstream.add("GET", "/data/quotes", quotes_ok({"n": "NSE:NTPC-EQ", "v": {"lp": 350.2, "chp": 0.4}}))
    upstream.add(
        "GET",
        "/data/depth",
        UpstreamResponse(200, {"s": "ok", "d": {"NSE:NTPC-EQ": {"bids": [[350.0, 10, 1]], "ask": [[350.5, 5, 1]]}}}),
    )
    resp = TestClient(_app(upstream, tmp_path, live_cfg)).get("/api/company/nse:ntpc-eq")
    assert resp.status_code == 200
    body = resp.json()
    assert set(body) >= {"symbol", "company", "quote", "trade", "availability", "warnings", "fetchedAt"}
    assert body["symbol"] == "NSE:NTPC-EQ"
    assert body["trade"]["spread"] == 0.5


def test_history_endpoint(upstream, tmp_path, live_cfg):
    upstream.add("GET", "/data/history", UpstreamResponse(200, {"s": "ok", "candles": [[1_700_000_000, 1, 2, 0.5, 1.5, 9]]}))
    resp = TestClient(_app(upstream, tmp_path, live_cfg)).get(
        "/api/company/NSE:NTPC-EQ/history", params={"range": "1W", "resolution": "30"}
    )
    assert resp.status_code == 200
    body = resp.json()
    assert (body["range"], body["resolution"], body["count"]) == ("1W", "30", 1)
    assert body["points"][0]["close"] == 1.5


def test_history_endpoint_upstream_failure(upstream, tmp_path, live_cfg):
    upstream.add("GET", "/data/history", UpstreamResponse(500, {"s": "error", "message": "down"}))
    upstream.add("POST", "validate-refresh-token", ok_grant("access-2"))
    resp = TestClient(_app(upstream, tmp_path, live_cfg)).get("/api/company/NSE:NTPC-EQ/history")
    assert resp.status_code == 502
    assert resp.json()["range"] == "3M"


def test_auth_start_requires_config(upstream, tmp_path):
    resp = TestClient(_app(upstream, tmp_path)).get("/auth/start", follow_redirects=False)
    assert resp.status_code == 400
    assert "FYERS_APP_ID" in resp.json()["error"]


def test_auth_start_redirects_to_consent(upstream, tmp_path, fyers_cfg):
    client = TestClient(_app(upstream, tmp_path, fyers_cfg))
    resp = client.get("/auth/start", params={"state": "xyz"}, follow_redirects=False)
    assert resp.status_code == 302
    location = urlparse(resp.headers["location"])
    assert location.netloc == "api.fyers.in"
    assert parse_qs(location.query)["state"] == ["xyz"]
    assert client.get("/auth/login", follow_redirects=False).status_code == 302


def test_auth_callback_requires_code(upstream, tmp_path, fyers_cfg):
    client = TestClient(_app(upstream, tmp_path, fyers_cfg))
    resp = client.get("/auth/callback")
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing auth_code in callback"}
    denied = client.get("/auth/callback", params={"s": "error", "message": "user cancelled"})
    assert denied.json() == {"error": "user cancelled"}


def test_auth_callback_stores_tokens(upstream, tmp_path, fyers_cfg):
    upstream.add("POST", "/api/v3/validate-authcode", ok_grant("access-1", "refresh-1"))
    upstream.add("GET", "/data/quotes", quotes_ok(quote_item("NSE:NTPC-EQ", 1)))
    app = _app(upstream, tmp_path, fyers_cfg)

    with TestClient(app) as client:
        resp = client.get("/auth/fyers/callback", params={"auth_code": "code-1", "state": "fyers_dashboard"})
        assert resp.status_code == 200
        assert resp.json() == {
            "status": "ok",
            "message": "FYERS login complete; quotes will refresh shortly",
            "hasAccessToken": True,
            "hasRefreshToken": True,
        }
        status = client.get("/api/auth/status").json()

        # The post-login poll runs on the client's event loop thread.
        deadline = time.monotonic() + 2.0
        while "NSE:NTPC-EQ" not in app.state.ctx.quotes and time.monotonic() < deadline:
            time.sleep(0.01)
        assert upstream.count("/data/quotes") == 1
        assert app.state.ctx.quotes["NSE:NTPC-EQ"]["price"] == 1.0
        assert upstream.calls_to("/data/quotes")[0].headers["Authorization"] == "APP-100:access-1"

    assert app.state.ctx.tokens.access_token == "access-1"
    assert status["loggedIn"] is True
    assert status["hasRefreshToken"] is True
    assert "access-1" not in str(status)


def test_auth_callback_exchange_failure_is_502(upstream, tmp_path, fyers_cfg):
    upstream.add("POST", "/api/v3/validate-authcode", INVALID_TOKEN)
    upstream.add("POST", "/api/v2/validate-authcode", INVALID_TOKEN)
    upstream.add("POST", "/api/v2/token", UpstreamResponse(400, {"s": "error", "message": "code used"}))
    resp = TestClient(_app(upstream, tmp_path, fyers_cfg)).get("/auth/callback", params={"auth_code": "code-1"})
    assert resp.status_code == 502
    body = resp.json()
    assert len(body["attempts"]) == 3
    assert "code used" in body["error"]


def test_catch_all_serves_frontend(upstream, tmp_path):
    (tmp_path / "index.html").write_text("<html>desk</html>", encoding="utf-8")
    (tmp_path / "app.js").write_text("console.log(1)", encoding="utf-8")
    client = TestClient(_app(upstream, tmp_path))
    assert client.get("/company/NSE:NTPC-EQ").text == "<html>desk</html>"
    assert client.get("/").text == "<html>desk</html>"
    assert client.get("/app.js").text == "console.log(1)"


def test_catch_all_without_frontend(upstream, tmp_path):
    resp = TestClient(_app(upstream, tmp_path / "missing")).get("/anything")
    assert resp.status_code == 404
    assert resp.json() == {"error": "frontend_not_built"}


def test_health(upstream, tmp_path):
    assert TestClient(_app(upstream, tmp_path)).get("/api/health").json() == {"status": "ok"}


def test_parse_args_reads_env(monkeypatch):
    monkeypatch.setenv("PORT", "4100")
    monkeypatch.setenv("FYERS_POLL_INTERVAL_MS", "5000")
    args = _parse_args([])
    assert args.port == 4100
    assert args.poll_ms == 5000
    assert _parse_args(["--port", "9000"]).port == 9000
