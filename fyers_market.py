from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import Any, Iterable

# FYERS symbols for NSE equities: NSE:SYMBOL-EQ
WATCHLIST = [
    "NSE:NTPC-EQ",
    "NSE:NHPC-EQ",
    "NSE:TATAPOWER-EQ",
    "NSE:ADANIPOWER-EQ",
    "NSE:ADANIGREEN-EQ",
    "NSE:POWERGRID-EQ",
    "NSE:JSWENERGY-EQ",
    "NSE:RENEW-EQ",
    "NSE:RPOWER-EQ",
]

COMPANIES: dict[str, dict[str, str]] = {
    "NSE:NTPC-EQ": {"name": "NTPC Limited", "sector": "Power Generation"},
    "NSE:NHPC-EQ": {"name": "NHPC Limited", "sector": "Hydro Power"},
    "NSE:TATAPOWER-EQ": {"name": "Tata Power Company Limited", "sector": "Power Generation"},
    "NSE:ADANIPOWER-EQ": {"name": "Adani Power Limited", "sector": "Thermal Power"},
    "NSE:ADANIGREEN-EQ": {"name": "Adani Green Energy Limited", "sector": "Renewables"},
    "NSE:POWERGRID-EQ": {"name": "Power Grid Corporation of India Limited", "sector": "Transmission"},
    "NSE:JSWENERGY-EQ": {"name": "JSW Energy Limited", "sector": "Power Generation"},
    "NSE:RENEW-EQ": {"name": "ReNew Energy Global plc", "sector": "Renewables"},
    "NSE:RPOWER-EQ": {"name": "Reliance Power Limited", "sector": "Power Generation"},
}

STATUS_OK = "ok"
STATUS_NO_KEY = "no_key"
STATUS_NO_DATA = "no_data"
STATUS_ERROR = "error"
STATUS_PENDING = "pending"
_STATUSES = {STATUS_OK, STATUS_NO_KEY, STATUS_NO_DATA, STATUS_ERROR, STATUS_PENDING}

PRICE_KEYS = ("lp", "ltp", "last_price", "price")
CHANGE_PCT_KEYS = ("chp", "change_percent", "changePercent", "pChange")
CHANGE_KEYS = ("ch", "change", "net_change")
TIMESTAMP_KEYS = ("tt", "ltt", "timestamp")
MAX_DEPTH_LEVELS = 5


def company_meta(symbol: str) -> dict[str, str]:
    known = COMPANIES.get(symbol)
    if known:
        return {"symbol": symbol, **known}
    # NSE:FOO-EQ -> FOO
    ticker = symbol.split(":", 1)[-1]
    if "-" in ticker:
        ticker = ticker.rsplit("-", 1)[0]
    return {"symbol": symbol, "name": ticker or symbol, "sector": "Unclassified"}


def parse_number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", "")
        if not value:
            return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def epoch_to_iso(value: Any) -> str | None:
    n = parse_number(value)
    if n is None:
        return None
    # Values past 1e12 are already milliseconds.
    seconds = n / 1000.0 if n > 1e12 else n
    try:
        return datetime.fromtimestamp(seconds, tz=UTC).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def normalize_timestamp(value: Any) -> str:
    return epoch_to_iso(value) or _now_iso()


def _first_number(obj: dict[str, Any], keys: Iterable[str]) -> float | None:
    for k in keys:
        if k in obj:
            n = parse_number(obj.get(k))
            if n is not None:
                return n
    return None


def _first_text(*values: Any) -> str:
    for v in values:
        if isinstance(v, str) and v.strip():
            return v.strip()
    return ""


def _quote_parts(item: Any) -> tuple[str, dict[str, Any]]:
    if not isinstance(item, dict):
        return "", {}
    nested = item.get("v")
    v = nested if isinstance(nested, dict) else item
    symbol = _first_text(item.get("n"), item.get("symbol"), v.get("symbol"))
    return symbol, v


def _quote_timestamp(v: dict[str, Any]) -> str:
    for k in TIMESTAMP_KEYS:
        if v.get(k):
            return normalize_timestamp(v.get(k))
    return _now_iso()


def normalize_quote(item: Any) -> dict[str, Any] | None:
    """Streaming-path quote. ``changePercent`` is a fraction (1.5% -> 0.015)."""
    symbol, v = _quote_parts(item)
    price = _first_number(v, PRICE_KEYS)
    if not symbol or price is None:
        return None
    chp = _first_number(v, CHANGE_PCT_KEYS)
    return {
        "symbol": symbol,
        "price": price,
        "changePercent": chp / 100 if chp is not None else None,
        "timestamp": _quote_timestamp(v),
    }


def normalize_detail_quote(item: Any) -> dict[str, Any] | None:
    """Detail-view quote. ``changePercent`` is in percent points (1.5% -> 1.5)."""
    symbol, v = _quote_parts(item)
    price = _first_number(v, PRICE_KEYS)
    if not symbol or price is None:
        return None
    prev_close = _first_number(v, ("prev_close_price", "prev_close", "previous_close", "pc"))
    change = _first_number(v, CHANGE_KEYS)
    if change is None and prev_close is not None:
        change = price - prev_close
    change_pct = _first_number(v, CHANGE_PCT_KEYS)
    if change_pct is None and change is not None and prev_close:
        change_pct = change / prev_close * 100
    return {
        "symbol": symbol,
        "price": price,
        "change": change,
        "changePercent": change_pct,
        "open": _first_number(v, ("open_price", "open", "o")),
        "high": _first_number(v, ("high_price", "high", "h")),
        "low": _first_number(v, ("low_price", "low", "l")),
        "previousClose": prev_close,
        "volume": _first_number(v, ("volume", "vol_traded_today", "v")),
        "upperCircuit": _first_number(v, ("upper_ckt", "upper_circuit", "upperCircuit")),
        "lowerCircuit": _first_number(v, ("lower_ckt", "lower_circuit", "lowerCircuit")),
        "yearHigh": _first_number(v, ("52_week_high", "year_high", "yearHigh", "high_52_week")),
        "yearLow": _first_number(v, ("52_week_low", "year_low", "yearLow", "low_52_week")),
        "bid": _first_number(v, ("bid", "bid_price")),
        "ask": _first_number(v, ("ask", "ask_price")),
        "timestamp": _quote_timestamp(v),
    }


def detail_from_cached(cached: dict[str, Any]) -> dict[str, Any]:
    """Reshape a streaming quote into the detail-view fields (fraction -> percent points)."""
    chp = cached.get("changePercent")
    return {
        "symbol": cached.get("symbol"),
        "price": cached.get("price"),
        "change": None,
        "changePercent": chp * 100 if isinstance(chp, (int, float)) else None,
        "open": None,
        "high": None,
        "low": None,
        "previousClose": None,
        "volume": None,
        "upperCircuit": None,
        "lowerCircuit": None,
        "yearHigh": None,
        "yearLow": None,
        "bid": None,
        "ask": None,
        "timestamp": cached.get("timestamp"),
    }


def _node_symbol(entry: dict[str, Any]) -> str:
    nested = entry.get("v") if isinstance(entry.get("v"), dict) else {}
    return _first_text(entry.get("n"), entry.get("name"), entry.get("symbol"), nested.get("symbol"))


def _looks_like_depth(node: dict[str, Any]) -> bool:
    return any(k in node for k in ("bids", "bid", "ask", "asks", "totalbuyqty", "totalsellqty"))


def find_depth_node(data: Any, symbol: str) -> dict[str, Any] | None:
    """Locate the depth node for ``symbol`` in a dict keyed by symbol or a list of entries.

    When a list carries no matching symbol tag the first entry is used. That is a best-effort
    guess that only holds for single-symbol depth calls.
    """
    if isinstance(data, dict):
        node = data.get(symbol)
        if isinstance(node, dict):
            return node
        return data if _looks_like_depth(data) else None
    if isinstance(data, list):
        entries = [e for e in data if isinstance(e, dict)]
        for entry in entries:
            if _node_symbol(entry) == symbol:
                return entry["v"] if isinstance(entry.get("v"), dict) else entry
        if entries:
            first = entries[0]
            return first["v"] if isinstance(first.get("v"), dict) else first
    return None


def normalize_level(raw: Any) -> dict[str, Any] | None:
    if isinstance(raw, (list, tuple)):
        vals = list(raw) + [None, None, None]
        price, qty, orders = parse_number(vals[0]), parse_number(vals[1]), parse_number(vals[2])
    elif isinstance(raw, dict):
        price = _first_number(raw, ("price", "p", "prc"))
        qty = _first_number(raw, ("volume", "quantity", "qty", "q", "vol"))
        orders = _first_number(raw, ("ord", "orders", "num_orders", "order_count", "n"))
    else:
        return None
    if price is None:
        return None
    return {"price": price, "quantity": qty, "orders": int(orders) if orders is not None else None}


def normalize_levels(raw: Any, limit: int = MAX_DEPTH_LEVELS) -> list[dict[str, Any]]:
    if isinstance(raw, dict):
        raw = list(raw.values())
    if not isinstance(raw, (list, tuple)):
        return []
    out = []
    for item in raw:
        level = normalize_level(item)
        if level is not None:
            out.append(level)
        if len(out) >= limit:
            break
    return out


def _first_present(node: dict[str, Any], keys: Iterable[str]) -> Any:
    for k in keys:
        if node.get(k) is not None:
            return node.get(k)
    return None


def normalize_trade(node: Any) -> dict[str, Any] | None:
    if not isinstance(node, dict):
        return None
    bids = normalize_levels(_first_present(node, ("bids", "bid", "buy")))
    asks = normalize_levels(_first_present(node, ("ask", "asks", "sell")))
    best_bid = bids[0]["price"] if bids else None
    best_ask = asks[0]["price"] if asks else None
    spread = best_ask - best_bid if best_bid is not None and best_ask is not None else None
    return {
        "totalBidQty": _first_number(node, ("totalbuyqty", "total_buy_qty", "totalBidQty")),
        "totalAskQty": _first_number(node, ("totalsellqty", "total_sell_qty", "totalAskQty")),
        "open": _first_number(node, ("o", "open", "open_price")),
        "high": _first_number(node, ("h", "high", "high_price")),
        "low": _first_number(node, ("l", "low", "low_price")),
        "close": _first_number(node, ("ltp", "lp", "last_price", "close")),
        "previousClose": _first_number(node, ("prev_close_price", "prev_close", "pc", "c")),
        "averageTradedPrice": _first_number(node, ("atp", "avg_trade_price", "average_price")),
        "volume": _first_number(node, ("v", "volume", "vol_traded_today")),
        "lastTradedQty": _first_number(node, ("ltq", "last_traded_qty")),
        "upperCircuit": _first_number(node, ("upper_ckt", "upper_circuit")),
        "lowerCircuit": _first_number(node, ("lower_ckt", "lower_circuit")),
        "bestBid": best_bid,
        "bestAsk": best_ask,
        "spread": spread,
        "bids": bids,
        "asks": asks,
    }


def normalize_candle(raw: Any) -> dict[str, Any] | None:
    if not isinstance(raw, (list, tuple)) or len(raw) < 5:
        return None
    epoch, o, h, low, c = (parse_number(x) for x in raw[:5])
    if epoch is None or o is None or h is None or low is None or c is None:
        return None
    ts = epoch_to_iso(epoch)
    if ts is None:
        return None
    return {
        "timestamp": ts,
        "open": o,
        "high": h,
        "low": low,
        "close": c,
        "volume": parse_number(raw[5]) if len(raw) > 5 else None,
    }


def normalize_history(payload: Any) -> list[dict[str, Any]]:
    if not isinstance(payload, dict):
        return []
    candles = payload.get("candles")
    if candles is None and isinstance(payload.get("d"), dict):
        candles = payload["d"].get("candles")
    if not isinstance(candles, list):
        return []
    return [c for c in (normalize_candle(raw) for raw in candles) if c is not None]


class SymbolStatusRegistry:
    def __init__(self) -> None:
        self._entries: dict[str, dict[str, Any]] = {}

    def set(self, symbol: str, status: str, message: str) -> None:
        if status not in _STATUSES:
            raise ValueError(f"unknown symbol status: {status}")
        self._entries[symbol] = {
            "status": status,
            "message": message,
            "updatedAt": datetime.now(tz=UTC).isoformat(),
        }

    def set_many(self, symbols: Iterable[str], status: str, message: str) -> None:
        for symbol in symbols:
            self.set(symbol, status, message)

    def get(self, symbol: str) -> dict[str, Any] | None:
        entry = self._entries.get(symbol)
        return dict(entry) if entry else None

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {k: dict(v) for k, v in self._entries.items()}

    def company_fields(self, symbol: str) -> dict[str, Any]:
        entry = self._entries.get(symbol) or {}
        return {
            "status": entry.get("status", STATUS_PENDING),
            "statusMessage": entry.get("message", "Waiting for quote fetch"),
            "statusUpdatedAt": entry.get("updatedAt"),
        }


HISTORY_RANGE_DAYS = {
    # 1D reaches back 5 days so weekends and holidays still yield a session.
    "1D": 5,
    "1W": 7,
    "1M": 30,
    "3M": 90,
    "6M": 180,
    "1Y": 365,
}
DEFAULT_HISTORY_RANGE = "3M"
ALLOWED_RESOLUTIONS = ("1", "2", "3", "5", "10", "15", "30", "60", "120", "240", "D")


@dataclass(frozen=True)
class HistoryRequest:
    symbol: str
    range: str
    resolution: str
    lookback_days: int
    range_from: date
    range_to: date

    def params(self) -> dict[str, str]:
        return {
            "symbol": self.symbol,
            "resolution": self.resolution,
            "date_format": "1",
            "range_from": self.range_from.isoformat(),
            "range_to": self.range_to.isoformat(),
            "cont_flag": "1",
        }


def _normalize_resolution(value: str | None) -> str | None:
    s = str(value or "").strip().upper()
    return s if s in ALLOWED_RESOLUTIONS else None


def build_history_request(
    symbol: str,
    range_token: str | None = None,
    resolution: str | None = None,
    *,
    now: datetime | None = None,
) -> HistoryRequest:
    rng = str(range_token or "").strip().upper()
    if rng not in HISTORY_RANGE_DAYS:
        rng = DEFAULT_HISTORY_RANGE
    days = HISTORY_RANGE_DAYS[rng]
    default_res = "15" if rng == "1D" else "D"
    res = _normalize_resolution(resolution) or default_res
    now = now or datetime.now(tz=UTC)
    return HistoryRequest(
        symbol=symbol,
        range=rng,
        resolution=res,
        lookback_days=days,
        range_from=(now - timedelta(days=days)).date(),
        range_to=now.date(),
    )
