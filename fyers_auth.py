from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import json
import math
import os
import urllib.parse
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from fyers_client import Transport, refresh_token_url, request_json

DEFAULT_DATA_HOST = "https://api-t1.fyers.in"
DEFAULT_AUTH_HOST = "https://api.fyers.in"
DEFAULT_TOKEN_HOST = "https://api-t1.fyers.in"
MIN_REFRESH_LEAD_S = 60.0


@dataclass(frozen=True)
class FyersConfig:
    app_id: str = ""
    secret_id: str = ""
    access_token: str = ""
    refresh_token: str = ""
    data_host: str = DEFAULT_DATA_HOST
    auth_host: str = DEFAULT_AUTH_HOST
    token_host: str = DEFAULT_TOKEN_HOST
    redirect_uri: str = ""
    pin: str = ""
    refresh_lead_s: float = 300.0
    persist_tokens: bool = False
    use_refresh_token: bool = True
    env_file: str = ".env"
    auth_state: str = "fyers_dashboard"
    http_timeout_s: float = 15.0


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = (env.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if math.isfinite(value) else default


def _env_str(env: Mapping[str, str], name: str, default: str = "") -> str:
    raw = (env.get(name) or "").strip()
    return raw or default


def load_fyers_config(env: Mapping[str, str] | None = None) -> FyersConfig:
    env = os.environ if env is None else env
    return FyersConfig(
        app_id=_env_str(env, "FYERS_APP_ID"),
        secret_id=_env_str(env, "FYERS_SECRET_ID"),
        access_token=_env_str(env, "FYERS_ACCESS_TOKEN"),
        refresh_token=_env_str(env, "FYERS_REFRESH_TOKEN"),
        data_host=_env_str(env, "FYERS_DATA_HOST", DEFAULT_DATA_HOST),
        auth_host=_env_str(env, "FYERS_AUTH_HOST", DEFAULT_AUTH_HOST),
        token_host=_env_str(env, "FYERS_TOKEN_HOST", DEFAULT_TOKEN_HOST),
        redirect_uri=_env_str(env, "FYERS_REDIRECT_URI"),
        pin=_env_str(env, "FYERS_PIN"),
        refresh_lead_s=max(MIN_REFRESH_LEAD_S, _env_float(env, "FYERS_REFRESH_LEAD_S", 300.0)),
        persist_tokens=_env_bool(env, "FYERS_PERSIST_TOKENS", False),
        use_refresh_token=_env_bool(env, "FYERS_USE_REFRESH_TOKEN", True),
        env_file=_env_str(env, "FYERS_ENV_FILE", ".env"),
        auth_state=_env_str(env, "FYERS_AUTH_STATE", "fyers_dashboard"),
        http_timeout_s=_env_float(env, "FYERS_HTTP_TIMEOUT_S", 15.0),
    )


def missing_auth_config(cfg: FyersConfig) -> list[str]:
    missing = []
    if not cfg.app_id:
        missing.append("FYERS_APP_ID")
    if not cfg.secret_id:
        missing.append("FYERS_SECRET_ID")
    if not cfg.redirect_uri:
        missing.append("FYERS_REDIRECT_URI")
    return missing


def app_id_hash(app_id: str, secret_id: str) -> str:
    return hashlib.sha256(f"{app_id}:{secret_id}".encode("utf-8")).hexdigest()


def build_consent_url(cfg: FyersConfig, state: str | None = None) -> str:
    params = {
        "client_id": cfg.app_id,
        "redirect_uri": cfg.redirect_uri,
        "response_type": "code",
        "state": (state or "").strip() or cfg.auth_state,
    }
    return f"{cfg.auth_host.rstrip('/')}/api/v3/generate-authcode?{urllib.parse.urlencode(params)}"


def decode_token_expiry(token: str) -> datetime | None:
    """Read the ``exp`` claim from a JWT-shaped token without verifying it.

    Returns None for anything that does not decode to a finite ``exp``; callers treat that
    as "expiry unknown".
    """
    parts = str(token or "").split(".")
    if len(parts) < 2 or not parts[1]:
        return None
    segment = parts[1]
    padded = segment + "=" * (-len(segment) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8"))
        if not isinstance(claims, dict):
            return None
        exp = claims.get("exp")
        if exp is None or isinstance(exp, bool):
            return None
        exp_f = float(exp)
        if not math.isfinite(exp_f):
            return None
        return datetime.fromtimestamp(exp_f, tz=UTC)
    except (ValueError, TypeError, binascii.Error, UnicodeError, OverflowError, OSError):
        return None


class TokenStore:
    def __init__(self, access_token: str = "", refresh_token: str = "") -> None:
        self._access_token = ""
        self._refresh_token = ""
        self._access_expiry: datetime | None = None
        self.set_tokens(access_token=access_token, refresh_token=refresh_token)

    @property
    def access_token(self) -> str:
        return self._access_token

    @property
    def refresh_token(self) -> str:
        return self._refresh_token

    @property
    def access_token_expiry(self) -> datetime | None:
        return self._access_expiry

    def set_access_token(self, token: str | None) -> None:
        self._access_token = (token or "").strip()
        self._access_expiry = decode_token_expiry(self._access_token)

    def set_refresh_token(self, token: str | None) -> None:
        self._refresh_token = (token or "").strip()

    def set_tokens(self, *, access_token: str | None = None, refresh_token: str | None = None) -> None:
        # None leaves the current value in place; "" clears it.
        if access_token is not None:
            self.set_access_token(access_token)
        if refresh_token is not None:
            self.set_refresh_token(refresh_token)

    def is_logged_in(self) -> bool:
        return bool(self._access_token)

    def access_token_expires_soon(self, threshold_s: float = 0.0, *, now: datetime | None = None) -> bool:
        # Tokens without a readable exp are assumed valid.
        if self._access_expiry is None:
            return False
        now = now or datetime.now(tz=UTC)
        remaining = (self._access_expiry - now).total_seconds()
        return remaining <= max(0.0, float(threshold_s or 0.0))


def _env_key(line: str) -> str | None:
    s = line.strip()
    if not s or s.startswith("#") or "=" not in s:
        return None
    if s.startswith("export "):
        s = s[len("export "):]
    return s.split("=", 1)[0].strip() or None


def persist_tokens(path: str, *, access_token: str, refresh_token: str | None = None) -> None:
    """Upsert the token keys in a dotenv-style file, leaving every other line alone."""
    updates = {"FYERS_ACCESS_TOKEN": access_token}
    if refresh_token:
        updates["FYERS_REFRESH_TOKEN"] = refresh_token

    lines: list[str] = []
    if os.path.isfile(path):
        with open(path, "r", encoding="utf-8", errors="surrogateescape") as f:
            lines = f.read().splitlines()

    seen: set[str] = set()
    out: list[str] = []
    for line in lines:
        key = _env_key(line)
        if key in updates:
            out.append(f"{key}={updates[key]}")
            seen.add(key)
        else:
            out.append(line)
    for key, value in updates.items():
        if key not in seen:
            out.append(f"{key}={value}")

    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8", errors="surrogateescape") as f:
        f.write("\n".join(out) + "\n")
    os.replace(tmp_path, path)


def save_tokens(cfg: FyersConfig, tokens: TokenStore) -> bool:
    if not cfg.persist_tokens or not tokens.access_token:
        return False
    try:
        persist_tokens(cfg.env_file, access_token=tokens.access_token, refresh_token=tokens.refresh_token or None)
    except (OSError, ValueError) as exc:
        print(f"[auth] could not persist tokens to {cfg.env_file}: {exc!r}")
        return False
    print(f"[auth] tokens persisted to {cfg.env_file}")
    return True


class TokenGrant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    s: str | None = None
    code: int | str | None = None
    message: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None

    @field_validator("access_token", "refresh_token", "message", mode="before")
    @classmethod
    def _blank_to_none(cls, v: Any) -> str | None:
        if v is None:
            return None
        s = str(v).strip()
        return s or None

    @classmethod
    def from_payload(cls, payload: Any) -> "TokenGrant":
        if not isinstance(payload, dict):
            return cls(s="error", message="unexpected_payload")
        try:
            return cls.model_validate(payload)
        except ValidationError:
            return cls(s="error", message="invalid_token_payload")

    def failure_reason(self, status: int) -> str:
        if self.message:
            return f"HTTP {status} {self.message}"
        if self.code is not None:
            return f"HTTP {status} code={self.code}"
        return f"HTTP {status} missing access_token"


class AuthExchangeError(RuntimeError):
    def __init__(self, failures: list[str]) -> None:
        super().__init__("auth code exchange failed: " + "; ".join(failures))
        self.failures = failures


class CredentialRefresher:
    """Exchanges the held refresh token for a new access token.

    Concurrent ``refresh()`` callers share one upstream exchange; FYERS refresh tokens
    must not be redeemed twice in parallel.
    """

    def __init__(self, cfg: FyersConfig, tokens: TokenStore, transport: Transport = request_json) -> None:
        self._cfg = cfg
        self._tokens = tokens
        self._transport = transport
        self._inflight: asyncio.Task | None = None

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def enabled(self) -> bool:
        return self._cfg.use_refresh_token

    async def refresh(self) -> bool:
        task = self._inflight
        if task is None or task.done():
            task = asyncio.create_task(self._refresh_once())
            self._inflight = task
            task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(task)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _refresh_once(self) -> bool:
        cfg = self._cfg
        if not cfg.use_refresh_token:
            return False
        if not cfg.app_id or not cfg.secret_id:
            print("[auth] refresh skipped: FYERS_APP_ID or FYERS_SECRET_ID not set")
            return False
        refresh_token = self._tokens.refresh_token
        if not refresh_token:
            print("[auth] refresh skipped: no refresh token held")
            return False

        body: dict[str, Any] = {
            "grant_type": "refresh_token",
            "appIdHash": app_id_hash(cfg.app_id, cfg.secret_id),
            "refresh_token": refresh_token,
        }
        if cfg.pin:
            body["pin"] = cfg.pin

        try:
            resp = await self._transport(
                "POST", refresh_token_url(cfg.token_host), body=body, timeout=cfg.http_timeout_s
            )
        except Exception as exc:
            print(f"[auth] refresh failed: {exc!r}")
            return False

        grant = TokenGrant.from_payload(resp.payload)
        if not grant.access_token:
            print(f"[auth] refresh failed: {grant.failure_reason(resp.status)}")
            return False

        self._tokens.set_tokens(access_token=grant.access_token, refresh_token=grant.refresh_token)
        expiry = self._tokens.access_token_expiry
        print(f"[auth] access token refreshed (expires {expiry.isoformat() if expiry else 'unknown'})")
        save_tokens(cfg, self._tokens)
        return True


class AuthCodeExchanger:
    def __init__(self, cfg: FyersConfig, transport: Transport = request_json) -> None:
        self._cfg = cfg
        self._transport = transport

    def endpoints(self, auth_code: str) -> list[tuple[str, str, dict[str, Any]]]:
        cfg = self._cfg
        base = {
            "grant_type": "authorization_code",
            "appIdHash": app_id_hash(cfg.app_id, cfg.secret_id),
            "code": auth_code,
        }
        return [
            ("v3/validate-authcode", f"{cfg.token_host.rstrip('/')}/api/v3/validate-authcode", dict(base)),
            ("v2/validate-authcode", f"{cfg.auth_host.rstrip('/')}/api/v2/validate-authcode", dict(base)),
            ("v2/token", f"{cfg.auth_host.rstrip('/')}/api/v2/token", {**base, "redirect_uri": cfg.redirect_uri}),
        ]

    async def exchange(self, auth_code: str) -> TokenGrant:
        failures: list[str] = []
        for label, url, body in self.endpoints(auth_code):
            try:
                resp = await self._transport("POST", url, body=body, timeout=self._cfg.http_timeout_s)
            except Exception as exc:
                failures.append(f"{label}: {exc}")
                continue
            grant = TokenGrant.from_payload(resp.payload)
            if grant.access_token:
                print(f"[auth] auth code exchanged via {label}")
                return grant
            failures.append(f"{label}: {grant.failure_reason(resp.status)}")
        raise AuthExchangeError(failures)
