# google_oauth.py
"""
Google account linking without a server-side session table.

The sender id is carried through Google's redirect inside a signed `state` token:

    base64url(json payload) + "." + base64url(HMAC-SHA256(secret, encoded payload))

The token is time-bounded (15 minutes by default, at most 60 s of forward clock skew)
but not single-use: a captured token can be replayed inside its window.
"""
import hashlib
import hmac
import html
import json
import logging
import math
import os
import re
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

import requests
from jose import jwt
from jose.exceptions import JOSEError
from jose.utils import base64url_decode, base64url_encode
from pydantic import EmailStr, TypeAdapter, ValidationError

from db import utcnow

log = logging.getLogger("oauth")

DEFAULT_START_PATH = "/oauth/google/start"
DEFAULT_CALLBACK_PATH = "/oauth/google/callback"
DEFAULT_SCOPES = ["openid", "email", "profile"]
STATE_MAX_AGE_MS = 15 * 60 * 1000
STATE_MIN_MAX_AGE_MS = 60 * 1000
STATE_FUTURE_SKEW_MS = 60 * 1000
STATE_VERSION = 1

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

PUBLIC_URL_ENV_VARS = ("PUBLIC_URL", "RENDER_EXTERNAL_URL", "RAILWAY_STATIC_URL", "RAILWAY_PUBLIC_DOMAIN")

_email_adapter = TypeAdapter(EmailStr)


def _http_timeout() -> float:
    try:
        return float(os.getenv("OAUTH_HTTP_TIMEOUT", "10"))
    except ValueError:
        return 10.0


# ------------------------- Errors --------------------------------------------

class OAuthConfigError(Exception):
    """A required OAuth setting is missing or invalid; `missing` names it."""

    def __init__(self, missing: str, message: str):
        super().__init__(message)
        self.missing = missing


class InvalidStateToken(Exception):
    REASONS = ("missing", "invalid", "signature", "expired")

    def __init__(self, reason: str):
        super().__init__(f"state token rejected: {reason}")
        self.reason = reason


class TokenExchangeError(Exception):
    """kind is one of: network, http, non_json, missing_token."""

    def __init__(self, kind: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


# ------------------------- Config --------------------------------------------

@dataclass(frozen=True)
class OAuthPaths:
    start_path: str
    callback_path: str


@dataclass(frozen=True)
class OAuthRuntimeConfig:
    public_base_url: str
    start_path: str
    callback_path: str
    callback_url: str
    client_id: str
    client_secret: str = field(repr=False)
    state_secret: str = field(repr=False)
    scopes: List[str] = field(default_factory=list)


def normalize_path(value: Optional[str], fallback: str) -> str:
    trimmed = (value or "").strip()
    if not trimmed:
        return fallback
    if not trimmed.startswith("/"):
        trimmed = "/" + trimmed
    return trimmed.rstrip("/") or fallback


def normalize_base_url(raw: Optional[str]) -> Optional[str]:
    """Accepts bare hosts ("app.example.com") and strips trailing slashes."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return None
    has_scheme = re.match(r"^[a-z][a-z0-9+.-]*://", trimmed, re.IGNORECASE)
    candidate = trimmed if has_scheme else f"https://{trimmed}"
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return None
    return urlunsplit((parts.scheme.lower(), parts.netloc, parts.path.rstrip("/"), parts.query, "")).rstrip("/")


def split_scopes(raw: Optional[str]) -> List[str]:
    if not raw or not raw.strip():
        return []
    return [s for s in re.split(r"[\s,]+", raw.strip()) if s]


def resolve_oauth_paths(env: Optional[Mapping[str, str]] = None) -> OAuthPaths:
    env = os.environ if env is None else env
    return OAuthPaths(
        start_path=normalize_path(env.get("GOOGLE_OAUTH_START_PATH"), DEFAULT_START_PATH),
        callback_path=normalize_path(env.get("GOOGLE_OAUTH_CALLBACK_PATH"), DEFAULT_CALLBACK_PATH),
    )


def resolve_runtime_config(
    env: Optional[Mapping[str, str]] = None,
    scopes: Optional[List[str]] = None,
    public_url: Optional[str] = None,
) -> OAuthRuntimeConfig:
    """
    Build the OAuth settings from the environment. Raises OAuthConfigError naming the
    one missing value so an operator can fix exactly that.
    """
    env = os.environ if env is None else env
    client_id = (env.get("GOOGLE_OAUTH_CLIENT_ID") or "").strip()
    if not client_id:
        raise OAuthConfigError("GOOGLE_OAUTH_CLIENT_ID", "missing GOOGLE_OAUTH_CLIENT_ID environment variable")
    client_secret = (env.get("GOOGLE_OAUTH_CLIENT_SECRET") or "").strip()
    if not client_secret:
        raise OAuthConfigError("GOOGLE_OAUTH_CLIENT_SECRET", "missing GOOGLE_OAUTH_CLIENT_SECRET environment variable")

    public_base_url = normalize_base_url(public_url)
    for name in PUBLIC_URL_ENV_VARS:
        if public_base_url:
            break
        public_base_url = normalize_base_url(env.get(name))
    if not public_base_url:
        raise OAuthConfigError(
            "PUBLIC_URL",
            "missing public URL (set PUBLIC_URL, RENDER_EXTERNAL_URL, RAILWAY_STATIC_URL or RAILWAY_PUBLIC_DOMAIN)",
        )

    paths = resolve_oauth_paths(env)
    callback_raw = (env.get("GOOGLE_OAUTH_REDIRECT_URI") or "").strip() or f"{public_base_url}{paths.callback_path}"
    callback_url = normalize_base_url(callback_raw)
    if not callback_url:
        raise OAuthConfigError("GOOGLE_OAUTH_REDIRECT_URI", "invalid redirect URI (GOOGLE_OAUTH_REDIRECT_URI)")

    merged: List[str] = []
    for scope in [*(s.strip() for s in scopes or []), *split_scopes(env.get("GOOGLE_OAUTH_SCOPES")), *DEFAULT_SCOPES]:
        if scope and scope not in merged:
            merged.append(scope)

    state_secret = (
        (env.get("GOOGLE_OAUTH_STATE_SECRET") or "").strip()
        or (env.get("GATEWAY_TOKEN") or "").strip()
        or client_secret
    )

    return OAuthRuntimeConfig(
        public_base_url=public_base_url,
        start_path=paths.start_path,
        callback_path=paths.callback_path,
        callback_url=callback_url,
        client_id=client_id,
        client_secret=client_secret,
        state_secret=state_secret,
        scopes=merged,
    )


def parse_optional_login_hint(raw: Optional[str]) -> Optional[str]:
    value = (raw or "").strip()
    if not value:
        return None
    try:
        return str(_email_adapter.validate_python(value))
    except ValidationError:
        return None


# ------------------------- Signed state --------------------------------------

@dataclass(frozen=True)
class StatePayload:
    user_id: int
    issued_at_ms: int
    nonce: str
    account_id: Optional[str] = None
    login_hint: Optional[str] = None
    version: int = STATE_VERSION

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"v": self.version, "uid": self.user_id, "ts": self.issued_at_ms, "n": self.nonce}
        if self.account_id:
            data["aid"] = self.account_id
        if self.login_hint:
            data["hint"] = self.login_hint
        return data


def _now_ms() -> int:
    return int(time.time() * 1000)


def _sign(payload_encoded: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_encoded.encode("ascii"), hashlib.sha256).digest()
    return base64url_encode(digest).decode("ascii")


def _finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _parse_payload(payload_encoded: str) -> Optional[StatePayload]:
    try:
        data = json.loads(base64url_decode(payload_encoded.encode("ascii")).decode("utf-8"))
    except (ValueError, UnicodeError):
        return None
    if not isinstance(data, dict):
        return None
    if data.get("v") != STATE_VERSION or not _finite(data.get("uid")):
        return None
    if not _finite(data.get("ts")):
        return None
    nonce = data.get("n")
    if not isinstance(nonce, str) or not nonce.strip():
        return None

    aid = data.get("aid")
    hint = data.get("hint")
    return StatePayload(
        user_id=int(data["uid"]),
        issued_at_ms=int(data["ts"]),
        nonce=nonce,
        account_id=aid.strip() if isinstance(aid, str) and aid.strip() else None,
        login_hint=hint.strip() if isinstance(hint, str) and hint.strip() else None,
    )


def create_state_token(
    secret: str,
    user_id: int,
    account_id: Optional[str] = None,
    login_hint: Optional[str] = None,
    now_ms: Optional[int] = None,
) -> str:
    payload = StatePayload(
        user_id=int(user_id),
        issued_at_ms=int(now_ms if now_ms is not None else _now_ms()),
        nonce=secrets.token_hex(16),
        account_id=(account_id or "").strip() or None,
        login_hint=(login_hint or "").strip() or None,
    )
    raw = json.dumps(payload.to_wire(), separators=(",", ":")).encode("utf-8")
    payload_encoded = base64url_encode(raw).decode("ascii")
    return f"{payload_encoded}.{_sign(payload_encoded, secret)}"


def verify_state_token(
    token: Optional[str],
    secret: str,
    now_ms: Optional[int] = None,
    max_age_ms: int = STATE_MAX_AGE_MS,
) -> StatePayload:
    """Returns the payload or raises InvalidStateToken(missing|invalid|signature|expired)."""
    raw = (token or "").strip()
    if not raw:
        raise InvalidStateToken("missing")

    sep = raw.rfind(".")
    if sep <= 0 or sep == len(raw) - 1:
        raise InvalidStateToken("invalid")
    payload_encoded, signature = raw[:sep], raw[sep + 1:]

    try:
        expected = _sign(payload_encoded, secret)
    except UnicodeEncodeError:
        raise InvalidStateToken("signature")
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("ascii")):
        raise InvalidStateToken("signature")

    payload = _parse_payload(payload_encoded)
    if payload is None:
        raise InvalidStateToken("invalid")

    now = int(now_ms if now_ms is not None else _now_ms())
    max_age = max(STATE_MIN_MAX_AGE_MS, int(max_age_ms))
    if payload.issued_at_ms > now + STATE_FUTURE_SKEW_MS or now - payload.issued_at_ms > max_age:
        raise InvalidStateToken("expired")
    return payload


# ------------------------- URLs ----------------------------------------------

def build_start_url(config: OAuthRuntimeConfig, state: str) -> str:
    return f"{config.public_base_url}{config.start_path}?{urlencode({'state': state})}"


def build_google_auth_url(config: OAuthRuntimeConfig, state: str, login_hint: Optional[str] = None) -> str:
    params = {
        "client_id": config.client_id,
        "redirect_uri": config.callback_url,
        "response_type": "code",
        "scope": " ".join(config.scopes),
        # offline + consent so Google hands out a refresh_token every time
        "access_type": "offline",
        "include_granted_scopes": "true",
        "prompt": "consent",
        "state": state,
    }
    if login_hint and login_hint.strip():
        params["login_hint"] = login_hint.strip()
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


# ------------------------- Token exchange ------------------------------------

@dataclass(frozen=True)
class GoogleTokens:
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    scope: Optional[str] = None
    token_type: Optional[str] = None
    id_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None


def _clean(value: Any) -> Optional[str]:
    return value.strip() or None if isinstance(value, str) else None


def exchange_authorization_code(config: OAuthRuntimeConfig, code: str) -> GoogleTokens:
    try:
        resp = requests.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "code": code,
                "grant_type": "authorization_code",
                "redirect_uri": config.callback_url,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=_http_timeout(),
        )
    except requests.RequestException as e:
        raise TokenExchangeError("network", f"google token exchange request failed: {type(e).__name__}") from e

    body = resp.text or ""
    if not (200 <= resp.status_code < 300):
        raise TokenExchangeError(
            "http", f"google token exchange failed ({resp.status_code}): {body[:500]}", resp.status_code
        )

    try:
        parsed = json.loads(body)
    except ValueError as e:
        raise TokenExchangeError("non_json", "google token exchange returned non-JSON payload") from e
    if not isinstance(parsed, dict):
        raise TokenExchangeError("non_json", "google token exchange returned non-object JSON")

    access_token = _clean(parsed.get("access_token"))
    if not access_token:
        raise TokenExchangeError("missing_token", "google token exchange returned no access_token")

    expires_in = parsed.get("expires_in")
    expires_at = utcnow() + timedelta(seconds=expires_in) if _finite(expires_in) and expires_in > 0 else None

    return GoogleTokens(
        access_token=access_token,
        refresh_token=_clean(parsed.get("refresh_token")),
        scope=_clean(parsed.get("scope")),
        token_type=_clean(parsed.get("token_type")),
        id_token=_clean(parsed.get("id_token")),
        expires_at=expires_at,
    )


def fetch_account_email(access_token: str) -> Optional[str]:
    """Best effort: any failure means 'email unknown'."""
    try:
        resp = requests.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=_http_timeout(),
        )
        if not resp.ok:
            log.warning("Google userinfo lookup returned %s", resp.status_code)
            return None
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        log.warning("Google userinfo lookup failed: %s", type(e).__name__)
        return None
    return _clean(data.get("email")) if isinstance(data, dict) else None


def extract_email_from_id_token(id_token: Optional[str]) -> Optional[str]:
    """Reads the email claim without verifying the signature; advisory only."""
    if not id_token:
        return None
    try:
        claims = jwt.get_unverified_claims(id_token)
    except JOSEError:
        return None
    return _clean(claims.get("email")) if isinstance(claims, dict) else None


def resolve_account_email(tokens: GoogleTokens) -> Optional[str]:
    return fetch_account_email(tokens.access_token) or extract_email_from_id_token(tokens.id_token)


# ------------------------- HTML ----------------------------------------------

_PAGE = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>{title}</title>
    <style>
      body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", sans-serif; margin: 0; padding: 2rem; background: #0b1220; color: #f8fafc; }}
      main {{ max-width: 640px; margin: 0 auto; background: #0f172a; border: 1px solid #334155; border-radius: 12px; padding: 1.25rem 1.5rem; }}
      h1 {{ margin: 0 0 0.75rem 0; font-size: 1.25rem; }}
      p {{ margin: 0; line-height: 1.5; color: #cbd5e1; }}
    </style>
  </head>
  <body>
    <main>
      <h1>{title}</h1>
      <p>{message}</p>
    </main>
  </body>
</html>"""


def render_status_page(title: str, message: str) -> str:
    return _PAGE.format(title=html.escape(title, quote=True), message=html.escape(message, quote=True))
