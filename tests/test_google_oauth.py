import json
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlsplit

import pytest
import requests
from jose import jwt

from google_oauth import (
    DEFAULT_SCOPES, STATE_MAX_AGE_MS, GoogleTokens, InvalidStateToken, OAuthConfigError,
    TokenExchangeError, build_google_auth_url, build_start_url, create_state_token,
    exchange_authorization_code, extract_email_from_id_token, normalize_base_url,
    parse_optional_login_hint, render_status_page, resolve_account_email,
    resolve_oauth_paths, resolve_runtime_config, verify_state_token,
)

SECRET = "state-secret"
T0 = 1_700_000_000_000

BASE_ENV = {
    "GOOGLE_OAUTH_CLIENT_ID": "cid",
    "GOOGLE_OAUTH_CLIENT_SECRET": "csecret",
    "PUBLIC_URL": "https://bot.example.com/",
}


def _config(**overrides):
    return resolve_runtime_config(env={**BASE_ENV, **overrides})


def _response(status=200, body=None, text=None):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.text = text if text is not None else json.dumps(body)
    resp.json.side_effect = lambda: json.loads(resp.text)
    return resp


# --- state tokens -------------------------------------------------------------

def test_state_round_trip():
    token = create_state_token(SECRET, 42, account_id="default", login_hint="a@b.co", now_ms=T0)
    payload = verify_state_token(token, SECRET, now_ms=T0 + 1000)
    assert payload.user_id == 42
    assert payload.account_id == "default"
    assert payload.login_hint == "a@b.co"
    assert payload.issued_at_ms == T0
    assert len(payload.nonce) == 32


def test_state_nonce_differs_per_token():
    assert create_state_token(SECRET, 1, now_ms=T0) != create_state_token(SECRET, 1, now_ms=T0)


def test_state_tampered_signature():
    token = create_state_token(SECRET, 42, now_ms=T0)
    payload, sig = token.rsplit(".", 1)
    for i in (0, len(sig) // 2, len(sig) - 1):
        flipped = sig[:i] + ("A" if sig[i] != "A" else "B") + sig[i + 1:]
        with pytest.raises(InvalidStateToken) as exc:
            verify_state_token(f"{payload}.{flipped}", SECRET, now_ms=T0)
        assert exc.value.reason == "signature"


def test_state_wrong_secret():
    token = create_state_token(SECRET, 42, now_ms=T0)
    with pytest.raises(InvalidStateToken) as exc:
        verify_state_token(token, "other", now_ms=T0)
    assert exc.value.reason == "signature"


def test_state_expiry_boundaries():
    token = create_state_token(SECRET, 42, now_ms=T0)
    assert verify_state_token(token, SECRET, now_ms=T0 + STATE_MAX_AGE_MS - 1).user_id == 42
    with pytest.raises(InvalidStateToken) as exc:
        verify_state_token(token, SECRET, now_ms=T0 + STATE_MAX_AGE_MS + 1)
    assert exc.value.reason == "expired"


def test_state_from_the_future():
    token = create_state_token(SECRET, 42, now_ms=T0 + 61_000)
    with pytest.raises(InvalidStateToken) as exc:
        verify_state_token(token, SECRET, now_ms=T0)
    assert exc.value.reason == "expired"
    # small forward skew is tolerated
    skewed = create_state_token(SECRET, 42, now_ms=T0 + 30_000)
    assert verify_state_token(skewed, SECRET, now_ms=T0).user_id == 42


def test_state_max_age_is_clamped():
    token = create_state_token(SECRET, 42, now_ms=T0)
    assert verify_state_token(token, SECRET, now_ms=T0 + 30_000, max_age_ms=0).user_id == 42


@pytest.mark.parametrize("token,reason", [
    (None, "missing"),
    ("   ", "missing"),
    ("nodot", "invalid"),
    (".sig", "invalid"),
    ("payload.", "invalid"),
])
def test_state_structural_errors(token, reason):
    with pytest.raises(InvalidStateToken) as exc:
        verify_state_token(token, SECRET, now_ms=T0)
    assert exc.value.reason == reason


def test_state_bad_schema_with_valid_signature():
    from google_oauth import _sign
    from jose.utils import base64url_encode

    encoded = base64url_encode(json.dumps({"v": 2, "uid": 1, "ts": T0, "n": "x"}).encode()).decode()
    with pytest.raises(InvalidStateToken) as exc:
        verify_state_token(f"{encoded}.{_sign(encoded, SECRET)}", SECRET, now_ms=T0)
    assert exc.value.reason == "invalid"


# --- config -------------------------------------------------------------------

@pytest.mark.parametrize("missing", ["GOOGLE_OAUTH_CLIENT_ID", "GOOGLE_OAUTH_CLIENT_SECRET", "PUBLIC_URL"])
def test_config_names_missing_value(missing):
    env = {k: v for k, v in BASE_ENV.items() if k != missing}
    with pytest.raises(OAuthConfigError) as exc:
        resolve_runtime_config(env=env)
    assert exc.value.missing == missing


def test_config_defaults():
    config = _config()
    assert config.public_base_url == "https://bot.example.com"
    assert config.callback_url == "https://bot.example.com/oauth/google/callback"
    assert config.scopes == DEFAULT_SCOPES
    assert config.state_secret == "csecret"


def test_config_public_url_fallbacks():
    env = {k: v for k, v in BASE_ENV.items() if k != "PUBLIC_URL"}
    env["RAILWAY_PUBLIC_DOMAIN"] = "myapp.up.railway.app"
    assert resolve_runtime_config(env=env).public_base_url == "https://myapp.up.railway.app"


def test_config_scope_merge_and_dedup():
    config = resolve_runtime_config(
        env={**BASE_ENV, "GOOGLE_OAUTH_SCOPES": "email https://www.googleapis.com/auth/drive.readonly"},
        scopes=["https://www.googleapis.com/auth/calendar", "openid"],
    )
    assert config.scopes == [
        "https://www.googleapis.com/auth/calendar",
        "openid",
        "email",
        "https://www.googleapis.com/auth/drive.readonly",
        "profile",
    ]


def test_config_state_secret_preference():
    assert _config(GATEWAY_TOKEN="gw").state_secret == "gw"
    assert _config(GATEWAY_TOKEN="gw", GOOGLE_OAUTH_STATE_SECRET="explicit").state_secret == "explicit"


def test_config_path_overrides():
    config = _config(GOOGLE_OAUTH_CALLBACK_PATH="auth/cb/", GOOGLE_OAUTH_REDIRECT_URI="")
    assert config.callback_path == "/auth/cb"
    assert config.callback_url == "https://bot.example.com/auth/cb"
    assert resolve_oauth_paths({}).start_path == "/oauth/google/start"


def test_normalize_base_url():
    assert normalize_base_url("example.com/") == "https://example.com"
    assert normalize_base_url("ftp://example.com") is None
    assert normalize_base_url("") is None


def test_login_hint_validation():
    assert parse_optional_login_hint(" user@example.com ") == "user@example.com"
    assert parse_optional_login_hint("not-an-email") is None
    assert parse_optional_login_hint(None) is None


# --- urls ---------------------------------------------------------------------

def test_auth_url_parameters():
    config = _config()
    url = build_google_auth_url(config, "st4te", login_hint="u@example.com")
    query = parse_qs(urlsplit(url).query)
    assert query["client_id"] == ["cid"]
    assert query["redirect_uri"] == ["https://bot.example.com/oauth/google/callback"]
    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert query["include_granted_scopes"] == ["true"]
    assert query["scope"] == ["openid email profile"]
    assert query["state"] == ["st4te"]
    assert query["login_hint"] == ["u@example.com"]


def test_start_url():
    assert build_start_url(_config(), "abc.def") == "https://bot.example.com/oauth/google/start?state=abc.def"


# --- exchange -----------------------------------------------------------------

@patch("google_oauth.requests.post")
def test_exchange_success(mock_post):
    mock_post.return_value = _response(body={
        "access_token": "at", "refresh_token": "rt", "expires_in": 3600,
        "scope": "openid email", "token_type": "Bearer", "id_token": "idt",
    })
    tokens = exchange_authorization_code(_config(), "code-1")
    assert tokens.access_token == "at"
    assert tokens.refresh_token == "rt"
    assert tokens.expires_at is not None
    _, kwargs = mock_post.call_args
    assert kwargs["data"]["grant_type"] == "authorization_code"
    assert kwargs["data"]["code"] == "code-1"
    assert kwargs["timeout"] > 0


@pytest.mark.parametrize("resp,kind", [
    (_response(status=400, text='{"error":"invalid_grant"}'), "http"),
    (_response(text="<html>oops</html>"), "non_json"),
    (_response(body={"token_type": "Bearer"}), "missing_token"),
])
def test_exchange_failures(resp, kind):
    with patch("google_oauth.requests.post", return_value=resp):
        with pytest.raises(TokenExchangeError) as exc:
            exchange_authorization_code(_config(), "code")
    assert exc.value.kind == kind


@patch("google_oauth.requests.post", side_effect=requests.Timeout("slow"))
def test_exchange_network_failure(_mock_post):
    with pytest.raises(TokenExchangeError) as exc:
        exchange_authorization_code(_config(), "code")
    assert exc.value.kind == "network"


# --- email --------------------------------------------------------------------

def test_email_from_userinfo():
    with patch("google_oauth.requests.get", return_value=_response(body={"email": "x@example.com"})):
        assert resolve_account_email(GoogleTokens(access_token="at")) == "x@example.com"


def test_email_falls_back_to_id_token():
    id_token = jwt.encode({"email": "y@example.com"}, "k", algorithm="HS256")
    with patch("google_oauth.requests.get", side_effect=requests.ConnectionError("down")):
        assert resolve_account_email(GoogleTokens(access_token="at", id_token=id_token)) == "y@example.com"


def test_email_unknown():
    with patch("google_oauth.requests.get", return_value=_response(status=401, body={})):
        assert resolve_account_email(GoogleTokens(access_token="at")) is None
    assert extract_email_from_id_token("garbage") is None


def test_status_page_escapes():
    page = render_status_page("<b>Hi</b>", "a & b")
    assert "&lt;b&gt;Hi&lt;/b&gt;" in page
    assert "a &amp; b" in page
