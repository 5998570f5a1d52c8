# oauth_routes.py — Google account linking over plain redirects
#   POST /api/oauth/google/link   (transport) -> long-lived start URL for a sender
#   GET  {start_path}?state=...   -> 302 to Google's consent screen
#   GET  {callback_path}?code=... -> exchange, persist, notify, HTML status page
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from auth import require_gateway_token
from google_oauth import (
    InvalidStateToken, OAuthConfigError, TokenExchangeError,
    build_google_auth_url, build_start_url, create_state_token,
    exchange_authorization_code, parse_optional_login_hint,
    render_status_page, resolve_account_email, resolve_oauth_paths,
    resolve_runtime_config, verify_state_token,
)
from models import LinkedGoogleAccount
from notifier import notify_user
from user_store import StoreError

log = logging.getLogger("oauth")
router = APIRouter(tags=["oauth"])

PATHS = resolve_oauth_paths()

STATE_ERROR_TEXT = {
    "missing": "This link is missing its sign-in token. Request a new link from the bot.",
    "invalid": "This sign-in link is malformed. Request a new link from the bot.",
    "signature": "This sign-in link could not be verified. Request a new link from the bot.",
    "expired": "This sign-in link has expired. Request a new link from the bot.",
}
EXCHANGE_FAILED_TEXT = "Could not finish connecting your Google account. Please try again."


def _page(status_code: int, title: str, message: str) -> HTMLResponse:
    return HTMLResponse(render_status_page(title, message), status_code=status_code)


def _config_error_page(e: OAuthConfigError) -> HTMLResponse:
    log.error("Google OAuth is not configured: %s (%s)", e, e.missing)
    return _page(500, "Google sign-in unavailable", "Google sign-in is not configured on this server.")


def _state_error_page(e: InvalidStateToken) -> HTMLResponse:
    log.info("Rejected OAuth state: %s", e.reason)
    return _page(400, "Link not valid", STATE_ERROR_TEXT.get(e.reason, STATE_ERROR_TEXT["invalid"]))


class LinkBody(BaseModel):
    user_id: int
    account_id: Optional[str] = None
    login_hint: Optional[str] = None


@router.post("/api/oauth/google/link", dependencies=[Depends(require_gateway_token)])
def create_link(body: LinkBody):
    try:
        config = resolve_runtime_config()
    except OAuthConfigError as e:
        log.error("Cannot issue Google link for %s: %s", body.user_id, e)
        raise HTTPException(503, {"error": "oauth_not_configured", "missing": e.missing})

    login_hint = parse_optional_login_hint(body.login_hint)
    state = create_state_token(
        config.state_secret, body.user_id, account_id=body.account_id, login_hint=login_hint
    )
    return {"url": build_start_url(config, state)}


@router.get(PATHS.start_path)
def oauth_start(state: Optional[str] = None):
    try:
        config = resolve_runtime_config()
    except OAuthConfigError as e:
        return _config_error_page(e)
    try:
        payload = verify_state_token(state, config.state_secret)
    except InvalidStateToken as e:
        return _state_error_page(e)
    return RedirectResponse(build_google_auth_url(config, state, payload.login_hint), status_code=302)


@router.get(PATHS.callback_path)
def oauth_callback(
    request: Request,
    state: Optional[str] = None,
    code: Optional[str] = None,
    error: Optional[str] = None,
):
    try:
        config = resolve_runtime_config()
    except OAuthConfigError as e:
        return _config_error_page(e)
    try:
        payload = verify_state_token(state, config.state_secret)
    except InvalidStateToken as e:
        return _state_error_page(e)

    notifier = request.app.state.notifier
    if error:
        log.info("Google returned error=%s for user %s", error, payload.user_id)
        notify_user(notifier, payload.user_id, "❌ Google sign-in was cancelled. Send /google to try again.")
        return _page(400, "Sign-in cancelled", f"Google reported: {error}. You can close this tab.")
    if not (code or "").strip():
        return _page(400, "Missing code", "Google did not return an authorization code. Please try again.")

    try:
        tokens = exchange_authorization_code(config, code.strip())
    except TokenExchangeError as e:
        log.warning("Token exchange failed for user %s (%s): %s", payload.user_id, e.kind, e)
        notify_user(notifier, payload.user_id, f"❌ {EXCHANGE_FAILED_TEXT} Send /google to get a new link.")
        return _page(502, "Connection failed", EXCHANGE_FAILED_TEXT)

    email = resolve_account_email(tokens)
    store = request.app.state.store
    try:
        store.link_google_account(
            payload.user_id,
            LinkedGoogleAccount(
                email=email,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
                scope=tokens.scope,
                token_type=tokens.token_type,
                id_token=tokens.id_token,
                expires_at=tokens.expires_at,
            ),
        )
    except (StoreError, SQLAlchemyError):
        log.error("Could not save Google account for user %s", payload.user_id, exc_info=True)
        notify_user(notifier, payload.user_id, f"❌ {EXCHANGE_FAILED_TEXT} Send /google to get a new link.")
        return _page(500, "Connection failed", EXCHANGE_FAILED_TEXT)
    log.info("Linked Google account for user %s", payload.user_id)

    who = email or "your Google account"
    notify_user(notifier, payload.user_id, f"✅ Connected {who}.")
    return _page(200, "Google account connected", f"Connected {who}. You can return to the chat.")


def _method_not_allowed() -> HTMLResponse:
    return HTMLResponse("Method Not Allowed", status_code=405, headers={"Allow": "GET"})


@router.api_route(PATHS.start_path, methods=["POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
def oauth_start_other_methods():
    return _method_not_allowed()


@router.api_route(PATHS.callback_path, methods=["POST", "PUT", "PATCH", "DELETE"], include_in_schema=False)
def oauth_callback_other_methods():
    return _method_not_allowed()
