# auth.py — shared-secret checks for the two kinds of callers we serve:
#   * the messaging transport (X-Gateway-Token == GATEWAY_TOKEN)
#   * operators (X-Admin-Token == ADMIN_API_TOKEN)
import hmac
import logging
import os
from typing import Optional

from fastapi import Header, HTTPException, status

log = logging.getLogger("auth")


def _token_matches(expected: str, supplied: Optional[str]) -> bool:
    return hmac.compare_digest(expected.encode(), (supplied or "").encode())


def require_gateway_token(x_gateway_token: Optional[str] = Header(default=None, alias="X-Gateway-Token")):
    expected = os.getenv("GATEWAY_TOKEN", "").strip()
    if not expected:
        log.error("GATEWAY_TOKEN is not configured; refusing transport call")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Gateway token not configured")
    if not _token_matches(expected, x_gateway_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid gateway token")


def require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")):
    expected = os.getenv("ADMIN_API_TOKEN", "").strip()
    if not expected or not _token_matches(expected, x_admin_token):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin token invalid")
