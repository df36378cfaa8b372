# listing_bot/transport/security.py
"""
Request authentication helpers.

- Meta webhook: X-Hub-Signature-256 HMAC over the raw body.
- Operational endpoints (/cron/process, /metrics): static Bearer secrets
  compared in constant time.
"""
from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from fastapi import HTTPException, Request, status

from listing_bot.infra.logging_config import get_logger

logger = get_logger(__name__)


def verify_meta_signature(signature_header: str, body: bytes, app_secret: str) -> bool:
    """
    Check an ``X-Hub-Signature-256: sha256=<hex>`` header against *body*.
    """
    if not signature_header:
        logger.warning("Meta webhook: missing X-Hub-Signature-256 header")
        return False

    if not signature_header.startswith("sha256="):
        logger.warning("Meta webhook: invalid signature format")
        return False

    expected_sig = signature_header[7:]
    computed_sig = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected_sig, computed_sig)


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def check_bearer_secret(request: Request, secret: Optional[str], *, endpoint: str) -> None:
    """
    Raise 401 unless the request carries ``Authorization: Bearer <secret>``.
    A missing secret means the endpoint is open.
    """
    if not secret:
        return

    token = bearer_token(request)
    if token is None:
        logger.warning(f"{endpoint}: request without bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(token, secret):
        logger.warning(f"{endpoint}: invalid bearer token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )


def add_security_headers(response):
    """OWASP API headers; the service serves JSON and plain text only."""
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    if "Cache-Control" not in response.headers:
        response.headers["Cache-Control"] = "no-store"
    return response
