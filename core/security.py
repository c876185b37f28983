"""
Admin token handling.

The admin surface has no per-user identity. A single shared secret
(ADMIN_AUTH_KEY) signs the current UTC date; the resulting hex digest is
the day's admin token, so tokens rotate at UTC midnight.
"""

import hashlib
import hmac
import logging
from datetime import date, datetime, timezone
from typing import Optional

from core.config import settings
from core.exceptions import AdminAuthError

logger = logging.getLogger(__name__)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


def generate_admin_token(secret: Optional[str] = None, day: Optional[date] = None) -> str:
    """Return the admin token for ``day`` (default: today in UTC)."""
    secret = secret if secret is not None else settings.ADMIN_AUTH_KEY
    if not secret:
        raise AdminAuthError("ADMIN_AUTH_KEY is not configured")
    day = day or _utc_today()
    message = day.isoformat().encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_admin_token(token: Optional[str], secret: Optional[str] = None, day: Optional[date] = None) -> bool:
    """Check a token against the current day's token in constant time."""
    secret = secret if secret is not None else settings.ADMIN_AUTH_KEY
    if not token or not secret:
        return False
    expected = generate_admin_token(secret, day)
    return hmac.compare_digest(expected.encode("utf-8"), token.encode("utf-8"))


def require_admin_token(token: Optional[str]) -> None:
    """Raise AdminAuthError unless ``token`` is today's admin token."""
    if not verify_admin_token(token):
        logger.warning("Rejected admin request with invalid token")
        raise AdminAuthError("No autorizado: clave de autenticación inválida")


def check_operator_password(password: Optional[str]) -> bool:
    """Compare the operator password with MIGRATION_AUTH_KEY."""
    expected = settings.MIGRATION_AUTH_KEY
    if not password or not expected:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), password.encode("utf-8"))
