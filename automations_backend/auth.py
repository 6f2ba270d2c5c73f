# automations_backend/auth.py

"""
Authentication helpers for the automations backend.

Two shared-secret schemes:
- Scheduler trigger: the cron caller sends the configured
  GMAIL_SCHEDULER_SECRET / CRON_SECRET as `X-Scheduler-Secret: <value>`
  or `Authorization: Bearer <value>`.
- Tenant automation API: `X-Admin-Secret: <ADMIN_DASHBOARD_SECRET>`.
  If ADMIN_DASHBOARD_SECRET is not set, authenticated_admin()
  will allow all requests (useful for local dev).
"""

import hmac
import logging
from typing import Any, Optional

from fastapi import HTTPException, Request, status

from automations_backend.config import settings

logger = logging.getLogger("automations.auth")


def secrets_match(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison; empty values never match."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def _bearer_token(request: Request) -> str:
    header = request.headers.get("authorization") or ""
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip()
    return ""


def is_scheduler_authorized(request: Request, secret: str) -> bool:
    """Accept the secret from X-Scheduler-Secret or a bearer token."""
    if secrets_match(request.headers.get("x-scheduler-secret"), secret):
        return True
    return secrets_match(_bearer_token(request), secret)


def _get_admin_secret() -> Optional[str]:
    """Return the configured admin secret, or None if not set."""
    secret = settings.admin_dashboard_secret
    if not secret:
        logger.warning(
            "ADMIN_DASHBOARD_SECRET is not set; tenant automation endpoints are "
            "effectively unprotected. Set this env var in production."
        )
    return secret


def authenticated_admin(request: Request) -> Any:
    """
    Dependency used on tenant automation routes.

    - If ADMIN_DASHBOARD_SECRET is set:
        Require header `X-Admin-Secret` to match that value.
    - If not set:
        Allow all requests (dev mode).
    """
    admin_secret = _get_admin_secret()
    if not admin_secret:
        return {"admin": True, "mode": "unprotected"}

    if not secrets_match(request.headers.get("X-Admin-Secret"), admin_secret):
        logger.warning(
            "Unauthorized admin access attempt from %s",
            request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No autorizado",
        )

    return {"admin": True, "mode": "header-secret"}
