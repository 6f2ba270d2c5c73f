from __future__ import annotations

import logging
from typing import Any, Callable, Dict

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from automations_backend.auth import authenticated_admin, is_scheduler_authorized
from automations_backend.automation.rule_store import RuleStoreError
from automations_backend.automation.runner import AutomationRunner
from automations_backend.config import ConfigurationError, settings
from automations_backend.db import get_db, get_session_factory
from automations_backend.schemas.automation import AutomationUpsertIn, RuleKey
from automations_backend.services.automations import (
    list_automation_logs,
    list_tenant_automations,
    upsert_automation,
)

logger = logging.getLogger("automations.routers.automations")

router = APIRouter(prefix="/api", tags=["automations"])

RunnerFactory = Callable[[], AutomationRunner]


def build_default_runner() -> AutomationRunner:
    return AutomationRunner.from_session_factory(get_session_factory(), settings)


def get_runner_factory() -> RunnerFactory:
    """Dependency seam so tests can swap the runner wiring."""
    return build_default_runner


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message}, status_code=status_code)


@router.api_route(
    "/automations/run",
    methods=["GET", "POST"],
    summary="Run every enabled automation once (scheduler trigger).",
)
async def run_automations(
    request: Request,
    runner_factory: RunnerFactory = Depends(get_runner_factory),
) -> JSONResponse:
    """
    Scheduler entry point.

    Requires the scheduler secret via `X-Scheduler-Secret` or
    `Authorization: Bearer ...`. Returns {ok, users, processed}.
    """
    secret = settings.scheduler_secret
    if not secret:
        logger.error("Scheduler secret is not configured (GMAIL_SCHEDULER_SECRET / CRON_SECRET)")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Missing CRON secret")

    if not is_scheduler_authorized(request, secret):
        logger.warning(
            "Unauthorized scheduler call from %s",
            request.client.host if request.client else "unknown",
        )
        return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized scheduler")

    try:
        runner = runner_factory()
        summary = await runner.run()
    except ConfigurationError as exc:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
    except RuleStoreError as exc:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
    except Exception as exc:
        logger.exception("Automation run failed")
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc) or type(exc).__name__)

    return JSONResponse(summary.model_dump(), status_code=status.HTTP_200_OK)


@router.get(
    "/tenants/{tenant_id}/automations",
    summary="List a tenant's automation rules (stored rows over defaults).",
)
def get_tenant_automations(
    tenant_id: str,
    db: Session = Depends(get_db),
    _admin: Any = Depends(authenticated_admin),
) -> Dict[str, Any]:
    automations = list_tenant_automations(
        db, tenant_id, default_timezone=settings.default_timezone
    )
    return {"ok": True, "automations": [a.model_dump(mode="json") for a in automations]}


@router.post(
    "/tenants/{tenant_id}/automations",
    summary="Enable, disable or reconfigure one automation rule.",
)
def save_tenant_automation(
    tenant_id: str,
    payload: AutomationUpsertIn,
    db: Session = Depends(get_db),
    _admin: Any = Depends(authenticated_admin),
) -> Any:
    key = RuleKey.parse(payload.key)
    if key is None:
        return _error(status.HTTP_400_BAD_REQUEST, "key inválido")

    automation = upsert_automation(
        db,
        tenant_id,
        key,
        enabled=payload.enabled,
        config=payload.config,
    )
    return {"ok": True, "automation": automation.model_dump(mode="json")}


@router.get(
    "/tenants/{tenant_id}/automations/logs",
    summary="Notification history written by the automation runs.",
)
def get_tenant_automation_logs(
    tenant_id: str,
    limit: int = Query(default=100),
    db: Session = Depends(get_db),
    _admin: Any = Depends(authenticated_admin),
) -> Dict[str, Any]:
    logs = list_automation_logs(db, tenant_id, limit=limit)
    return {"ok": True, "logs": [entry.model_dump(mode="json") for entry in logs]}
