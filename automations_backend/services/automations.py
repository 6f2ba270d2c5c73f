from __future__ import annotations

import logging
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.orm import Session

from automations_backend.models import AutomationLog, AutomationRule
from automations_backend.schemas.automation import (
    AutomationLogOut,
    AutomationOut,
    RuleConfig,
    RuleKey,
    default_automations,
)

logger = logging.getLogger("automations.services.automations")

MIN_LOG_LIMIT = 1
MAX_LOG_LIMIT = 500


def clamp_log_limit(limit: Any, default: int = 100) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        value = default
    return min(max(value, MIN_LOG_LIMIT), MAX_LOG_LIMIT)


def list_tenant_automations(
    session: Session,
    tenant_id: str,
    *,
    default_timezone: str,
) -> List[AutomationOut]:
    """
    Return all six rules for a tenant.

    Stored rows override the default catalog; keys the engine does not know
    are left out.
    """
    rows = session.execute(
        select(AutomationRule).where(AutomationRule.tenant_id == tenant_id)
    ).scalars()

    stored: Dict[str, AutomationOut] = {}
    for row in rows:
        key = RuleKey.parse(row.rule_key)
        if key is None:
            continue
        stored[key.value] = AutomationOut(
            key=key,
            enabled=bool(row.enabled),
            config=dict(row.config or {}),
        )

    return [
        stored.get(base["key"]) or AutomationOut(**base)
        for base in default_automations(default_timezone)
    ]


def upsert_automation(
    session: Session,
    tenant_id: str,
    key: RuleKey,
    *,
    enabled: bool,
    config: RuleConfig,
) -> AutomationOut:
    """Create or replace the tenant's row for key."""
    try:
        row = session.execute(
            select(AutomationRule).where(
                AutomationRule.tenant_id == tenant_id,
                AutomationRule.rule_key == key.value,
            )
        ).scalar_one_or_none()

        config_blob = config.model_dump(exclude_none=True)
        if row is None:
            row = AutomationRule(
                tenant_id=tenant_id,
                rule_key=key.value,
                enabled=enabled,
                config=config_blob,
            )
            session.add(row)
        else:
            row.enabled = enabled
            row.config = config_blob
        session.flush()

        logger.info(
            "Automation %s for tenant=%s set enabled=%s config=%s",
            key.value,
            tenant_id,
            enabled,
            config_blob,
        )
        return AutomationOut(key=key, enabled=bool(row.enabled), config=dict(row.config or {}))

    except Exception:
        logger.exception("Failed to upsert automation %s for tenant=%s", key.value, tenant_id)
        raise


def list_automation_logs(
    session: Session,
    tenant_id: str,
    *,
    limit: int = 100,
) -> List[AutomationLogOut]:
    """Newest-first notification history for a tenant."""
    rows = session.execute(
        select(AutomationLog)
        .where(AutomationLog.tenant_id == tenant_id)
        .order_by(AutomationLog.created_at.desc(), AutomationLog.id.desc())
        .limit(clamp_log_limit(limit))
    ).scalars()

    return [
        AutomationLogOut(
            id=row.id,
            automation_key=row.rule_key,
            target_table=row.target_table,
            target_id=row.target_id,
            status=row.status,
            message=row.message or "",
            run_date=row.run_date,
            metadata=dict(row.meta or {}),
            created_at=row.created_at,
        )
        for row in rows
    ]
