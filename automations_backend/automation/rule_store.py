from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from automations_backend.models import AutomationRule
from automations_backend.schemas.automation import Rule, RuleConfig, RuleKey

logger = logging.getLogger("automations.rule_store")


class RuleStoreError(RuntimeError):
    """The enabled rule set could not be loaded; the run cannot proceed."""


class RuleStore:
    """Loads enabled automation rules grouped by tenant."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def load_enabled_rules(
        self, tenant_ids: Optional[Iterable[str]] = None
    ) -> Dict[str, List[Rule]]:
        """
        Return {tenant_id: [Rule, ...]} for every tenant with an enabled rule.

        Rows with a key outside the supported set are skipped with a warning.
        Raises RuleStoreError on any data-access failure.
        """
        stmt = select(AutomationRule).where(AutomationRule.enabled.is_(True))
        if tenant_ids is not None:
            stmt = stmt.where(AutomationRule.tenant_id.in_(list(tenant_ids)))
        stmt = stmt.order_by(AutomationRule.tenant_id, AutomationRule.id)

        try:
            with self._session_factory() as session:
                rows = session.execute(stmt).scalars().all()
                grouped = self._group(rows)
        except SQLAlchemyError as exc:
            logger.exception("Failed to load enabled automation rules")
            raise RuleStoreError(f"Failed to load automation rules: {exc}") from exc

        logger.info(
            "Loaded %d enabled rules for %d tenants",
            sum(len(v) for v in grouped.values()),
            len(grouped),
        )
        return grouped

    @staticmethod
    def _group(rows: Iterable[AutomationRule]) -> Dict[str, List[Rule]]:
        grouped: Dict[str, List[Rule]] = defaultdict(list)
        for row in rows:
            key = RuleKey.parse(row.rule_key)
            if key is None:
                logger.warning(
                    "Skipping unknown automation key %r for tenant %s",
                    row.rule_key,
                    row.tenant_id,
                )
                continue
            grouped[str(row.tenant_id)].append(
                Rule(
                    tenant_id=str(row.tenant_id),
                    key=key,
                    enabled=bool(row.enabled),
                    config=RuleConfig.from_stored(row.config),
                )
            )
        return dict(grouped)
