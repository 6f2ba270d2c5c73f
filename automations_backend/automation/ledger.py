from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy import func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from automations_backend.models import AutomationLog
from automations_backend.models.automation_log import NATURAL_KEY_COLUMNS
from automations_backend.schemas.automation import OutcomeStatus, RuleKey, TargetTable

logger = logging.getLogger("automations.ledger")

MAX_MESSAGE_LENGTH = 400


def truncate_message(message: Optional[str], limit: int = MAX_MESSAGE_LENGTH) -> str:
    text = str(message or "")
    return text if len(text) <= limit else text[:limit]


@dataclass(frozen=True)
class OutcomeKey:
    tenant_id: str
    rule_key: RuleKey
    target_table: TargetTable
    target_id: str
    run_date: datetime.date

    def as_row(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "rule_key": self.rule_key.value,
            "target_table": self.target_table.value,
            "target_id": self.target_id,
            "run_date": self.run_date,
        }


@dataclass(frozen=True)
class OutcomeEntry:
    key: OutcomeKey
    status: OutcomeStatus
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class OutcomeLedger:
    """
    Append-only outcome log keyed by (tenant, rule, target table, target, run date).

    record_once() is an insert-or-ignore: a second write for the same key is
    absorbed silently. finalize() only ever touches a row this process
    reserved itself with record_once().
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def record_once(self, entry: OutcomeEntry) -> bool:
        """Insert entry unless its key exists. Returns True if a row was created."""
        values = {
            **entry.key.as_row(),
            "status": entry.status.value,
            "message": truncate_message(entry.message),
            "metadata": dict(entry.metadata),
            "created_at": datetime.datetime.utcnow(),
        }

        with self._session_factory() as session:
            dialect = session.get_bind().dialect.name
            if dialect in ("sqlite", "postgresql"):
                created = self._insert_ignore(session, dialect, values)
            else:
                created = self._insert_or_absorb(session, values)

        if created:
            logger.debug(
                "Ledger recorded %s for %s/%s/%s on %s",
                entry.status.value,
                entry.key.rule_key.value,
                entry.key.target_table.value,
                entry.key.target_id,
                entry.key.run_date,
            )
        else:
            logger.info(
                "Ledger already has %s/%s/%s for tenant=%s on %s; duplicate absorbed",
                entry.key.rule_key.value,
                entry.key.target_table.value,
                entry.key.target_id,
                entry.key.tenant_id,
                entry.key.run_date,
            )
        return created

    def finalize(
        self,
        key: OutcomeKey,
        status: OutcomeStatus,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Overwrite the outcome of a row previously reserved by this process."""
        values: Dict[str, Any] = {
            "status": status.value,
            "message": truncate_message(message),
        }
        if metadata is not None:
            values["meta"] = dict(metadata)

        stmt = update(AutomationLog).where(*self._key_clause(key)).values(**values)
        with self._session_factory() as session:
            try:
                result = session.execute(stmt)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                raise
        if result.rowcount == 0:
            logger.error("Ledger finalize found no row for %s", key)

    def get(self, key: OutcomeKey) -> Optional[AutomationLog]:
        stmt = select(AutomationLog).where(*self._key_clause(key))
        with self._session_factory() as session:
            return session.execute(stmt).scalar_one_or_none()

    def count(self, key: OutcomeKey) -> int:
        stmt = select(func.count()).select_from(AutomationLog).where(*self._key_clause(key))
        with self._session_factory() as session:
            return int(session.execute(stmt).scalar_one())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _key_clause(key: OutcomeKey) -> list:
        row = key.as_row()
        return [getattr(AutomationLog, col) == row[col] for col in NATURAL_KEY_COLUMNS]

    @staticmethod
    def _insert_ignore(session: Session, dialect: str, values: Dict[str, Any]) -> bool:
        insert_fn = sqlite_insert if dialect == "sqlite" else pg_insert
        stmt = (
            insert_fn(AutomationLog.__table__)
            .values(**values)
            .on_conflict_do_nothing(index_elements=list(NATURAL_KEY_COLUMNS))
        )
        try:
            result = session.execute(stmt)
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        return result.rowcount == 1

    @staticmethod
    def _insert_or_absorb(session: Session, values: Dict[str, Any]) -> bool:
        try:
            session.execute(insert(AutomationLog.__table__).values(**values))
            session.commit()
        except IntegrityError:
            session.rollback()
            return False
        except SQLAlchemyError:
            session.rollback()
            raise
        return True
