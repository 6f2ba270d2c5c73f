"""
Test configuration and fixtures.

Provides:
- A throwaway SQLite database (tables recreated for every test)
- Seed helpers for rules, prospects, customers, policies and templates
- Fake Gmail token provider / gateway so runs never touch the network
"""
import asyncio
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

# Must be set before automations_backend reads its settings.
_TMP_DIR = tempfile.mkdtemp(prefix="automations-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/automations-test.db"
os.environ["GMAIL_SCHEDULER_SECRET"] = "scheduler-test-secret"
os.environ["GMAIL_CLIENT_ID"] = "test-client-id"
os.environ.pop("CRON_SECRET", None)
os.environ.pop("ADMIN_DASHBOARD_SECRET", None)

import pytest

from automations_backend.automation.entity_fetcher import EntityFetcher
from automations_backend.automation.ledger import OutcomeLedger
from automations_backend.automation.rule_store import RuleStore
from automations_backend.automation.runner import AutomationRunner
from automations_backend.automation.templates import TemplateResolver, load_templates_from_db
from automations_backend.config import settings
from automations_backend.db import Base, get_engine, get_session_factory
from automations_backend.email.tokens import AccessToken, GmailNotConnectedError
from automations_backend.models import (
    AutomationLog,
    AutomationRule,
    Customer,
    EmailTemplate,
    Lead,
    Policy,
)

# 2024-03-15 12:00 in America/Mexico_City (UTC-6, no DST since 2022).
MEXICO_NOON_2024_03_15 = datetime(2024, 3, 15, 18, 0, tzinfo=timezone.utc)


# =============================================================================
# Database
# =============================================================================

@pytest.fixture(autouse=True)
def fresh_database():
    import automations_backend.models  # noqa: F401

    engine = get_engine()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory():
    return get_session_factory()


@pytest.fixture
def test_settings():
    return settings.model_copy(
        update={
            "db_timeout_seconds": 5.0,
            "token_timeout_seconds": 1.0,
            "send_timeout_seconds": 1.0,
            "tenant_concurrency": 2,
            "send_concurrency": 3,
        }
    )


class Seeder:
    """Writes CRM rows directly, standing in for the CRUD screens."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory
        self._counter = 0

    def _add(self, obj):
        with self._session_factory() as session:
            session.add(obj)
            session.commit()
        return obj

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter}"

    def rule(self, tenant_id: str, key: str, *, enabled: bool = True, config: Optional[dict] = None):
        return self._add(
            AutomationRule(tenant_id=tenant_id, rule_key=key, enabled=enabled, config=config or {})
        )

    def lead(self, tenant_id: str, *, id: Optional[str] = None, **fields):
        return self._add(Lead(id=id or self._next_id("lead-"), tenant_id=tenant_id, **fields))

    def customer(self, tenant_id: str, *, id: Optional[str] = None, **fields):
        return self._add(Customer(id=id or self._next_id("cust-"), tenant_id=tenant_id, **fields))

    def policy(self, tenant_id: str, *, id: Optional[str] = None, **fields):
        return self._add(Policy(id=id or self._next_id("pol-"), tenant_id=tenant_id, **fields))

    def template(self, tenant_id: str, *, id: Optional[str] = None, **fields):
        return self._add(
            EmailTemplate(id=id or self._next_id("tpl-"), tenant_id=tenant_id, **fields)
        )

    def logs(self, tenant_id: Optional[str] = None) -> List[AutomationLog]:
        with self._session_factory() as session:
            query = session.query(AutomationLog)
            if tenant_id is not None:
                query = query.filter(AutomationLog.tenant_id == tenant_id)
            return query.order_by(AutomationLog.id).all()


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


# =============================================================================
# Gmail fakes
# =============================================================================

@dataclass
class SentEmail:
    access_token: str
    from_address: Optional[str]
    to: str
    subject: str
    text: Optional[str]
    html: Optional[str]


@dataclass
class FakeGateway:
    sent: List[SentEmail] = field(default_factory=list)
    fail_for: Dict[str, Exception] = field(default_factory=dict)
    slow_for: Set[str] = field(default_factory=set)
    delay_seconds: float = 5.0

    async def send(self, access_token, from_address, to, subject, text=None, html=None):
        if to in self.slow_for:
            await asyncio.sleep(self.delay_seconds)
        if to in self.fail_for:
            raise self.fail_for[to]
        self.sent.append(SentEmail(access_token, from_address, to, subject, text, html))
        return f"msg-{len(self.sent)}"


@dataclass
class FakeTokenProvider:
    tokens: Dict[str, AccessToken] = field(default_factory=dict)
    calls: List[str] = field(default_factory=list)

    async def get_access_token(self, tenant_id: str) -> AccessToken:
        self.calls.append(tenant_id)
        if tenant_id not in self.tokens:
            raise GmailNotConnectedError("Gmail no conectado")
        return self.tokens[tenant_id]


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def token_provider() -> FakeTokenProvider:
    return FakeTokenProvider()


@pytest.fixture
def make_runner(session_factory, gateway, token_provider, test_settings):
    def _make(**overrides) -> AutomationRunner:
        kwargs = dict(
            rule_store=RuleStore(session_factory),
            fetcher=EntityFetcher(session_factory, limit=test_settings.fetch_limit),
            ledger=OutcomeLedger(session_factory),
            resolver=TemplateResolver(),
            template_loader=load_templates_from_db(session_factory),
            token_provider=token_provider,
            gateway=gateway,
            settings=test_settings,
            clock=lambda: MEXICO_NOON_2024_03_15,
        )
        kwargs.update(overrides)
        return AutomationRunner(**kwargs)

    return _make
