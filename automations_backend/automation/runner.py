"""
Scheduled automation run.

One invocation walks every tenant with an enabled rule, evaluates the rules
against the tenant's records on the tenant-local calendar day, sends or skips,
and records exactly one outcome per (tenant, rule, target, run date).
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy.orm import sessionmaker

from automations_backend.automation.entity_fetcher import EntityFetcher, TenantRecords
from automations_backend.automation.ledger import (
    OutcomeEntry,
    OutcomeKey,
    OutcomeLedger,
)
from automations_backend.automation.rule_store import RuleStore, RuleStoreError
from automations_backend.automation.templates import (
    CUSTOMER_FALLBACK_NAME,
    TemplateCache,
    TemplateLoader,
    TemplateResolver,
    load_templates_from_db,
)
from automations_backend.automation.time_context import TimeContext, month_day
from automations_backend.config import Settings
from automations_backend.email.gmail import GmailGateway
from automations_backend.email.tokens import AccessToken, GmailTokenProvider
from automations_backend.schemas.automation import (
    OutcomeStatus,
    Rule,
    RuleFamily,
    RunSummary,
    TargetTable,
)

logger = logging.getLogger("automations.runner")

_ANGLE_ADDRESS = re.compile(r"<([^>]+)>")
_EMAIL_SHAPE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

RESERVED_MESSAGE = "Envío en curso"
NOT_CONNECTED_MESSAGE = "Gmail no conectado"
SEND_TIMEOUT_MESSAGE = "Tiempo de espera agotado al enviar el correo"

_INVALID_EMAIL_MESSAGES: Dict[RuleFamily, str] = {
    RuleFamily.BIRTHDAY_PROSPECTS: "Prospecto sin email válido",
    RuleFamily.BIRTHDAY_CUSTOMERS: "Cliente sin email válido",
    RuleFamily.POLICY_RENEWAL: "Cliente sin email válido para aviso de renovación",
}
_SEND_ERROR_MESSAGES: Dict[RuleFamily, str] = {
    RuleFamily.BIRTHDAY_PROSPECTS: "Error al enviar",
    RuleFamily.BIRTHDAY_CUSTOMERS: "Error al enviar",
    RuleFamily.POLICY_RENEWAL: "Error al enviar aviso de renovación",
}


def normalize_email(raw: Optional[str]) -> str:
    """Trim, unwrap "Name <addr>" and lowercase."""
    value = str(raw or "").strip()
    match = _ANGLE_ADDRESS.search(value)
    address = match.group(1) if match else value
    return address.strip().lower()


def is_valid_email(address: str) -> bool:
    return bool(_EMAIL_SHAPE.match(address))


@dataclass(frozen=True)
class TargetEvent:
    """A record that matched a rule during this run."""

    rule: Rule
    target_table: TargetTable
    target_id: str
    display_name: str
    email: Optional[str]
    policy_number: Optional[str] = None
    days_before: Optional[int] = None

    def notify_message(self) -> str:
        family = self.rule.key.family
        if family is RuleFamily.BIRTHDAY_PROSPECTS:
            return f"Cumpleaños de prospecto: {self.display_name}"
        if family is RuleFamily.BIRTHDAY_CUSTOMERS:
            return f"Cumpleaños de cliente: {self.display_name}"
        return (
            f"Póliza {self.policy_number} de {self.display_name} "
            f"vence en {self.days_before} días"
        )

    def sent_message(self) -> str:
        if self.rule.key.family is RuleFamily.POLICY_RENEWAL:
            return f"Aviso de renovación enviado para póliza {self.policy_number}"
        return f"Email de cumpleaños enviado a {self.display_name}"

    def base_metadata(self) -> Dict[str, Any]:
        if self.rule.key.family is RuleFamily.POLICY_RENEWAL:
            return {"days_before": self.days_before}
        return {}


def resolve_timezone(rules: Iterable[Rule]) -> Optional[str]:
    """The first rule that names a timezone decides it for the whole tenant."""
    for rule in rules:
        if rule.config.timezone:
            return rule.config.timezone
    return None


def evaluate_rule(rule: Rule, records: TenantRecords, time_ctx: TimeContext) -> Iterator[TargetEvent]:
    """Yield one TargetEvent per record the rule matches today."""
    family = rule.key.family
    table = rule.key.target_table

    if family is RuleFamily.BIRTHDAY_PROSPECTS or family is RuleFamily.BIRTHDAY_CUSTOMERS:
        candidates = records.prospects if family is RuleFamily.BIRTHDAY_PROSPECTS else records.customers
        today_md = time_ctx.today_month_day
        for person in candidates:
            if month_day(person.birthday) != today_md:
                continue
            yield TargetEvent(
                rule=rule,
                target_table=table,
                target_id=person.id,
                display_name=person.display_name,
                email=person.email,
            )

    elif family is RuleFamily.POLICY_RENEWAL:
        days_before = rule.config.effective_days_before
        for policy in records.policies:
            if time_ctx.days_until(policy.expiry_date) != days_before:
                continue
            customer = records.customer_for(policy)
            yield TargetEvent(
                rule=rule,
                target_table=table,
                target_id=policy.id,
                display_name=customer.display_name if customer else CUSTOMER_FALLBACK_NAME,
                email=customer.email if customer else None,
                policy_number=str(policy.policy_number or "N/A"),
                days_before=days_before,
            )

    else:  # pragma: no cover - RuleFamily is closed
        raise ValueError(f"Unsupported rule family: {family}")


@dataclass
class TenantRun:
    """State shared by the targets of one tenant during one invocation."""

    tenant_id: str
    time: TimeContext
    token: Optional[AccessToken]
    templates: TemplateCache
    send_slots: asyncio.Semaphore


class AutomationRunner:
    """Orchestrates RuleStore → per tenant fetch → evaluate → dispatch → ledger."""

    def __init__(
        self,
        *,
        rule_store: RuleStore,
        fetcher: EntityFetcher,
        ledger: OutcomeLedger,
        resolver: TemplateResolver,
        template_loader: TemplateLoader,
        token_provider: GmailTokenProvider,
        gateway: GmailGateway,
        settings: Settings,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.rule_store = rule_store
        self.fetcher = fetcher
        self.ledger = ledger
        self.resolver = resolver
        self.template_loader = template_loader
        self.token_provider = token_provider
        self.gateway = gateway
        self.settings = settings
        self._clock = clock

    @classmethod
    def from_session_factory(
        cls, session_factory: sessionmaker, settings: Settings
    ) -> "AutomationRunner":
        return cls(
            rule_store=RuleStore(session_factory),
            fetcher=EntityFetcher(session_factory, limit=settings.fetch_limit),
            ledger=OutcomeLedger(session_factory),
            resolver=TemplateResolver(),
            template_loader=load_templates_from_db(session_factory),
            token_provider=GmailTokenProvider(session_factory),
            gateway=GmailGateway(),
            settings=settings,
        )

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        *,
        now: Optional[datetime] = None,
        tenant_ids: Optional[Sequence[str]] = None,
    ) -> RunSummary:
        instant = now or self._clock()
        try:
            rules_by_tenant = await asyncio.wait_for(
                asyncio.to_thread(self.rule_store.load_enabled_rules, tenant_ids),
                self.settings.db_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Timed out loading automation rules")
            raise RuleStoreError("Timed out loading automation rules") from exc

        if not rules_by_tenant:
            logger.info("No enabled automation rules; nothing to do")
            return RunSummary(ok=True, users=0, processed=0)

        tenant_slots = asyncio.Semaphore(self.settings.tenant_concurrency)

        async def _guarded(tenant_id: str, rules: List[Rule]) -> int:
            async with tenant_slots:
                try:
                    return await self._run_tenant(tenant_id, rules, instant)
                except Exception:
                    logger.exception("Automation run failed for tenant=%s; skipping", tenant_id)
                    return 0

        counts = await asyncio.gather(
            *(_guarded(tenant_id, rules) for tenant_id, rules in rules_by_tenant.items())
        )
        summary = RunSummary(ok=True, users=len(rules_by_tenant), processed=sum(counts))
        logger.info(
            "Automation run finished: users=%d processed=%d",
            summary.users,
            summary.processed,
        )
        return summary

    # ------------------------------------------------------------------
    # Per tenant
    # ------------------------------------------------------------------

    async def _run_tenant(self, tenant_id: str, rules: List[Rule], instant: datetime) -> int:
        rules = [r for r in rules if r.enabled]
        time_ctx = TimeContext.for_timezone(
            instant, resolve_timezone(rules), self.settings.default_timezone
        )

        records = await self.fetcher.fetch(
            tenant_id, [r.key for r in rules], self.settings.db_timeout_seconds
        )

        templates = TemplateCache(tenant_id)
        template_ids = [r.config.template_id for r in rules if r.config.template_id]
        if template_ids:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(templates.load, self.template_loader, template_ids),
                    self.settings.db_timeout_seconds,
                )
            except Exception:
                logger.warning(
                    "Could not load templates for tenant=%s; default messages will be used",
                    tenant_id,
                    exc_info=True,
                )

        token: Optional[AccessToken] = None
        if any(r.key.sends_email for r in rules):
            token = await self._acquire_token(tenant_id)

        run = TenantRun(
            tenant_id=tenant_id,
            time=time_ctx,
            token=token,
            templates=templates,
            send_slots=asyncio.Semaphore(self.settings.send_concurrency),
        )

        events = [event for rule in rules for event in evaluate_rule(rule, records, time_ctx)]
        logger.info(
            "Tenant=%s run_date=%s tz=%s rules=%d matches=%d",
            tenant_id,
            time_ctx.run_date.isoformat(),
            time_ctx.zone.key,
            len(rules),
            len(events),
        )
        if not events:
            return 0

        results = await asyncio.gather(*(self._handle_target(run, e) for e in events))
        return sum(results)

    async def _acquire_token(self, tenant_id: str) -> Optional[AccessToken]:
        try:
            return await asyncio.wait_for(
                self.token_provider.get_access_token(tenant_id),
                self.settings.token_timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "No Gmail token for tenant=%s (%s); email rules will be skipped",
                tenant_id,
                str(exc) or type(exc).__name__,
            )
            return None

    # ------------------------------------------------------------------
    # Per target
    # ------------------------------------------------------------------

    async def _handle_target(self, run: TenantRun, event: TargetEvent) -> int:
        """Process one matched target. Returns 1 if its outcome reached the ledger."""
        key = OutcomeKey(
            tenant_id=run.tenant_id,
            rule_key=event.rule.key,
            target_table=event.target_table,
            target_id=event.target_id,
            run_date=run.time.run_date,
        )

        if not event.rule.key.sends_email:
            return await self._record(
                OutcomeEntry(key, OutcomeStatus.OK, event.notify_message(), event.base_metadata())
            )

        to = normalize_email(event.email)
        if run.token is None or not is_valid_email(to):
            reason = (
                NOT_CONNECTED_MESSAGE
                if run.token is None
                else _INVALID_EMAIL_MESSAGES[event.rule.key.family]
            )
            return await self._record(OutcomeEntry(key, OutcomeStatus.SKIPPED, reason))

        return await self._send_and_record(run, run.token, event, key, to)

    async def _send_and_record(
        self,
        run: TenantRun,
        token: AccessToken,
        event: TargetEvent,
        key: OutcomeKey,
        to: str,
    ) -> int:
        metadata = {"to": to, **event.base_metadata()}

        # Reserve the ledger row first: only the invocation that creates it sends.
        try:
            reserved = await self._ledger_call(
                self.ledger.record_once,
                OutcomeEntry(key, OutcomeStatus.ERROR, RESERVED_MESSAGE, metadata),
            )
        except Exception:
            logger.exception("Could not reserve ledger row for %s; not sending", key)
            return 0

        if not reserved:
            logger.info(
                "Outcome for %s/%s already recorded on %s; not sending again",
                event.rule.key.value,
                event.target_id,
                key.run_date,
            )
            return 1

        try:
            message = self.resolver.resolve(
                event.rule.key,
                event.rule.config,
                event.display_name,
                run.templates,
                policy_number=event.policy_number,
                days_before=event.days_before,
            )
            async with run.send_slots:
                await asyncio.wait_for(
                    self.gateway.send(
                        token.access_token,
                        token.provider_email,
                        to,
                        message.subject,
                        message.text,
                        message.html,
                    ),
                    self.settings.send_timeout_seconds,
                )
        except asyncio.TimeoutError:
            logger.warning("Send to %s timed out for %s", to, key)
            status, text = OutcomeStatus.ERROR, SEND_TIMEOUT_MESSAGE
        except Exception as exc:
            logger.warning("Send to %s failed for %s: %s", to, key, exc, exc_info=True)
            status = OutcomeStatus.ERROR
            text = str(exc) or _SEND_ERROR_MESSAGES[event.rule.key.family]
        else:
            status, text = OutcomeStatus.OK, event.sent_message()

        try:
            await self._ledger_call(self.ledger.finalize, key, status, text, metadata)
        except Exception:
            logger.exception("Could not finalize ledger row for %s (status=%s)", key, status.value)
        return 1

    async def _record(self, entry: OutcomeEntry) -> int:
        try:
            await self._ledger_call(self.ledger.record_once, entry)
        except Exception:
            logger.exception("Could not write outcome %s for %s", entry.status.value, entry.key)
            return 0
        return 1

    async def _ledger_call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args), self.settings.db_timeout_seconds
        )
