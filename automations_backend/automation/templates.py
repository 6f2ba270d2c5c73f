from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape
from markupsafe import escape
from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from automations_backend.models import EmailTemplate
from automations_backend.schemas.automation import (
    DEFAULT_DAYS_BEFORE,
    RuleConfig,
    RuleFamily,
    RuleKey,
)

logger = logging.getLogger("automations.templates")

TEMPLATES_DIR = Path(__file__).resolve().parents[1] / "email" / "templates"

PROSPECT_FALLBACK_NAME = "Prospecto"
CUSTOMER_FALLBACK_NAME = "Cliente"

_PLACEHOLDER_TOKENS = (
    "client_name",
    "nombre_cliente",
    "nombre_prospecto",
    r"nombre\s+del\s+cliente",
)
_TOKEN_ALTERNATION = "|".join(_PLACEHOLDER_TOKENS)

# {{token}}, {token}, [token] or the bare token as a whole word.
PLACEHOLDER_RE = re.compile(
    r"\{\{\s*(?:%(t)s)\s*\}\}"
    r"|\{\s*(?:%(t)s)\s*\}"
    r"|\[\s*(?:%(t)s)\s*\]"
    r"|(?<![A-Za-z0-9_])(?:%(t)s)(?![A-Za-z0-9_])" % {"t": _TOKEN_ALTERNATION},
    re.IGNORECASE,
)


def resolve_display_name(
    full_name: Optional[str],
    first_name: Optional[str],
    last_name: Optional[str],
    fallback: str,
) -> str:
    """full name → "first last" → generic noun."""
    combined = str(full_name or "").strip()
    if combined:
        return combined
    joined = f"{first_name or ''} {last_name or ''}".strip()
    return joined or fallback


def apply_recipient_placeholders(template: str, recipient_name: str) -> str:
    """Replace every supported name placeholder with recipient_name."""
    return PLACEHOLDER_RE.sub(lambda _m: recipient_name, template)


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    text: str
    html: Optional[str] = None


@dataclass(frozen=True)
class TemplateRecord:
    id: str
    subject: Optional[str] = None
    text: Optional[str] = None
    html: Optional[str] = None


TemplateLoader = Callable[[str, List[str]], Iterable[TemplateRecord]]


def load_templates_from_db(session_factory: sessionmaker) -> TemplateLoader:
    """Build a loader equivalent to listTemplatesByIds(tenant_id, ids)."""

    def _load(tenant_id: str, ids: List[str]) -> List[TemplateRecord]:
        stmt = select(EmailTemplate).where(
            EmailTemplate.tenant_id == tenant_id,
            EmailTemplate.id.in_(ids),
        )
        with session_factory() as session:
            return [
                TemplateRecord(id=str(t.id), subject=t.subject, text=t.text, html=t.html)
                for t in session.execute(stmt).scalars()
            ]

    return _load


@dataclass
class TemplateCache:
    """
    Templates of one tenant for one run.

    Created per tenant and passed down explicitly, so nothing leaks across
    tenants or outlives the invocation.
    """

    tenant_id: str
    templates: Dict[str, TemplateRecord] = field(default_factory=dict)

    def load(self, loader: TemplateLoader, template_ids: Iterable[str]) -> None:
        wanted = sorted({str(t).strip() for t in template_ids if str(t or "").strip()})
        missing = [t for t in wanted if t not in self.templates]
        if not missing:
            return
        for record in loader(self.tenant_id, missing):
            self.templates[str(record.id)] = record
        logger.debug(
            "Template cache for tenant=%s holds %d/%d requested templates",
            self.tenant_id,
            len(self.templates),
            len(wanted),
        )

    def get(self, template_id: Optional[str]) -> Optional[TemplateRecord]:
        if not template_id:
            return None
        return self.templates.get(str(template_id))


class TemplateResolver:
    """Turns a rule plus a recipient into the subject/text/html to send."""

    def __init__(self, templates_dir: Path = TEMPLATES_DIR) -> None:
        self._env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html", "xml"]),
            keep_trailing_newline=False,
        )

    def resolve(
        self,
        rule_key: RuleKey,
        config: RuleConfig,
        recipient_display_name: str,
        cache: TemplateCache,
        *,
        policy_number: Optional[str] = None,
        days_before: Optional[int] = None,
    ) -> RenderedMessage:
        default = self.default_message(
            rule_key,
            recipient_display_name,
            policy_number=policy_number,
            days_before=days_before,
        )

        template = cache.get(config.template_id)
        if template is None:
            if config.template_id:
                logger.warning(
                    "Template %s not found for tenant=%s; using default %s message",
                    config.template_id,
                    cache.tenant_id,
                    rule_key.family.value,
                )
            return default

        name = recipient_display_name
        subject = (
            apply_recipient_placeholders(template.subject, name)
            if template.subject
            else default.subject
        )
        text = (
            apply_recipient_placeholders(template.text, name)
            if template.text
            else default.text
        )
        # Names are escaped in tenant HTML; the rest of the markup is used verbatim.
        html = (
            apply_recipient_placeholders(template.html, str(escape(name)))
            if template.html
            else None
        )
        return RenderedMessage(subject=subject, text=text, html=html)

    def default_message(
        self,
        rule_key: RuleKey,
        recipient_display_name: str,
        *,
        policy_number: Optional[str] = None,
        days_before: Optional[int] = None,
    ) -> RenderedMessage:
        context = {
            "name": recipient_display_name,
            "policy_number": policy_number or "N/A",
            "days_before": days_before or DEFAULT_DAYS_BEFORE,
        }

        if rule_key.family is RuleFamily.POLICY_RENEWAL:
            subject = f"Tu póliza {context['policy_number']} está por vencer"
            stem = "renewal_notice"
        elif rule_key.family in (RuleFamily.BIRTHDAY_PROSPECTS, RuleFamily.BIRTHDAY_CUSTOMERS):
            subject = f"Feliz cumpleaños, {recipient_display_name}"
            stem = "birthday_greeting"
        else:  # pragma: no cover - RuleFamily is closed
            raise ValueError(f"Unsupported rule family: {rule_key.family}")

        return RenderedMessage(
            subject=subject,
            text=self._render(f"{stem}.txt", context),
            html=self._render(f"{stem}.html", context),
        )

    def _render(self, template_name: str, context: Dict[str, object]) -> str:
        try:
            template = self._env.get_template(template_name)
        except Exception as exc:
            logger.error("Email template '%s' not found: %s", template_name, exc)
            raise
        return template.render(**context)
