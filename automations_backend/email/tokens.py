"""Per-tenant Gmail access tokens, refreshed through Google's OAuth endpoint."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from sqlalchemy.orm import sessionmaker

from automations_backend.email.config import GmailSettings, get_gmail_settings
from automations_backend.models import GmailConnection

logger = logging.getLogger("automations.email.tokens")


class GmailTokenError(RuntimeError):
    """The tenant's Gmail credential could not be turned into an access token."""


class GmailNotConnectedError(GmailTokenError):
    """The tenant never connected Gmail (or disconnected it)."""


@dataclass(frozen=True)
class AccessToken:
    access_token: str
    provider_email: Optional[str] = None


@dataclass(frozen=True)
class _StoredConnection:
    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    provider_email: Optional[str]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class GmailTokenProvider:
    """getAccessToken(tenant_id) backed by the gmail_connections table."""

    def __init__(
        self,
        session_factory: sessionmaker,
        gmail_settings: Optional[GmailSettings] = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = gmail_settings or get_gmail_settings()

    async def get_access_token(self, tenant_id: str) -> AccessToken:
        stored = await asyncio.to_thread(self._load, tenant_id)
        if stored is None or not stored.refresh_token:
            raise GmailNotConnectedError("Gmail no conectado")

        expires_at = _as_aware(stored.expires_at)
        margin = timedelta(seconds=self._settings.token_refresh_margin_seconds)
        if stored.access_token and expires_at and expires_at - _now_utc() > margin:
            return AccessToken(stored.access_token, stored.provider_email)

        logger.info("Refreshing Gmail access token for tenant=%s", tenant_id)
        access_token, new_expiry = await self._refresh(stored.refresh_token)
        await asyncio.to_thread(self._store, tenant_id, access_token, new_expiry)
        return AccessToken(access_token, stored.provider_email)

    def _load(self, tenant_id: str) -> Optional[_StoredConnection]:
        with self._session_factory() as session:
            row = session.get(GmailConnection, tenant_id)
            if row is None:
                return None
            return _StoredConnection(
                access_token=row.access_token,
                refresh_token=row.refresh_token,
                expires_at=row.expires_at,
                provider_email=row.provider_email,
            )

    def _store(self, tenant_id: str, access_token: str, expires_at: datetime) -> None:
        with self._session_factory() as session:
            row = session.get(GmailConnection, tenant_id)
            if row is None:
                return
            row.access_token = access_token
            row.expires_at = expires_at
            row.updated_at = datetime.utcnow()
            session.commit()

    async def _refresh(self, refresh_token: str) -> tuple[str, datetime]:
        if not self._settings.client_id:
            raise GmailTokenError("Missing GMAIL_CLIENT_ID")

        form = {
            "client_id": self._settings.client_id,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if self._settings.client_secret:
            form["client_secret"] = self._settings.client_secret

        async with httpx.AsyncClient(timeout=self._settings.token_timeout_seconds) as client:
            response = await client.post(self._settings.token_url, data=form)

        if response.status_code >= 400:
            raise GmailTokenError(f"refresh_failed: {response.text[:500]}")

        payload = response.json()
        access_token = payload.get("access_token")
        if not access_token:
            raise GmailTokenError("refresh_failed: no access_token in response")

        expires_in = int(payload.get("expires_in") or 3600)
        return str(access_token), _now_utc() + timedelta(seconds=expires_in)
