"""Tests for the Gmail gateway and the per-tenant token provider."""

import base64
from datetime import datetime, timedelta, timezone
from email import message_from_bytes, policy

import httpx
import pytest

from automations_backend.email.config import GmailSettings
from automations_backend.email.gmail import GmailGateway, GmailSendError, build_raw_message
from automations_backend.email.tokens import (
    GmailNotConnectedError,
    GmailTokenError,
    GmailTokenProvider,
)
from automations_backend.models import GmailConnection


def _decode(raw: str):
    padded = raw + "=" * (-len(raw) % 4)
    return message_from_bytes(base64.urlsafe_b64decode(padded), policy=policy.default)


def _connect(session_factory, tenant_id="t1", **fields):
    with session_factory() as session:
        session.add(GmailConnection(tenant_id=tenant_id, **fields))
        session.commit()


GMAIL = GmailSettings(client_id="client-id", client_secret="client-secret")


def test_raw_message_is_unpadded_base64url_mime():
    raw = build_raw_message(
        from_address="agente@asygurare.com",
        to="ana@example.com",
        subject="Feliz cumpleaños, Ana",
        text="Hola Ana",
        html="<p>Hola Ana</p>",
    )

    assert "=" not in raw
    assert "+" not in raw and "/" not in raw
    msg = _decode(raw)
    assert msg["To"] == "ana@example.com"
    assert msg["From"] == "agente@asygurare.com"
    assert msg["Subject"] == "Feliz cumpleaños, Ana"
    assert msg.get_body(("plain",)).get_content().strip() == "Hola Ana"
    assert msg.get_body(("html",)).get_content().strip() == "<p>Hola Ana</p>"


def test_raw_message_text_only():
    msg = _decode(build_raw_message(from_address=None, to="a@b.co", subject="Hi", text="body"))

    assert msg["From"] is None
    assert not msg.is_multipart()


@pytest.mark.asyncio
async def test_send_posts_raw_with_bearer_token(monkeypatch):
    captured = {}

    async def fake_post(self, url, **kwargs):
        captured["url"] = url
        captured.update(kwargs)
        return httpx.Response(200, json={"id": "gmail-msg-1"})

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    message_id = await GmailGateway(GMAIL).send(
        "ya29.token", "agente@asygurare.com", "ana@example.com", "Hola", "texto", None
    )

    assert message_id == "gmail-msg-1"
    assert captured["url"] == GMAIL.send_url
    assert captured["headers"]["Authorization"] == "Bearer ya29.token"
    assert _decode(captured["json"]["raw"])["To"] == "ana@example.com"


@pytest.mark.asyncio
async def test_send_rejection_raises_with_body(monkeypatch):
    async def fake_post(self, url, **kwargs):
        return httpx.Response(403, text="Insufficient Permission")

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    with pytest.raises(GmailSendError) as excinfo:
        await GmailGateway(GMAIL).send("tok", None, "ana@example.com", "Hola", "x")

    assert str(excinfo.value) == "Insufficient Permission"
    assert excinfo.value.status_code == 403


@pytest.mark.asyncio
async def test_send_rejection_without_body(monkeypatch):
    async def fake_post(self, url, **kwargs):
        return httpx.Response(500)

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    with pytest.raises(GmailSendError, match="gmail_send_failed"):
        await GmailGateway(GMAIL).send("tok", None, "ana@example.com", "Hola", "x")


@pytest.mark.asyncio
async def test_valid_stored_token_is_reused(session_factory, monkeypatch):
    _connect(
        session_factory,
        access_token="still-good",
        refresh_token="refresh",
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=30),
        provider_email="agente@asygurare.com",
    )

    async def fail_post(self, url, **kwargs):
        raise AssertionError("token endpoint must not be called")

    monkeypatch.setattr(httpx.AsyncClient, "post", fail_post)

    token = await GmailTokenProvider(session_factory, GMAIL).get_access_token("t1")

    assert token.access_token == "still-good"
    assert token.provider_email == "agente@asygurare.com"


@pytest.mark.asyncio
async def test_nearly_expired_token_is_refreshed_and_stored(session_factory, monkeypatch):
    _connect(
        session_factory,
        access_token="old",
        refresh_token="refresh-123",
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=10),
    )
    captured = {}

    async def fake_post(self, url, **kwargs):
        captured["url"] = url
        captured["data"] = kwargs.get("data")
        return httpx.Response(200, json={"access_token": "fresh", "expires_in": 3599})

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    token = await GmailTokenProvider(session_factory, GMAIL).get_access_token("t1")

    assert token.access_token == "fresh"
    assert captured["url"] == GMAIL.token_url
    assert captured["data"]["grant_type"] == "refresh_token"
    assert captured["data"]["refresh_token"] == "refresh-123"
    assert captured["data"]["client_secret"] == "client-secret"
    with session_factory() as session:
        assert session.get(GmailConnection, "t1").access_token == "fresh"


@pytest.mark.asyncio
async def test_refresh_failure_raises(session_factory, monkeypatch):
    _connect(session_factory, refresh_token="revoked")

    async def fake_post(self, url, **kwargs):
        return httpx.Response(400, text='{"error": "invalid_grant"}')

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)

    with pytest.raises(GmailTokenError, match="refresh_failed"):
        await GmailTokenProvider(session_factory, GMAIL).get_access_token("t1")


@pytest.mark.asyncio
async def test_refresh_needs_client_id(session_factory):
    _connect(session_factory, refresh_token="refresh")

    with pytest.raises(GmailTokenError, match="Missing GMAIL_CLIENT_ID"):
        await GmailTokenProvider(session_factory, GmailSettings()).get_access_token("t1")


@pytest.mark.asyncio
async def test_not_connected(session_factory):
    _connect(session_factory, tenant_id="t2", access_token="x")

    provider = GmailTokenProvider(session_factory, GMAIL)
    with pytest.raises(GmailNotConnectedError):
        await provider.get_access_token("t1")
    with pytest.raises(GmailNotConnectedError):
        await provider.get_access_token("t2")
