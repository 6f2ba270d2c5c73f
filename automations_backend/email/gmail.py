"""Gmail sending gateway.

Uses the Gmail API to send as the tenant's connected account.
"""

from __future__ import annotations

import base64
import logging
from email import policy
from email.message import EmailMessage
from typing import Optional

import httpx

from automations_backend.email.config import GmailSettings, get_gmail_settings

logger = logging.getLogger("automations.email.gmail")

MAX_ERROR_DETAIL = 400


class GmailSendError(RuntimeError):
    """Gmail rejected the message; str(exc) carries the API's response body."""

    def __init__(self, detail: str, status_code: Optional[int] = None) -> None:
        super().__init__(detail)
        self.status_code = status_code


def build_raw_message(
    *,
    from_address: Optional[str],
    to: str,
    subject: str,
    text: Optional[str] = None,
    html: Optional[str] = None,
) -> str:
    """Compose a MIME message and return it base64url-encoded for the Gmail API."""
    msg = EmailMessage(policy=policy.SMTP)
    if from_address:
        msg["From"] = from_address
    msg["To"] = to
    msg["Subject"] = subject

    msg.set_content(text or "", charset="utf-8")
    if html:
        msg.add_alternative(html, subtype="html", charset="utf-8")

    return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii").rstrip("=")


class GmailGateway:
    """send(access_token, from, to, subject, text, html) against users/me/messages/send."""

    def __init__(self, gmail_settings: Optional[GmailSettings] = None) -> None:
        self._settings = gmail_settings or get_gmail_settings()

    async def send(
        self,
        access_token: str,
        from_address: Optional[str],
        to: str,
        subject: str,
        text: Optional[str] = None,
        html: Optional[str] = None,
    ) -> Optional[str]:
        """Send one email. Returns the Gmail message id; raises GmailSendError on rejection."""
        raw = build_raw_message(
            from_address=from_address,
            to=to,
            subject=subject,
            text=text,
            html=html,
        )

        async with httpx.AsyncClient(timeout=self._settings.send_timeout_seconds) as client:
            response = await client.post(
                self._settings.send_url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                },
                json={"raw": raw},
            )

        if response.status_code >= 400:
            detail = (response.text or "")[:MAX_ERROR_DETAIL] or "gmail_send_failed"
            logger.warning(
                "Gmail API rejected message to %s: status=%s",
                to,
                response.status_code,
            )
            raise GmailSendError(detail, status_code=response.status_code)

        message_id = response.json().get("id") if response.content else None
        logger.info("Email sent via Gmail to=%s id=%s", to, message_id)
        return message_id
