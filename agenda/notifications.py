"""
Notification senders

Email goes through Resend, WhatsApp through the WhatsApp Cloud API. Each
sender exposes ``async send(to, content) -> dict`` and raises
NotificationError when the provider rejects the message, so callers can
decide whether to retry.
"""

import logging
from typing import Optional, Protocol

import httpx
import resend

from .config import (
    EMAIL_FROM_ADDRESS,
    RESEND_API_KEY,
    WHATSAPP_ACCESS_TOKEN,
    WHATSAPP_API_URL,
    WHATSAPP_PHONE_NUMBER_ID,
)
from .shared.validators import normalize_whatsapp_number, validate_email

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MessageSender(Protocol):
    channel: str

    async def send(self, to: str, content: dict) -> dict: ...


class ResendEmailSender:
    """Email via Resend. ``content`` holds ``subject`` and ``text`` (and optionally ``html``)"""

    channel = "email"

    def __init__(self, api_key: Optional[str] = RESEND_API_KEY, from_address: str = EMAIL_FROM_ADDRESS):
        self.api_key = api_key
        self.from_address = from_address

    async def send(self, to: str, content: dict) -> dict:
        email = validate_email(to)
        if not email:
            raise NotificationError(f"Invalid email address: {to}")

        resend.api_key = self.api_key
        text = content.get("text") or ""
        email_data = {
            "from": self.from_address,
            "to": [email],
            "subject": content.get("subject") or "Agenda",
            "text": text,
            "html": content.get("html") or "<br>".join(text.splitlines()),
        }
        try:
            response = resend.Emails.send(email_data)
        except Exception as e:
            logger.error(f"❌ Resend rejected email to {email}: {e}")
            raise NotificationError(f"Email send failed: {e}") from e

        logger.info(f"📧 Email sent to {email}: {content.get('subject')}")
        return dict(response) if response else {}


class WhatsAppCloudSender:
    """
    WhatsApp via the Cloud API.

    ``content`` holds either ``text`` or a ``template`` dict
    (``name``, ``lang``, ``body_params``). The response carries the provider
    message id at ``messages[0].id``.
    """

    channel = "whatsapp"

    def __init__(
        self,
        access_token: Optional[str] = WHATSAPP_ACCESS_TOKEN,
        phone_number_id: Optional[str] = WHATSAPP_PHONE_NUMBER_ID,
        api_url: str = WHATSAPP_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.phone_number_id = phone_number_id
        self.api_url = api_url.rstrip("/")
        self._transport = transport

    def _payload(self, number: str, content: dict) -> dict:
        template = content.get("template")
        if template and template.get("name"):
            body_params = [{"type": "text", "text": str(p)} for p in template.get("body_params") or []]
            return {
                "messaging_product": "whatsapp",
                "to": number,
                "type": "template",
                "template": {
                    "name": template["name"],
                    "language": {"code": template.get("lang") or "pt_BR"},
                    "components": [{"type": "body", "parameters": body_params}] if body_params else [],
                },
            }
        return {
            "messaging_product": "whatsapp",
            "to": number,
            "type": "text",
            "text": {"body": content.get("text") or ""},
        }

    async def send(self, to: str, content: dict) -> dict:
        number = normalize_whatsapp_number(to)
        if not number:
            raise NotificationError(f"Invalid WhatsApp number: {to}")

        try:
            async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
                response = await client.post(
                    f"{self.api_url}/{self.phone_number_id}/messages",
                    headers={"Authorization": f"Bearer {self.access_token}"},
                    json=self._payload(number, content),
                )
        except httpx.HTTPError as e:
            logger.error(f"❌ WhatsApp request failed for {number}: {e}")
            raise NotificationError(f"WhatsApp request failed: {e}") from e

        if response.status_code not in (200, 201):
            logger.error(f"❌ WhatsApp API error {response.status_code}: {response.text[:300]}")
            raise NotificationError(
                f"WhatsApp HTTP {response.status_code}", status_code=response.status_code
            )

        logger.info(f"💬 WhatsApp sent to {number}")
        return response.json()


def extract_provider_message_id(response: Optional[dict]) -> Optional[str]:
    """Provider message id from a Cloud API response, if any"""
    messages = (response or {}).get("messages") or []
    if messages and isinstance(messages[0], dict) and messages[0].get("id"):
        return str(messages[0]["id"])
    return None


def build_senders() -> dict[str, MessageSender]:
    """Senders for the channels that have credentials configured"""
    senders: dict[str, MessageSender] = {}
    if RESEND_API_KEY:
        senders["email"] = ResendEmailSender()
    else:
        logger.warning("⚠️ RESEND_API_KEY not set - email notifications disabled")
    if WHATSAPP_ACCESS_TOKEN and WHATSAPP_PHONE_NUMBER_ID:
        senders["whatsapp"] = WhatsAppCloudSender()
    else:
        logger.warning("⚠️ WhatsApp Cloud API not configured - WhatsApp notifications disabled")
    return senders
