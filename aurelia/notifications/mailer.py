from typing import Any, Dict, Optional, Protocol

import httpx

from aurelia.common.logging_setup import get_logger

logger = get_logger("aurelia.notifications")


class MailSender(Protocol):
    async def send(self, *, recipient: str, subject: str, body: str,
                   metadata: Optional[Dict[str, Any]] = None) -> None: ...


class HttpMailSender:
    """Hands messages to a transactional mail relay over HTTP."""

    def __init__(self, relay_url: str, sender: str, *, token: Optional[str] = None, timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.relay_url = relay_url
        self.sender = sender
        self.token = token
        self.timeout = timeout
        self._transport = transport

    async def send(self, *, recipient: str, subject: str, body: str,
                   metadata: Optional[Dict[str, Any]] = None) -> None:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        message = {
            "from": self.sender,
            "to": recipient,
            "subject": subject,
            "text": body,
            "metadata": metadata or {},
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.post(self.relay_url, json=message, headers=headers)
            resp.raise_for_status()


class LogMailSender:
    """Used when no relay is configured: the message is only logged."""

    async def send(self, *, recipient: str, subject: str, body: str,
                   metadata: Optional[Dict[str, Any]] = None) -> None:
        logger.info("mail.log_only", extra={"recipient": recipient, "subject": subject, "mail_metadata": metadata or {}})


def build_mail_sender(settings) -> MailSender:
    if settings.MAIL_RELAY_URL:
        return HttpMailSender(
            settings.MAIL_RELAY_URL,
            settings.MAIL_FROM,
            token=settings.MAIL_RELAY_TOKEN,
            timeout=settings.MAIL_TIMEOUT_SECONDS,
        )
    return LogMailSender()
