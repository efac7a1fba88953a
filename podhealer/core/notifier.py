"""
Pod Healer - Notifier
=====================

Best-effort delivery of HealEvents. A notifier never raises: delivery
errors are logged and reported as ``False`` so a broken webhook or mail
relay can never fail a remediation or stop the scan loop.

Variants are selected by ``Settings.notifier``:
- noop:    log at debug level only
- webhook: POST the event as JSON
- email:   send a plain-text mail through SMTP
"""

import asyncio
import smtplib
from email.message import EmailMessage
from typing import Optional, Protocol

import httpx

from podhealer.config import Settings
from podhealer.constants import NotifierKind
from podhealer.schemas.events import HealEvent
from podhealer.utils.logging import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    async def notify(self, event: HealEvent) -> bool: ...

    async def close(self) -> None: ...


class NoopNotifier:
    async def notify(self, event: HealEvent) -> bool:
        logger.debug(f"Heal event: {event.summary()}", extra={"event_id": event.event_id})
        return True

    async def close(self) -> None:
        return None


class WebhookNotifier:
    """
    Posts heal events to an HTTP endpoint.

    Example:
        notifier = WebhookNotifier("https://hooks.example.com/healer")
        await notifier.notify(event)
    """

    def __init__(self, url: str, timeout_seconds: float = 5.0):
        self.url = url
        self.timeout = timeout_seconds
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout)
            )
        return self._client

    async def notify(self, event: HealEvent) -> bool:
        client = await self._get_client()

        try:
            response = await client.post(
                self.url,
                json=event.model_dump(mode="json"),
                headers={"X-Source-Service": "pod-healer"}
            )

            if response.status_code in (200, 201, 202, 204):
                logger.debug(
                    "Heal event delivered",
                    extra={"event_id": event.event_id, "workload": event.workload}
                )
                return True

            logger.warning(
                f"Webhook rejected heal event: {response.status_code}",
                extra={
                    "event_id": event.event_id,
                    "status_code": response.status_code,
                    "response": response.text[:500]
                }
            )
            return False

        except httpx.HTTPError as e:
            logger.error(
                f"HTTP error sending heal event: {e}",
                extra={"event_id": event.event_id, "error": str(e)}
            )
            return False
        except Exception as e:
            logger.error(
                f"Error sending heal event: {e}",
                extra={"event_id": event.event_id, "error": str(e)}
            )
            return False

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


class EmailNotifier:
    """Sends one mail per heal event through an SMTP relay."""

    def __init__(
        self,
        host: str,
        port: int,
        sender: str,
        recipients: list[str],
        username: str = "",
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout_seconds: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.sender = sender
        self.recipients = recipients
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout_seconds

    def build_message(self, event: HealEvent) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = f"[pod-healer] {event.outcome}: {event.workload} ({event.reason.value})"
        message["From"] = self.sender
        message["To"] = ", ".join(self.recipients)
        message.set_content(
            "\n".join([
                event.summary(),
                "",
                f"Workload:  {event.workload}",
                f"Action:    {event.action.value}",
                f"Target:    {event.target}",
                f"Severity:  {event.severity.value}",
                f"Attempts:  {event.attempts}",
                f"Scan:      {event.scan_id or '-'}",
                f"Time:      {event.timestamp.isoformat()}",
            ])
        )
        return message

    def _send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username:
                smtp.login(self.username, self.password or "")
            smtp.send_message(message)

    async def notify(self, event: HealEvent) -> bool:
        try:
            await asyncio.to_thread(self._send, self.build_message(event))
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(
                f"Error mailing heal event: {e}",
                extra={"event_id": event.event_id, "error": str(e)}
            )
            return False

    async def close(self) -> None:
        return None


def build_notifier(settings: Settings) -> Notifier:
    """Create the notifier variant selected by configuration."""
    if settings.notifier == NotifierKind.WEBHOOK:
        return WebhookNotifier(settings.webhook_url, settings.webhook_timeout_seconds)
    if settings.notifier == NotifierKind.EMAIL:
        return EmailNotifier(
            host=settings.smtp_host,
            port=settings.smtp_port,
            sender=settings.email_from,
            recipients=settings.email_to,
            username=settings.smtp_username,
            password=settings.smtp_password.get_secret_value() if settings.smtp_password else None,
            use_tls=settings.smtp_use_tls,
        )
    return NoopNotifier()
