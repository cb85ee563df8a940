"""Delivery channels for triggered alerts.

The checker only depends on the ``Notifier`` protocol. A failed delivery is
an exception; the caller logs it and moves on.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from .config import Settings
from .errors import NotificationFailure
from .formatting import format_alert_html, format_alert_subject, format_alert_text
from .telegram_notifier import TelegramNotifier
from .types import AlertNotification

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, notification: AlertNotification) -> None: ...

    async def close(self) -> None: ...


class LogNotifier:
    """Fallback channel used when nothing else is configured."""

    async def notify(self, notification: AlertNotification) -> None:
        logger.info(
            "Alert %s triggered for %s: %s",
            notification.alert_id,
            notification.contact.email,
            format_alert_subject(notification),
        )

    async def close(self) -> None:
        return None


class EmailNotifier:
    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        from_email: str,
        from_name: str = "Crypto Guardian",
        use_tls: bool = True,
        timeout: float = 15.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_email = from_email
        self.from_name = from_name
        self.use_tls = use_tls
        self.timeout = timeout

    async def notify(self, notification: AlertNotification) -> None:
        message = self.build_message(notification)
        try:
            await asyncio.to_thread(self._send, notification.contact.email, message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotificationFailure(f"Email to {notification.contact.email} failed: {exc}") from exc
        logger.info("Alert email sent to %s for alert %s", notification.contact.email, notification.alert_id)

    async def close(self) -> None:
        return None

    def build_message(self, notification: AlertNotification) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = format_alert_subject(notification)
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = notification.contact.email
        msg.attach(MIMEText(format_alert_text(notification), "plain", "utf-8"))
        msg.attach(MIMEText(format_alert_html(notification), "html", "utf-8"))
        return msg

    def _send(self, to_email: str, msg: MIMEMultipart) -> None:
        context = ssl.create_default_context()
        if self.use_tls:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls(context=context)
                if self.user:
                    server.login(self.user, self.password)
                server.sendmail(self.from_email, [to_email], msg.as_string())
        else:
            with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                if self.user:
                    server.login(self.user, self.password)
                server.sendmail(self.from_email, [to_email], msg.as_string())


def build_notifier(settings: Settings) -> Notifier:
    channel = settings.notifier_channel
    if channel == "auto":
        if settings.email_enabled:
            channel = "email"
        elif settings.telegram_enabled:
            channel = "telegram"
        else:
            channel = "log"

    if channel == "email":
        logger.info("Notifying by email via %s:%d", settings.smtp_host, settings.smtp_port)
        return EmailNotifier(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            from_email=settings.smtp_from_email,
            from_name=settings.smtp_from_name,
            use_tls=settings.smtp_tls,
        )
    if channel == "telegram":
        logger.info("Notifying via Telegram chat %s", settings.telegram_chat_id)
        return TelegramNotifier(settings.telegram_bot_token or "", settings.telegram_chat_id or "")

    logger.warning("No notification channel configured; triggered alerts will only be logged")
    return LogNotifier()
