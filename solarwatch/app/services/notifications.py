from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any, Protocol, Sequence

import requests

from ..config import Settings


logger = logging.getLogger("solarwatch.notifications")


class Notifier(Protocol):
    def send(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        from_name: str,
        from_address: str,
    ) -> bool: ...


def build_message(
    recipients: Sequence[str], subject: str, body: str, from_name: str, from_address: str
) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = formataddr((from_name, from_address))
    msg["To"] = ", ".join(recipients)
    msg["Reply-To"] = from_address
    msg["Subject"] = subject
    msg.set_content(body, charset="utf-8")
    return msg


class SmtpNotifier:
    def __init__(
        self,
        *,
        host: str,
        port: int,
        username: str | None = None,
        password: str | None = None,
        starttls: bool = False,
        timeout_s: float = 20.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.starttls = starttls
        self.timeout_s = timeout_s

    def send(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        from_name: str,
        from_address: str,
    ) -> bool:
        if not recipients:
            return False
        msg = build_message(recipients, subject, body, from_name, from_address)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout_s) as smtp:
                if self.starttls:
                    smtp.starttls(context=ssl.create_default_context())
                if self.username:
                    smtp.login(self.username, self.password or "")
                refused = smtp.send_message(msg)
        except (smtplib.SMTPException, OSError):
            logger.exception("SMTP delivery failed", extra={"fields": {"host": self.host, "port": self.port}})
            return False

        if refused:
            logger.warning("SMTP refused some recipients", extra={"fields": {"refused": sorted(refused)}})
        return len(refused) < len(recipients)


class WebhookNotifier:
    def __init__(self, *, webhook_url: str, kind: str, timeout_s: float) -> None:
        self.webhook_url = webhook_url
        self.kind = kind
        self.timeout_s = timeout_s

    def send(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        from_name: str,
        from_address: str,
    ) -> bool:
        if self.kind == "slack":
            payload: dict[str, Any] = {"text": f"*{subject}*\n{body}"}
        else:
            payload = {
                "recipients": list(recipients),
                "subject": subject,
                "body": body,
                "from_name": from_name,
                "from_address": from_address,
            }

        try:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout_s)
        except requests.RequestException:
            logger.exception("Webhook delivery failed")
            return False

        if 200 <= response.status_code < 300:
            return True
        logger.warning("Webhook rejected alert", extra={"fields": {"status_code": response.status_code}})
        return False


class LogNotifier:
    """Writes alerts to the log only. Reports failure: nothing was delivered."""

    def send(
        self,
        recipients: Sequence[str],
        subject: str,
        body: str,
        from_name: str,
        from_address: str,
    ) -> bool:
        logger.warning(
            "No alert transport configured; alert logged only",
            extra={"fields": {"recipients": list(recipients), "subject": subject}},
        )
        return False


def build_notifier(settings: Settings) -> Notifier:
    if settings.notifier_kind == "smtp":
        return SmtpNotifier(
            host=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            starttls=settings.smtp_starttls,
            timeout_s=settings.smtp_timeout_s,
        )
    if settings.notifier_kind == "webhook" and settings.alert_webhook_url:
        return WebhookNotifier(
            webhook_url=settings.alert_webhook_url,
            kind=settings.alert_webhook_kind,
            timeout_s=settings.alert_webhook_timeout_s,
        )
    return LogNotifier()
