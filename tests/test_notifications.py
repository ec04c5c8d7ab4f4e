from __future__ import annotations

import smtplib
from types import SimpleNamespace
from typing import Any

import requests

from solarwatch.app.services import notifications
from solarwatch.app.services.notifications import (
    LogNotifier,
    SmtpNotifier,
    WebhookNotifier,
    build_message,
    build_notifier,
)


class _FakeSMTP:
    instances: list["_FakeSMTP"] = []
    refused: dict[str, Any] = {}
    fail: Exception | None = None

    def __init__(self, host: str, port: int, timeout: float) -> None:
        if _FakeSMTP.fail is not None:
            raise _FakeSMTP.fail
        self.host = host
        self.port = port
        self.logged_in: tuple[str, str] | None = None
        self.sent: list[Any] = []
        _FakeSMTP.instances.append(self)

    def __enter__(self) -> "_FakeSMTP":
        return self

    def __exit__(self, *exc: Any) -> None:
        return None

    def starttls(self, context=None) -> None:
        pass

    def login(self, user: str, password: str) -> None:
        self.logged_in = (user, password)

    def send_message(self, msg) -> dict[str, Any]:
        self.sent.append(msg)
        return dict(_FakeSMTP.refused)


def _reset_smtp(monkeypatch, *, refused=None, fail=None) -> None:
    _FakeSMTP.instances = []
    _FakeSMTP.refused = refused or {}
    _FakeSMTP.fail = fail
    monkeypatch.setattr(notifications.smtplib, "SMTP", _FakeSMTP)


def test_build_message_headers() -> None:
    msg = build_message(["a@example.com", "b@example.com"], "subj", "body", "Solar MPPT Monitor", "no-reply@example.com")
    assert msg["To"] == "a@example.com, b@example.com"
    assert msg["Subject"] == "subj"
    assert "no-reply@example.com" in msg["From"]
    assert msg["Reply-To"] == "no-reply@example.com"


def test_smtp_notifier_delivers(monkeypatch) -> None:
    _reset_smtp(monkeypatch)
    n = SmtpNotifier(host="mail", port=587, username="u", password="p", starttls=True)

    assert n.send(["a@example.com"], "s", "b", "N", "from@example.com") is True
    assert _FakeSMTP.instances[0].logged_in == ("u", "p")
    assert len(_FakeSMTP.instances[0].sent) == 1


def test_smtp_notifier_reports_failure(monkeypatch) -> None:
    _reset_smtp(monkeypatch, fail=smtplib.SMTPConnectError(421, "busy"))
    assert SmtpNotifier(host="mail", port=25).send(["a@example.com"], "s", "b", "N", "f@example.com") is False

    _reset_smtp(monkeypatch, fail=ConnectionRefusedError())
    assert SmtpNotifier(host="mail", port=25).send(["a@example.com"], "s", "b", "N", "f@example.com") is False

    _reset_smtp(monkeypatch, refused={"a@example.com": (550, b"no")})
    assert SmtpNotifier(host="mail", port=25).send(["a@example.com"], "s", "b", "N", "f@example.com") is False

    _reset_smtp(monkeypatch)
    assert SmtpNotifier(host="mail", port=25).send([], "s", "b", "N", "f@example.com") is False


def test_webhook_notifier_payloads(monkeypatch) -> None:
    calls: list[dict[str, Any]] = []

    def _post(url: str, json: dict[str, Any], timeout: float):
        calls.append({"url": url, "json": json})
        return SimpleNamespace(status_code=200)

    monkeypatch.setattr(notifications.requests, "post", _post)

    assert WebhookNotifier(webhook_url="https://hooks.example", kind="slack", timeout_s=1.0).send(
        ["a@example.com"], "Lost", "details", "N", "f@example.com"
    )
    assert calls[-1]["json"] == {"text": "*Lost*\ndetails"}

    assert WebhookNotifier(webhook_url="https://hooks.example", kind="generic", timeout_s=1.0).send(
        ["a@example.com"], "Lost", "details", "N", "f@example.com"
    )
    assert calls[-1]["json"]["recipients"] == ["a@example.com"]
    assert calls[-1]["json"]["subject"] == "Lost"


def test_webhook_notifier_failures(monkeypatch) -> None:
    monkeypatch.setattr(notifications.requests, "post", lambda *a, **k: SimpleNamespace(status_code=500))
    n = WebhookNotifier(webhook_url="https://hooks.example", kind="generic", timeout_s=1.0)
    assert n.send(["a@example.com"], "s", "b", "N", "f@example.com") is False

    def _raise(*a, **k):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(notifications.requests, "post", _raise)
    assert n.send(["a@example.com"], "s", "b", "N", "f@example.com") is False


def test_build_notifier_selects_transport(make_settings) -> None:
    assert isinstance(build_notifier(make_settings()), LogNotifier)
    assert isinstance(build_notifier(make_settings(NOTIFIER_KIND="smtp", SMTP_HOST="mail")), SmtpNotifier)
    assert isinstance(
        build_notifier(make_settings(NOTIFIER_KIND="webhook", ALERT_WEBHOOK_URL="https://hooks.example")),
        WebhookNotifier,
    )
    assert LogNotifier().send(["a@example.com"], "s", "b", "N", "f@example.com") is False
