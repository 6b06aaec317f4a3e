import smtplib
from datetime import date, datetime, timezone

from taskpulse.logging import mask_email
from taskpulse.service.email import DailySummary, EmailService
from taskpulse.storage.models import Task

TODAY = date(2024, 5, 1)


def _task(title, **kwargs):
    return Task(id=title, user_id="u1", title=title, **kwargs)


def test_dev_mode_logs_instead_of_sending():
    service = EmailService()

    assert service.is_configured is False
    assert service.send_password_reset("someone@example.com", "tok") is True


def test_mask_email():
    assert mask_email("someone@example.com") == "so***@example.com"
    assert mask_email("no-at-sign") == "redacted"


def test_daily_summary_escapes_titles(monkeypatch):
    captured = {}
    service = EmailService()

    def fake_send(to_email, subject, html_body, text_body=None):
        captured.update(subject=subject, html=html_body, text=text_body)
        return True

    monkeypatch.setattr(service, "_send_email", fake_send)
    summary = DailySummary(
        today=TODAY,
        due_today=[_task("<script>", due_date=datetime(2024, 5, 1, tzinfo=timezone.utc))],
    )

    assert service.send_daily_summary("a@example.com", summary, test=True) is True
    assert captured["subject"] == "[TEST] Daily Tasks: 0 overdue, 1 due today"
    assert "&lt;script&gt;" in captured["html"]
    assert "<script>" not in captured["html"]
    assert "- <script> [Medium] (due 2024-05-01)" in captured["text"]


def test_upcoming_section_is_capped(monkeypatch):
    captured = {}
    service = EmailService()
    monkeypatch.setattr(
        service,
        "_send_email",
        lambda to, subject, html_body, text_body=None: captured.update(text=text_body) or True,
    )
    summary = DailySummary(today=TODAY, upcoming=[_task(f"task-{i}") for i in range(15)])

    service.send_daily_summary("a@example.com", summary)
    assert "task-9" in captured["text"]
    assert "task-10" not in captured["text"]


def test_smtp_failure_returns_false(monkeypatch):
    class ExplodingSMTP:
        def __init__(self, *args, **kwargs):
            raise smtplib.SMTPConnectError(421, "busy")

    monkeypatch.setattr(smtplib, "SMTP", ExplodingSMTP)
    service = EmailService(smtp_host="smtp.example.com", from_email="noreply@example.com")

    assert service.send_password_reset("someone@example.com", "tok") is False
