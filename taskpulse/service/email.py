from __future__ import annotations

import html
import smtplib
import ssl
from dataclasses import dataclass, field
from datetime import date
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

from taskpulse.config import Settings
from taskpulse.logging import get_logger, mask_email
from taskpulse.storage.models import Task

logger = get_logger(__name__)

_UPCOMING_LIMIT = 10

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #3b82f6; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


@dataclass
class DailySummary:
    """Open tasks of one user bucketed relative to ``today``."""

    today: date
    overdue: List[Task] = field(default_factory=list)
    due_today: List[Task] = field(default_factory=list)
    upcoming: List[Task] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.overdue or self.due_today or self.upcoming)

    @property
    def subject(self) -> str:
        return (
            f"Daily Tasks: {len(self.overdue)} overdue, "
            f"{len(self.due_today)} due today"
        )


def build_daily_summary(tasks: List[Task], today: date) -> DailySummary:
    summary = DailySummary(today=today)
    for task in tasks:
        if not task.is_open:
            continue
        due = task.due_date.date() if task.due_date else None
        if due is not None and due < today:
            summary.overdue.append(task)
        elif due == today:
            summary.due_today.append(task)
        else:
            summary.upcoming.append(task)
    return summary


class EmailService:
    """Transactional email over SMTP.

    With no SMTP host configured the message is logged instead of sent
    (dev mode) and the send counts as successful.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "TaskPulse",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> MIMEMultipart:
        message = MIMEMultipart("alternative")
        message["Subject"] = subject
        message["From"] = f"{self.from_name} <{self.from_email}>"
        message["To"] = to_email
        # in multipart/alternative the last part is preferred
        if text_body:
            message.attach(MIMEText(text_body, "plain"))
        message.attach(MIMEText(html_body, "html"))
        return message

    def _connect(self) -> smtplib.SMTP:
        context = ssl.create_default_context()
        if self.smtp_use_tls:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30)
        else:
            server = smtplib.SMTP_SSL(
                self.smtp_host, self.smtp_port, context=context, timeout=30
            )
        try:
            if self.smtp_use_tls:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
        except Exception:
            server.close()
            raise
        return server

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Deliver one message. Returns False on any SMTP or network failure."""
        recipient = mask_email(to_email)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=recipient,
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

        message = self._build_message(to_email, subject, html_body, text_body)
        try:
            with self._connect() as server:
                server.sendmail(self.from_email, to_email, message.as_string())
        except smtplib.SMTPAuthenticationError as exc:
            logger.error(
                "email_auth_failed", to=recipient, host=self.smtp_host, smtp_code=exc.smtp_code
            )
            return False
        except smtplib.SMTPRecipientsRefused as exc:
            logger.error("email_recipient_refused", to=recipient, refused=len(exc.recipients))
            return False
        except smtplib.SMTPException as exc:
            logger.error(
                "email_smtp_error",
                to=recipient,
                host=self.smtp_host,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except (ssl.SSLError, OSError) as exc:
            logger.error(
                "email_connect_failed",
                to=recipient,
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(exc),
            )
            return False

        logger.info("email_sent", to=recipient, subject=subject)
        return True

    def _page(self, heading: str, body: str) -> str:
        return (
            "<!DOCTYPE html>\n"
            f'<html><head><meta charset="utf-8"><style>{_STYLE}</style></head>\n'
            f'<body><div class="container"><h1>{heading}</h1>\n{body}\n'
            "</div></body></html>\n"
        )

    def send_password_reset(self, to_email: str, token: str, *, ttl_minutes: int = 60) -> bool:
        link = f"{self.base_url}/reset-password?token={token}"
        html_body = self._page(
            "Reset your password",
            f'<p>Someone asked to reset the password of your TaskPulse account.</p>'
            f'<p style="margin: 30px 0;"><a href="{link}" class="button">Choose a new password</a></p>'
            f"<p>The link works once and expires after {ttl_minutes} minutes. "
            "If this wasn't you, ignore this message and your password stays the same.</p>"
            f'<div class="footer"><p>Link not working? Paste this into your browser: {link}</p></div>',
        )
        text_body = (
            "Reset your TaskPulse password\n\n"
            f"Choose a new password here:\n{link}\n\n"
            f"The link works once and expires after {ttl_minutes} minutes.\n"
            "If this wasn't you, ignore this message and your password stays the same.\n"
        )
        return self._send_email(to_email, "Reset your TaskPulse password", html_body, text_body)

    def _render_section(self, title: str, tasks: List[Task], color: str) -> str:
        if not tasks:
            return ""
        rows = "".join(
            f"<li><strong>{html.escape(t.title)}</strong> &middot; {html.escape(t.priority)}"
            + (f" &middot; due {t.due_date.date().isoformat()}" if t.due_date else "")
            + "</li>"
            for t in tasks
        )
        return f'<h2 style="color: {color};">{title}</h2><ul>{rows}</ul>'

    def _render_text_section(self, title: str, tasks: List[Task]) -> str:
        if not tasks:
            return ""
        lines = [f"{title}:"]
        for t in tasks:
            due = f" (due {t.due_date.date().isoformat()})" if t.due_date else ""
            lines.append(f"  - {t.title} [{t.priority}]{due}")
        return "\n".join(lines) + "\n\n"

    def send_daily_summary(
        self, to_email: str, summary: DailySummary, *, test: bool = False
    ) -> bool:
        subject = f"[TEST] {summary.subject}" if test else summary.subject
        upcoming = summary.upcoming[:_UPCOMING_LIMIT]
        day = summary.today.isoformat()
        sections = (
            self._render_section("Overdue Tasks", summary.overdue, "#dc2626")
            + self._render_section("Due Today", summary.due_today, "#f59e0b")
            + self._render_section("Upcoming Tasks", upcoming, "#3b82f6")
        )
        html_body = self._page(
            f"Your tasks for {day}",
            f"<p>{len(summary.overdue)} overdue &middot; {len(summary.due_today)} due today"
            f" &middot; {len(summary.upcoming)} upcoming</p>\n"
            + (sections or "<p>No open tasks. Enjoy your day!</p>")
            + f'<p style="margin: 30px 0;"><a href="{self.base_url}/tasks" class="button">Open TaskPulse</a></p>'
            '<div class="footer"><p>Change the delivery hour or turn these emails off in your settings.</p></div>',
        )
        text_body = (
            f"Your tasks for {day}\n\n"
            + self._render_text_section("Overdue", summary.overdue)
            + self._render_text_section("Due today", summary.due_today)
            + self._render_text_section("Upcoming", upcoming)
            + f"Open TaskPulse: {self.base_url}/tasks\n"
        )
        return self._send_email(to_email, subject, html_body, text_body)
