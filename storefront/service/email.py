from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Callable, Dict, Optional, Tuple

from storefront.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .button { display: inline-block; background: #d9480f; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .code { font-family: monospace; font-size: 18px; background: #f1f3f5; padding: 8px 12px; border-radius: 6px; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


def _layout(title: str, body: str, store_name: str) -> str:
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>{html.escape(title)}</h1>
{body}
        <div class="footer">
            <p>{html.escape(store_name)}</p>
        </div>
    </div>
</body>
</html>
"""


def _render_welcome(context: Dict[str, Any]) -> Tuple[str, str]:
    name = str(context.get("first_name") or "there")
    store = str(context.get("store_name", "Storefront"))
    shop_url = str(context.get("base_url", ""))
    body = f"""
        <p>Hi {html.escape(name)},</p>
        <p>Your account is ready and your shopping cart has been created.</p>
        <p style="margin: 30px 0;">
            <a href="{html.escape(shop_url, quote=True)}" class="button">Start shopping</a>
        </p>
"""
    text = f"""Welcome to {store}

Hi {name},

Your account is ready and your shopping cart has been created.

Start shopping: {shop_url}

---
{store}
"""
    return _layout(f"Welcome to {store}", body, store), text


def _render_forgot_password(context: Dict[str, Any]) -> Tuple[str, str]:
    name = str(context.get("first_name") or "there")
    store = str(context.get("store_name", "Storefront"))
    password = str(context["password"])
    body = f"""
        <p>Hi {html.escape(name)},</p>
        <p>Your password was reset. Sign in with this temporary password and change it right away:</p>
        <p style="margin: 30px 0;"><span class="code">{html.escape(password)}</span></p>
        <p>If you didn't request this, contact support immediately.</p>
"""
    text = f"""Your {store} password was reset

Hi {name},

Your password was reset. Sign in with this temporary password and change it right away:

    {password}

If you didn't request this, contact support immediately.

---
{store}
"""
    return _layout("Your password was reset", body, store), text


MAIL_TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Tuple[str, str]]] = {
    "welcome": _render_welcome,
    "forgot-password": _render_forgot_password,
}


class EmailService:
    """SMTP sender for transactional emails.

    Falls back to logging the message when SMTP is not configured (dev mode).
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
        from_name: str = "Storefront",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8000"

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def render(self, template: str, context: Optional[Dict[str, Any]] = None) -> Tuple[str, str]:
        """Render a named template to (html, text) bodies."""
        renderer = MAIL_TEMPLATES.get(template)
        if renderer is None:
            raise ValueError(f"unknown mail template {template!r}")
        merged = {"store_name": self.from_name, "base_url": self.base_url, **(context or {})}
        return renderer(merged)

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                smtp_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                refused=len(getattr(e, "recipients", {}) or {}),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connection_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False


@dataclass
class MailJob:
    id: str
    to: str
    subject: str
    template: str
    state: str = "queued"
    created_at: datetime = field(default_factory=datetime.utcnow)


class MailDispatcher:
    """Fire-and-forget mail queue on top of ``EmailService``.

    ``send`` renders immediately, so template errors reach the caller, then
    hands SMTP delivery to a worker thread and returns a job handle. Delivery
    failures only change the job state and are logged. With ``inline=True``
    delivery is awaited before ``send`` returns.
    """

    MAX_TRACKED_JOBS = 1000

    def __init__(self, email: EmailService, *, inline: bool = False) -> None:
        self.email = email
        self.inline = inline
        self._jobs: "OrderedDict[str, MailJob]" = OrderedDict()
        self._tasks: set[asyncio.Task] = set()

    async def send(
        self,
        to: str,
        subject: str,
        template: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> MailJob:
        html_body, text_body = self.email.render(template, context)
        job = MailJob(id=str(uuid.uuid4()), to=to, subject=subject, template=template)
        self._jobs[job.id] = job
        while len(self._jobs) > self.MAX_TRACKED_JOBS:
            self._jobs.popitem(last=False)
        logger.info("mail_job_enqueued", job_id=job.id, template=template)

        if self.inline:
            await self._deliver(job, html_body, text_body)
        else:
            task = asyncio.create_task(self._deliver(job, html_body, text_body))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return job

    async def _deliver(self, job: MailJob, html_body: str, text_body: str) -> None:
        job.state = "active"
        try:
            sent = await asyncio.to_thread(
                self.email.send, job.to, job.subject, html_body, text_body
            )
        except Exception as exc:
            logger.error(
                "mail_job_failed",
                job_id=job.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            sent = False
        job.state = "completed" if sent else "failed"
        log_fn = logger.info if sent else logger.warning
        log_fn("mail_job_finished", job_id=job.id, state=job.state)

    def get_job(self, job_id: str) -> Optional[MailJob]:
        return self._jobs.get(job_id)

    async def drain(self) -> None:
        """Wait for in-flight deliveries, e.g. before shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
