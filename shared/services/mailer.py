from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid

from jinja2 import DictLoader, Environment, select_autoescape

from shared.errors import MailerError
from shared.services.config_store import SmtpConfig
from shared.utils import mask_email


_logger = logging.getLogger(__name__)


_TEMPLATES = {
    "magic_link.txt": (
        "Hello,\n\n"
        "Use the link below to open the space \"{{ space_name }}\":\n\n"
        "{{ link }}\n\n"
        "The link is valid for {{ ttl_hours }} hours and can be used only once.\n"
        "After signing in, your session stays open for {{ session_hours }} hours.\n\n"
        "If you did not request this e-mail you can ignore it.\n"
    ),
    "magic_link.html": (
        "<p>Hello,</p>"
        "<p>Use the link below to open the space <strong>{{ space_name }}</strong>:</p>"
        "<p><a href=\"{{ link }}\">Open {{ space_name }}</a></p>"
        "<p>The link is valid for {{ ttl_hours }} hours and can be used only once. "
        "After signing in, your session stays open for {{ session_hours }} hours.</p>"
        "<p>If you did not request this e-mail you can ignore it.</p>"
    ),
    "smtp_test.txt": (
        "This is a test message from {{ app_name }}.\n\n"
        "SMTP host: {{ host }}:{{ port }}\n"
        "If you received it, outgoing mail is configured correctly.\n"
    ),
}


@dataclass(frozen=True)
class SmtpTestResult:
    ok: bool
    message: str


class Mailer:
    """SMTP sender. Blocking smtplib calls run in a worker thread with a fixed timeout."""

    def __init__(self, *, timeout: float = 8, app_name: str = "SpaceDrop"):
        self.timeout = float(timeout)
        self.app_name = str(app_name)
        self._env = Environment(
            loader=DictLoader(_TEMPLATES),
            autoescape=select_autoescape(enabled_extensions=("html",), default_for_string=False),
        )

    def render(self, template_name: str, **ctx) -> str:
        return self._env.get_template(template_name).render(**ctx)

    def _connect(self, config: SmtpConfig) -> smtplib.SMTP:
        if config.secure:
            client: smtplib.SMTP = smtplib.SMTP_SSL(
                config.host, config.port, timeout=self.timeout, context=ssl.create_default_context()
            )
        else:
            client = smtplib.SMTP(config.host, config.port, timeout=self.timeout)
        try:
            if config.starttls and not config.secure:
                client.starttls(context=ssl.create_default_context())
            if config.username:
                client.login(config.username, config.password)
        except BaseException:
            client.close()
            raise
        return client

    def _send_sync(self, config: SmtpConfig, message: EmailMessage) -> None:
        try:
            with self._connect(config) as client:
                client.send_message(message)
        except (smtplib.SMTPException, OSError) as e:
            raise MailerError(f"SMTP error: {type(e).__name__}") from e

    def _noop_sync(self, config: SmtpConfig) -> None:
        try:
            with self._connect(config) as client:
                client.noop()
        except (smtplib.SMTPException, OSError) as e:
            raise MailerError(f"SMTP error: {type(e).__name__}") from e

    def _message(self, config: SmtpConfig, *, to: str, subject: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((config.from_name or self.app_name, config.sender_address))
        msg["To"] = to
        msg["Message-ID"] = make_msgid(domain=(config.sender_address.partition("@")[2] or None))
        return msg

    async def send(self, config: SmtpConfig, message: EmailMessage) -> None:
        if not config.is_configured:
            raise MailerError("SMTP is not configured")
        await asyncio.to_thread(self._send_sync, config, message)

    async def send_magic_link(
        self,
        config: SmtpConfig,
        *,
        to: str,
        space_name: str,
        link: str,
        ttl_hours: int = 6,
        session_hours: int = 4,
    ) -> None:
        ctx = {"space_name": space_name, "link": link, "ttl_hours": ttl_hours, "session_hours": session_hours}
        msg = self._message(config, to=to, subject=f"Your access link for {space_name}")
        msg.set_content(self.render("magic_link.txt", **ctx))
        msg.add_alternative(self.render("magic_link.html", **ctx), subtype="html")
        await self.send(config, msg)
        _logger.info("magic link email sent", extra={"to": mask_email(to)})

    async def test_connection(self, config: SmtpConfig) -> SmtpTestResult:
        if not config.host:
            return SmtpTestResult(ok=False, message="SMTP host is not configured")
        try:
            await asyncio.to_thread(self._noop_sync, config)
        except MailerError as e:
            _logger.warning("smtp connection test failed", extra={"host": config.host, "error": e.message})
            return SmtpTestResult(ok=False, message=e.message)
        return SmtpTestResult(ok=True, message="SMTP connection successful")

    async def send_test_email(self, config: SmtpConfig, *, to: str) -> None:
        msg = self._message(config, to=to, subject=f"{self.app_name} SMTP test")
        msg.set_content(self.render("smtp_test.txt", app_name=self.app_name, host=config.host, port=config.port))
        await self.send(config, msg)
        _logger.info("smtp test email sent", extra={"to": mask_email(to)})
