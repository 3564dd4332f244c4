"""
notify/email.py -- Outbound account mail (confirmation links).

Notifier is the contract the account manager is written against. Two
implementations:

  SmtpNotifier  -- smtplib with STARTTLS (or implicit TLS), used when
                   SMTP_HOST is configured.
  LogNotifier   -- development fallback. Logs a redacted recipient and the
                   subject; never the link, which carries a live token.

SMTP failures propagate to the caller. Recipient addresses are redacted in
every log line.

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from core.config import Settings

logger = logging.getLogger("idcore.notify")

_CONFIRMATION_SUBJECT = "Confirm your account"

_CONFIRMATION_HTML = """\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: sans-serif; line-height: 1.6; color: #1f2933;">
  <div style="max-width: 600px; margin: 0 auto; padding: 40px 20px;">
    <h1>Confirm your account</h1>
    <p>Thanks for registering. Confirm your email address to activate the account:</p>
    <p style="margin: 30px 0;"><a href="{link}">Confirm email</a></p>
    <p>This link expires in {hours} hours and works once.</p>
    <p style="font-size: 12px; color: #5b6470;">
      If the link does not work, paste this URL into your browser: {link}<br>
      &copy; {year}
    </p>
  </div>
</body>
</html>
"""

_CONFIRMATION_TEXT = """\
Confirm your account

Thanks for registering. Visit the link below to activate the account:

{link}

This link expires in {hours} hours and works once.
"""


@dataclass
class EmailMessage:
    to: str
    subject: str
    html_body: str
    text_body: str


class Notifier(Protocol):
    def send_confirmation(self, to: str, link: str) -> None: ...


def redact_email(email: str) -> str:
    """Keep the first two characters of the local part and the domain."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def confirmation_message(to: str, link: str, expire_hours: int) -> EmailMessage:
    values = {"link": link, "hours": expire_hours, "year": datetime.now(timezone.utc).year}
    return EmailMessage(
        to=to,
        subject=_CONFIRMATION_SUBJECT,
        html_body=_CONFIRMATION_HTML.format(**{**values, "link": html.escape(link)}),
        text_body=_CONFIRMATION_TEXT.format(**values),
    )


class SmtpNotifier:
    """Sends mail through an SMTP relay."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def send_confirmation(self, to: str, link: str) -> None:
        self.send(confirmation_message(to, link, self.settings.confirmation_token_expire_hours))

    def send(self, message: EmailMessage) -> None:
        s = self.settings
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = s.mail_from
        msg["To"] = message.to
        msg.attach(MIMEText(message.text_body, "plain"))
        msg.attach(MIMEText(message.html_body, "html"))

        context = ssl.create_default_context()
        logger.debug("Connecting to %s:%d (tls=%s)", s.smtp_host, s.smtp_port, s.smtp_use_tls)
        try:
            if s.smtp_use_tls:
                with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    self._login(server)
                    server.sendmail(s.mail_from, message.to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, context=context, timeout=30) as server:
                    self._login(server)
                    server.sendmail(s.mail_from, message.to, msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Mail to %s failed: %s", redact_email(message.to), type(exc).__name__)
            raise

        logger.info("Mail sent to %s: %s", redact_email(message.to), message.subject)

    def _login(self, server: smtplib.SMTP) -> None:
        if self.settings.smtp_user and self.settings.smtp_password:
            server.login(self.settings.smtp_user, self.settings.smtp_password)


class LogNotifier:
    """Development notifier: records that mail would have been sent."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def send_confirmation(self, to: str, link: str) -> None:
        message = confirmation_message(to, link, self.settings.confirmation_token_expire_hours)
        logger.info("SMTP not configured; mail to %s not sent: %s", redact_email(message.to), message.subject)


def build_notifier(settings: Settings) -> SmtpNotifier | LogNotifier:
    """SmtpNotifier when SMTP_HOST is set, LogNotifier otherwise."""
    if settings.smtp_host:
        return SmtpNotifier(settings)
    logger.warning("SMTP_HOST is not set; confirmation mail will only be logged.")
    return LogNotifier(settings)
