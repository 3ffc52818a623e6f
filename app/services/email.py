"""Outbound mail for operator alerts."""
import logging
import smtplib
from email.message import EmailMessage

from app.config import settings

logger = logging.getLogger(__name__)


def build_message(
    to_email: str, subject: str, body_html: str, body_text: str | None = None
) -> EmailMessage:
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = settings.smtp_from_email
    message["To"] = to_email
    if body_text:
        message.set_content(body_text)
        message.add_alternative(body_html, subtype="html")
    else:
        message.set_content(body_html, subtype="html")
    return message


def _connect() -> smtplib.SMTP:
    if settings.smtp_use_ssl:
        return smtplib.SMTP_SSL(
            settings.smtp_host, settings.smtp_port, timeout=settings.smtp_timeout_seconds
        )
    return smtplib.SMTP(
        settings.smtp_host, settings.smtp_port, timeout=settings.smtp_timeout_seconds
    )


def send_email(
    to_email: str,
    subject: str,
    body_html: str,
    body_text: str | None = None,
) -> bool:
    """Deliver one message. Failures are logged and reported as ``False``.

    The SMTP session is always closed, whether or not delivery succeeded.
    """
    message = build_message(to_email, subject, body_html, body_text)
    try:
        with _connect() as server:
            if settings.smtp_use_tls and not settings.smtp_use_ssl:
                server.starttls()
            if settings.smtp_username and settings.smtp_password:
                server.login(settings.smtp_username, settings.smtp_password)
            server.send_message(message)
    except (smtplib.SMTPException, OSError) as exc:
        logger.error(
            "Failed to send email to %s: %s", to_email, exc, extra={"to_email": to_email}
        )
        return False
    logger.info("Email sent to %s", to_email, extra={"to_email": to_email})
    return True
