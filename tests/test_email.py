"""Tests for outbound alert mail."""

import smtplib
from unittest.mock import patch

from app.services import email


def test_message_carries_text_and_html_parts():
    message = email.build_message("ops@example.com", "[billing] down", "<p>down</p>", "down")

    assert message["To"] == "ops@example.com"
    assert message["From"] == "Billing Sync <billing@example.com>"
    assert [part.get_content_type() for part in message.iter_parts()] == [
        "text/plain",
        "text/html",
    ]


def test_send_uses_starttls_and_credentials(settings, monkeypatch):
    monkeypatch.setattr(settings, "smtp_username", "mailer")
    monkeypatch.setattr(settings, "smtp_password", "hunter2")
    with patch("app.services.email.smtplib.SMTP") as smtp:
        server = smtp.return_value.__enter__.return_value
        assert email.send_email("ops@example.com", "subject", "<p>x</p>") is True

    smtp.assert_called_once_with("smtp.test", 587, timeout=5.0)
    server.starttls.assert_called_once()
    server.login.assert_called_once_with("mailer", "hunter2")
    server.send_message.assert_called_once()
    smtp.return_value.__exit__.assert_called_once()


def test_connection_is_closed_when_delivery_fails():
    with patch("app.services.email.smtplib.SMTP") as smtp:
        server = smtp.return_value.__enter__.return_value
        server.send_message.side_effect = smtplib.SMTPRecipientsRefused({})
        assert email.send_email("ops@example.com", "subject", "<p>x</p>", "x") is False

    smtp.return_value.__exit__.assert_called_once()
    exc_type = smtp.return_value.__exit__.call_args.args[0]
    assert exc_type is smtplib.SMTPRecipientsRefused


def test_ssl_connection_skips_starttls(settings, monkeypatch):
    monkeypatch.setattr(settings, "smtp_use_ssl", True)
    with patch("app.services.email.smtplib.SMTP_SSL") as smtp_ssl:
        server = smtp_ssl.return_value.__enter__.return_value
        assert email.send_email("ops@example.com", "subject", "<p>x</p>") is True

    server.starttls.assert_not_called()


def test_unreachable_server_is_reported_not_raised():
    with patch("app.services.email.smtplib.SMTP", side_effect=ConnectionRefusedError()):
        assert email.send_email("ops@example.com", "subject", "<p>x</p>") is False
