"""Tests for EmailService SMTP delivery."""

from unittest.mock import AsyncMock, patch

import aiosmtplib
import pytest

from duka_billing.services.email_service import EmailService


def _configure(mock_settings) -> None:
    mock_settings.SMTP_HOST = "smtp.example.com"
    mock_settings.SMTP_PORT = 587
    mock_settings.SMTP_USERNAME = "user"
    mock_settings.SMTP_PASSWORD = "pass"
    mock_settings.SMTP_FROM_EMAIL = "billing@example.com"
    mock_settings.SMTP_FROM_NAME = "Billing"
    mock_settings.SMTP_USE_TLS = True


# ---------------------------------------------------------------------------
# No-op mode (SMTP not configured)
# ---------------------------------------------------------------------------


class TestSendEmailNoOp:
    """When SMTP_HOST is empty, send_email should log and report success."""

    @pytest.mark.asyncio
    async def test_succeeds_when_smtp_unconfigured(self) -> None:
        with patch("duka_billing.services.email_service.settings") as mock_settings:
            mock_settings.SMTP_HOST = ""
            result = await EmailService(timeout=5).send_email(
                to="test@example.com", subject="Test", html_body="<p>Hello</p>"
            )
        assert result.success is True
        assert result.message_id is None

    @pytest.mark.asyncio
    async def test_empty_recipient_fails(self) -> None:
        result = await EmailService(timeout=5).send_email(to="", subject="Test", html_body="<p>x</p>")

        assert result.success is False
        assert "empty" in result.error


# ---------------------------------------------------------------------------
# SMTP configured
# ---------------------------------------------------------------------------


class TestSendEmailSmtp:
    @pytest.mark.asyncio
    async def test_sends_email_via_smtp(self) -> None:
        mock_send = AsyncMock()
        with (
            patch("duka_billing.services.email_service.settings") as mock_settings,
            patch("aiosmtplib.send", mock_send),
        ):
            _configure(mock_settings)
            result = await EmailService(timeout=7).send_email(
                to="test@example.com", subject="Test Subject", html_body="<p>Hello</p>"
            )

        assert result.success is True
        assert result.message_id.endswith("@example.com>")
        mock_send.assert_called_once()
        msg = mock_send.call_args.args[0]
        kwargs = mock_send.call_args.kwargs
        assert msg["To"] == "test@example.com"
        assert msg["Subject"] == "Test Subject"
        assert msg["From"] == "Billing <billing@example.com>"
        assert kwargs["hostname"] == "smtp.example.com"
        assert kwargs["start_tls"] is True
        assert kwargs["timeout"] == 7

    @pytest.mark.asyncio
    async def test_html_alternative_attached(self) -> None:
        mock_send = AsyncMock()
        with (
            patch("duka_billing.services.email_service.settings") as mock_settings,
            patch("aiosmtplib.send", mock_send),
        ):
            _configure(mock_settings)
            await EmailService(timeout=5).send_email(
                to="test@example.com", subject="Test", html_body="<p>Hello</p>"
            )

        msg = mock_send.call_args.args[0]
        html_parts = [p for p in msg.walk() if p.get_content_type() == "text/html"]
        assert len(html_parts) == 1
        assert "<p>Hello</p>" in html_parts[0].get_content()

    @pytest.mark.asyncio
    async def test_smtp_error_is_reported(self) -> None:
        mock_send = AsyncMock(side_effect=aiosmtplib.SMTPException("Connection refused"))
        with (
            patch("duka_billing.services.email_service.settings") as mock_settings,
            patch("aiosmtplib.send", mock_send),
        ):
            _configure(mock_settings)
            result = await EmailService(timeout=5).send_email(
                to="test@example.com", subject="Test", html_body="<p>Hello</p>"
            )

        assert result.success is False
        assert "Connection refused" in result.error

    @pytest.mark.asyncio
    async def test_timeout_is_reported(self) -> None:
        mock_send = AsyncMock(side_effect=TimeoutError())
        with (
            patch("duka_billing.services.email_service.settings") as mock_settings,
            patch("aiosmtplib.send", mock_send),
        ):
            _configure(mock_settings)
            result = await EmailService(timeout=5).send_email(
                to="test@example.com", subject="Test", html_body="<p>Hello</p>"
            )

        assert result.success is False
        assert result.error == "TimeoutError"
