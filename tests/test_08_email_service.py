# tests/test_08_email_service.py
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from payroll_auth.core.config import settings
from payroll_auth.models.email_otp import EmailOTPPurpose
from payroll_auth.services import email_service

pytestmark = pytest.mark.asyncio

TEST_EMAIL_TO = "recipient@example.com"
TEST_CODE = "482913"


@pytest.fixture(autouse=True)
def override_settings(monkeypatch):
    """Ensure the Brevo settings are present for email tests."""
    monkeypatch.setattr(settings, "BREVO_API_KEY", "test_brevo_key")
    monkeypatch.setattr(settings, "EMAIL_FROM", "sender@example.com")
    monkeypatch.setattr(settings, "EMAIL_FROM_NAME", "Test Sender")


async def test_send_enrollment_code_email():
    with patch("payroll_auth.services.email_service.httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
        mock_post.return_value = httpx.Response(201, text='{"messageId": "abc"}')

        result = await email_service.send_mfa_code_email(TEST_EMAIL_TO, TEST_CODE, EmailOTPPurpose.ENROLL)

        assert result is True
        mock_post.assert_awaited_once()
        call_args = mock_post.await_args.args
        call_kwargs = mock_post.await_args.kwargs

        assert call_args[0] == email_service.BREVO_API_URL
        assert call_kwargs["headers"]["api-key"] == "test_brevo_key"
        payload = call_kwargs["json"]
        assert payload["to"][0]["email"] == TEST_EMAIL_TO
        assert payload["sender"] == {"name": "Test Sender", "email": "sender@example.com"}
        assert "Confirm email two-factor authentication" in payload["subject"]
        assert TEST_CODE in payload["htmlContent"]
        assert f"{settings.EMAIL_OTP_EXPIRE_MINUTES} minutes" in payload["htmlContent"]


async def test_send_login_code_email():
    with patch("payroll_auth.services.email_service.httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
        mock_post.return_value = httpx.Response(201, text="{}")

        result = await email_service.send_mfa_code_email(TEST_EMAIL_TO, TEST_CODE, EmailOTPPurpose.LOGIN)

        assert result is True
        payload = mock_post.await_args.kwargs["json"]
        assert "Your sign-in code" in payload["subject"]
        assert TEST_CODE in payload["htmlContent"]


async def test_send_email_http_api_no_key(monkeypatch):
    monkeypatch.setattr(settings, "BREVO_API_KEY", None)

    with patch("payroll_auth.services.email_service.logger.error") as mock_logger_error:
        result = await email_service.send_email_http_api(TEST_EMAIL_TO, "Subject", "<p>Content</p>")

    assert result is False
    mock_logger_error.assert_called_once_with("BREVO_API_KEY is not configured. Email will not be sent.")


async def test_send_email_http_api_provider_error():
    with patch("payroll_auth.services.email_service.httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
        mock_post.return_value = httpx.Response(
            401, text="Unauthorized", request=httpx.Request("POST", email_service.BREVO_API_URL)
        )

        with patch("payroll_auth.services.email_service.logger.error"):
            result = await email_service.send_email_http_api(TEST_EMAIL_TO, "Subject", "<p>Content</p>")

        assert result is False
        mock_post.assert_awaited_once()


async def test_send_email_http_api_connect_error():
    with patch("payroll_auth.services.email_service.httpx.AsyncClient.post", new_callable=AsyncMock) as mock_post:
        mock_post.side_effect = httpx.ConnectError("Connection refused")

        with patch("payroll_auth.services.email_service.logger.error"):
            result = await email_service.send_email_http_api(TEST_EMAIL_TO, "Subject", "<p>Content</p>")

        assert result is False
        mock_post.assert_awaited_once()
