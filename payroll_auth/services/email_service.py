# payroll_auth/services/email_service.py
import traceback

import certifi
import httpx
from loguru import logger

from payroll_auth.core.config import settings
from payroll_auth.models.email_otp import EmailOTPPurpose

BREVO_API_URL = "https://api.brevo.com/v3/smtp/email"


async def send_email_http_api(email_to: str, subject: str, html_content: str) -> bool:
    """
    Sends a transactional email through the Brevo HTTP API.
    """
    if not settings.BREVO_API_KEY:
        logger.error("BREVO_API_KEY is not configured. Email will not be sent.")
        return False

    message_payload = {
        "sender": {
            "name": settings.EMAIL_FROM_NAME or "Payroll Admin",
            "email": settings.EMAIL_FROM,
        },
        "to": [{"email": email_to}],
        "subject": subject,
        "htmlContent": html_content,
    }
    headers = {
        "api-key": settings.BREVO_API_KEY,
        "Content-Type": "application/json",
        "Accept": "application/json",
    }

    try:
        transport = httpx.AsyncHTTPTransport(verify=certifi.where())
        async with httpx.AsyncClient(transport=transport) as client:
            logger.info(f"Sending email to {email_to} via Brevo...")
            response = await client.post(BREVO_API_URL, json=message_payload, headers=headers)

        # Brevo answers 201 Created
        if 200 <= response.status_code < 300:
            logger.info(f"Email accepted for {email_to}. Status: {response.status_code}")
            return True
        logger.error(f"Failed to send email to {email_to} via Brevo.")
        logger.error(f"Status: {response.status_code}")
        logger.error(f"Body: {response.text}")
        return False

    except httpx.ConnectError as e:
        logger.error(f"Connection error while sending email to {email_to}: {e}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return False
    except Exception as e:
        logger.error(f"Unexpected error while sending email to {email_to}: {e}")
        logger.error(f"Traceback: {traceback.format_exc()}")
        return False


async def send_mfa_code_email(email_to: str, code: str, purpose: EmailOTPPurpose) -> bool:
    project_name = settings.EMAIL_FROM_NAME or "Payroll Admin"
    if purpose == EmailOTPPurpose.ENROLL:
        subject = f"{project_name} - Confirm email two-factor authentication"
        intro = "Use this code to finish turning on email two-factor authentication:"
    else:
        subject = f"{project_name} - Your sign-in code"
        intro = "Use this code to finish signing in:"

    html_content = f"""
    <html>
    <body>
        <p>Hello,</p>
        <p>{intro}</p>
        <p style="font-size:24px;font-weight:700;letter-spacing:3px">{code}</p>
        <p>This code expires in {settings.EMAIL_OTP_EXPIRE_MINUTES} minutes.</p>
        <p>If you did not request it, change your password.</p>
        <p>{project_name}</p>
    </body>
    </html>
    """

    return await send_email_http_api(email_to=email_to, subject=subject, html_content=html_content)
