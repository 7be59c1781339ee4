# payroll_auth/core/exceptions.py
from datetime import datetime
from typing import Optional

from fastapi import status


class MFAError(Exception):
    """
    Base class for every failure the auth core reports to a caller.

    Each subclass carries a stable ``error_code`` (sent on the wire as
    ``{"error": ...}``) and the HTTP status the API layer answers with.
    """

    error_code: str = "error"
    status_code: int = status.HTTP_400_BAD_REQUEST
    default_detail: str = "Request could not be completed."

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class InvalidCredentials(MFAError):
    error_code = "invalid_credentials"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Incorrect email or password."


class InvalidCode(MFAError):
    error_code = "invalid_code"
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid verification code."


class CodeExpired(MFAError):
    error_code = "code_expired"
    status_code = status.HTTP_410_GONE
    default_detail = "Verification code expired. Please request a new code."


class TicketExpired(MFAError):
    error_code = "ticket_expired"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "MFA session expired. Please sign in again."


class ExpiredEnrollment(MFAError):
    error_code = "enrollment_expired"
    status_code = status.HTTP_410_GONE
    default_detail = "MFA setup expired. Please start again."


class AlreadyEnrolled(MFAError):
    error_code = "already_enrolled"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "This MFA method is already enabled."


class NotEnrolled(MFAError):
    error_code = "not_enrolled"
    status_code = status.HTTP_409_CONFLICT
    default_detail = "MFA is not enabled for this account."


class Unauthorized(MFAError):
    error_code = "unauthorized"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = "Could not validate credentials."


class RateLimited(MFAError):
    error_code = "rate_limited"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_detail = "Too many attempts. Please try again later."


class AccountLockedException(RateLimited):
    """Password lockout; reported to callers as ``rate_limited``."""

    def __init__(self, detail: Optional[str] = None, locked_until: Optional[datetime] = None):
        self.locked_until = locked_until
        super().__init__(detail or "Account locked due to too many failed login attempts.")
