# payroll_auth/client/api.py
import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from payroll_auth.client.config import client_settings
from payroll_auth.client.credential_store import CredentialStore


class ErrorKind(str, enum.Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_CODE = "invalid_code"
    CODE_EXPIRED = "code_expired"
    TICKET_EXPIRED = "ticket_expired"
    ENROLLMENT_EXPIRED = "enrollment_expired"
    ALREADY_ENROLLED = "already_enrolled"
    NOT_ENROLLED = "not_enrolled"
    UNAUTHORIZED = "unauthorized"
    RATE_LIMITED = "rate_limited"
    # Client-side only
    NETWORK = "network"
    UNKNOWN = "unknown"


@dataclass
class APIResult:
    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[ErrorKind] = None
    detail: Optional[str] = None
    status_code: Optional[int] = None


def _error_kind(code: Any) -> ErrorKind:
    try:
        return ErrorKind(code)
    except ValueError:
        return ErrorKind.UNKNOWN


class AuthAPIClient:
    """
    Thin async wrapper over the auth endpoints.

    Never raises for HTTP or transport failures: every call answers with an
    ``APIResult``. An ``unauthorized`` answer to a session call clears the
    credential store.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.credentials = credentials
        self._client = httpx.AsyncClient(
            base_url=base_url or client_settings.API_URL,
            timeout=timeout or client_settings.REQUEST_TIMEOUT,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AuthAPIClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        authenticated: bool = False,
    ) -> APIResult:
        headers: Dict[str, str] = {}
        if authenticated:
            token = self.credentials.token
            if token is None:
                return APIResult(ok=False, error=ErrorKind.UNAUTHORIZED, detail="Not signed in.")
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._client.request(method, path, json=json, headers=headers)
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} failed: {e!r}")
            return APIResult(ok=False, error=ErrorKind.NETWORK, detail="Could not reach the server.")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if response.is_success:
            return APIResult(ok=True, data=body, status_code=response.status_code)

        kind = _error_kind(body.get("error"))
        detail = body.get("detail")
        if not isinstance(detail, str):
            detail = f"Request failed with status {response.status_code}."
        if authenticated and kind == ErrorKind.UNAUTHORIZED:
            logger.info("Session rejected by the server, clearing stored credentials.")
            self.credentials.clear()
        return APIResult(ok=False, error=kind, detail=detail, status_code=response.status_code)

    # --- Login & second factor ---
    async def login(self, email: str, password: str) -> APIResult:
        return await self._request("POST", "/auth/login", json={"email": email, "password": password})

    async def verify_mfa(self, ticket: str, code: str, method: str) -> APIResult:
        return await self._request(
            "POST", "/auth/mfa/verify", json={"ticket": ticket, "code": code, "method": method}
        )

    async def send_login_code(self, ticket: str) -> APIResult:
        return await self._request("POST", "/auth/mfa/send-code", json={"ticket": ticket})

    # --- Enrollment ---
    async def setup_totp(self) -> APIResult:
        return await self._request("POST", "/auth/mfa/setup", authenticated=True)

    async def verify_totp_setup(self, code: str, is_backup_code: bool = False) -> APIResult:
        return await self._request(
            "POST",
            "/auth/mfa/setup/verify",
            json={"code": code, "isBackupCode": is_backup_code},
            authenticated=True,
        )

    async def setup_email(self) -> APIResult:
        return await self._request("POST", "/auth/mfa/email/setup", authenticated=True)

    async def verify_email_setup(self, code: str) -> APIResult:
        return await self._request(
            "POST", "/auth/mfa/email/verify", json={"code": code}, authenticated=True
        )

    # --- Account ---
    async def disable_mfa(self, password: str) -> APIResult:
        return await self._request(
            "POST", "/auth/mfa/disable", json={"password": password}, authenticated=True
        )

    async def regenerate_backup_codes(self) -> APIResult:
        return await self._request("POST", "/auth/mfa/backup-codes/regenerate", authenticated=True)

    async def me(self) -> APIResult:
        return await self._request("GET", "/auth/me", authenticated=True)
