# tests/test_02_login.py
import pytest
from httpx import AsyncClient
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from main import app
from payroll_auth.core import security
from payroll_auth.core.config import settings
from payroll_auth.models.user import User

pytestmark = pytest.mark.asyncio

API = "/api/auth"
DEFAULT_EMAIL = "admin@example.com"
DEFAULT_PASSWORD = "Payroll-Admin-123!"
WRONG_PASSWORD = "Wrong-Password-999"


async def test_login_without_mfa_returns_session(async_client: AsyncClient, account: User):
    response = await async_client.post(
        f"{API}/login", json={"email": DEFAULT_EMAIL, "password": DEFAULT_PASSWORD}
    )
    assert response.status_code == 200
    data = response.json()
    assert "requireMFA" not in data
    assert data["user"] == {
        "id": account.id,
        "email": DEFAULT_EMAIL,
        "fullName": "Payroll Admin",
        "role": "user",
        "mfaEnabled": False,
        "mfaType": "none",
    }
    payload = security.decode_access_token(data["token"])
    assert payload["sub"] == str(account.id)
    assert payload["amr"] == ["pwd"]


async def test_login_email_is_case_insensitive(async_client: AsyncClient, account: User):
    response = await async_client.post(
        f"{API}/login", json={"email": DEFAULT_EMAIL.upper(), "password": DEFAULT_PASSWORD}
    )
    assert response.status_code == 200


@pytest.mark.parametrize(
    "email,password",
    [(DEFAULT_EMAIL, WRONG_PASSWORD), ("nobody@example.com", DEFAULT_PASSWORD)],
)
async def test_login_bad_credentials(async_client: AsyncClient, account: User, email, password):
    response = await async_client.post(f"{API}/login", json={"email": email, "password": password})
    assert response.status_code == 401
    assert response.json() == {"detail": "Incorrect email or password.", "error": "invalid_credentials"}


async def test_login_inactive_account_refused(
    async_client: AsyncClient, db_session: AsyncSession, account: User
):
    account.is_active = False
    db_session.add(account)
    await db_session.commit()

    response = await async_client.post(
        f"{API}/login", json={"email": DEFAULT_EMAIL, "password": DEFAULT_PASSWORD}
    )
    assert response.status_code == 401
    assert response.json()["error"] == "invalid_credentials"


async def test_account_lockout(async_client: AsyncClient, db_session: AsyncSession, account: User):
    max_attempts = settings.LOGIN_MAX_FAILED_ATTEMPTS

    for i in range(max_attempts):
        response = await async_client.post(
            f"{API}/login", json={"email": DEFAULT_EMAIL, "password": WRONG_PASSWORD}
        )
        assert response.status_code == 401, f"Attempt {i + 1} answered {response.status_code}"

        await db_session.refresh(account)
        if i < max_attempts - 1:
            assert account.failed_login_attempts == i + 1
            assert account.locked_until is None
        else:
            # Counter resets when the lock is applied
            assert account.failed_login_attempts == 0
            assert account.locked_until is not None

    # Even the right password is refused while locked
    locked_response = await async_client.post(
        f"{API}/login", json={"email": DEFAULT_EMAIL, "password": DEFAULT_PASSWORD}
    )
    assert locked_response.status_code == 429
    body = locked_response.json()
    assert body["error"] == "rate_limited"
    assert "Try again in" in body["detail"]


async def test_successful_login_resets_failed_attempts(
    async_client: AsyncClient, db_session: AsyncSession, account: User
):
    await async_client.post(f"{API}/login", json={"email": DEFAULT_EMAIL, "password": WRONG_PASSWORD})
    await db_session.refresh(account)
    assert account.failed_login_attempts == 1

    response = await async_client.post(
        f"{API}/login", json={"email": DEFAULT_EMAIL, "password": DEFAULT_PASSWORD}
    )
    assert response.status_code == 200
    await db_session.refresh(account)
    assert account.failed_login_attempts == 0


async def test_me_requires_a_valid_session(async_client: AsyncClient, account: User, auth_headers):
    response = await async_client.get(f"{API}/me", headers=auth_headers(account))
    assert response.status_code == 200
    assert response.json()["email"] == DEFAULT_EMAIL

    missing = await async_client.get(f"{API}/me")
    assert missing.status_code == 401
    assert missing.json()["error"] == "unauthorized"

    garbage = await async_client.get(f"{API}/me", headers={"Authorization": "Bearer not-a-token"})
    assert garbage.status_code == 401
    assert garbage.json()["error"] == "unauthorized"


async def test_me_refuses_deactivated_account(
    async_client: AsyncClient, db_session: AsyncSession, account: User, auth_headers
):
    headers = auth_headers(account)
    account.is_active = False
    db_session.add(account)
    await db_session.commit()

    response = await async_client.get(f"{API}/me", headers=headers)
    assert response.status_code == 401
    assert response.json()["error"] == "unauthorized"


async def test_root(async_client: AsyncClient):
    response = await async_client.get("/")
    assert response.status_code == 200


async def test_rate_limit_answers_429(async_client: AsyncClient, monkeypatch):
    monkeypatch.setattr(
        app.state, "limiter", Limiter(key_func=get_remote_address, default_limits=["2/minute"])
    )

    for _ in range(2):
        assert (await async_client.get("/")).status_code == 200

    response = await async_client.get("/")
    assert response.status_code == 429
    data = response.json()
    assert data["error"] == "rate_limited"
    assert data["detail"].startswith("Rate limit exceeded")
