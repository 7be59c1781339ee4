# tests/test_07_disable.py
import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_auth.crud import crud_email_otp
from payroll_auth.models.email_otp import EmailOTPPurpose
from payroll_auth.models.mfa_recovery_code import MFARecoveryCode
from payroll_auth.models.user import MFAType, User

pytestmark = pytest.mark.asyncio

API = "/api/auth"
EMAIL = "admin@example.com"
PASSWORD = "Payroll-Admin-123!"


async def count_codes(db_session: AsyncSession, user_id: int) -> int:
    result = await db_session.execute(
        select(func.count(MFARecoveryCode.id)).where(MFARecoveryCode.user_id == user_id)
    )
    return result.scalar_one()


async def test_disable_with_wrong_password_changes_nothing(
    async_client: AsyncClient, db_session: AsyncSession, app_mfa_account, auth_headers
):
    user, secret, codes = app_mfa_account
    response = await async_client.post(
        f"{API}/mfa/disable", headers=auth_headers(user), json={"password": "not-the-password"}
    )
    assert response.status_code == 401
    assert response.json() == {"detail": "Incorrect password.", "error": "invalid_credentials"}

    await db_session.refresh(user)
    assert user.mfa_enabled is True
    assert user.mfa_type == MFAType.APP
    assert user.otp_secret == secret
    assert await count_codes(db_session, user.id) == len(codes)


async def test_disable_clears_everything(
    async_client: AsyncClient, db_session: AsyncSession, app_mfa_account, auth_headers
):
    user, _, _ = app_mfa_account
    response = await async_client.post(
        f"{API}/mfa/disable", headers=auth_headers(user), json={"password": PASSWORD}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["user"]["mfaEnabled"] is False
    assert body["user"]["mfaType"] == "none"

    await db_session.refresh(user)
    assert user.mfa_enabled is False
    assert user.mfa_type == MFAType.NONE
    assert user.otp_secret is None
    assert user.otp_last_used_step is None
    assert user.backup_batch_id is None
    assert await count_codes(db_session, user.id) == 0

    # Back to a plain password login
    login = await async_client.post(f"{API}/login", json={"email": EMAIL, "password": PASSWORD})
    assert login.status_code == 200
    assert "token" in login.json()


async def test_disable_email_mfa_drops_pending_code(
    async_client: AsyncClient, db_session: AsyncSession, email_mfa_account: User, auth_headers
):
    await crud_email_otp.issue_code(db_session, user_id=email_mfa_account.id, purpose=EmailOTPPurpose.LOGIN)
    response = await async_client.post(
        f"{API}/mfa/disable", headers=auth_headers(email_mfa_account), json={"password": PASSWORD}
    )
    assert response.status_code == 200
    assert await crud_email_otp.get_challenge(db_session, user_id=email_mfa_account.id) is None


async def test_disable_when_not_enrolled(async_client: AsyncClient, account: User, auth_headers):
    response = await async_client.post(
        f"{API}/mfa/disable", headers=auth_headers(account), json={"password": PASSWORD}
    )
    assert response.status_code == 409
    assert response.json()["error"] == "not_enrolled"


async def test_reenrollment_after_disable_starts_fresh(
    async_client: AsyncClient, db_session: AsyncSession, app_mfa_account, auth_headers
):
    user, secret, codes = app_mfa_account
    headers = auth_headers(user)
    await async_client.post(f"{API}/mfa/disable", headers=headers, json={"password": PASSWORD})

    setup = await async_client.post(f"{API}/mfa/setup", headers=headers)
    assert setup.status_code == 200
    assert setup.json()["secret"] != secret
    assert set(setup.json()["backupCodes"]).isdisjoint(codes)
