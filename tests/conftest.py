import os

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production-0123456789")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["EMAIL_OTP_RESEND_COOLDOWN_SECONDS"] = "0"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ.pop("BREVO_API_KEY", None)

from typing import AsyncGenerator, Awaitable, Callable, List, Tuple  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from main import app  # noqa: E402
from payroll_auth.api.endpoints import auth as auth_endpoints  # noqa: E402
from payroll_auth.crud import crud_mfa_recovery_code  # noqa: E402
from payroll_auth.crud.crud_user import user as crud_user  # noqa: E402
from payroll_auth.db.base import Base  # noqa: E402
from payroll_auth.db.session import get_db  # noqa: E402
from payroll_auth.core import security  # noqa: E402
from payroll_auth.models.email_otp import EmailOTPPurpose  # noqa: E402
from payroll_auth.models.user import MFAType, User  # noqa: E402
from payroll_auth.schemas.user import AccountCreate  # noqa: E402

DEFAULT_EMAIL = "admin@example.com"
DEFAULT_PASSWORD = "Payroll-Admin-123!"


# --- DATABASE: one SQLite file per test ---
@pytest.fixture
async def async_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# --- HTTP CLIENT: every request gets its own session, as in production ---
@pytest.fixture
async def async_client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_db, None)


# --- EMAIL: codes are captured instead of sent ---
@pytest.fixture(autouse=True)
def outbox(monkeypatch) -> List[Tuple[str, str, EmailOTPPurpose]]:
    sent: List[Tuple[str, str, EmailOTPPurpose]] = []

    async def fake_send_mfa_code_email(email_to: str, code: str, purpose: EmailOTPPurpose) -> bool:
        sent.append((email_to, code, purpose))
        return True

    monkeypatch.setattr(auth_endpoints, "send_mfa_code_email", fake_send_mfa_code_email)
    return sent


# --- ACCOUNTS ---
@pytest.fixture
def create_account(db_session) -> Callable[..., Awaitable[User]]:
    async def _create(email: str = DEFAULT_EMAIL, password: str = DEFAULT_PASSWORD, **extra) -> User:
        return await crud_user.create(
            db_session,
            obj_in=AccountCreate(email=email, password=password, full_name="Payroll Admin", **extra),
        )

    return _create


@pytest.fixture
async def account(create_account) -> User:
    return await create_account()


@pytest.fixture
async def app_mfa_account(db_session, account) -> Tuple[User, str, List[str]]:
    """Account with authenticator app MFA already on: ``(user, secret, backup_codes)``."""
    secret = security.generate_otp_secret()
    batch_id, codes = await crud_mfa_recovery_code.create_batch(db_session, user_id=account.id)
    account.otp_secret = secret
    account.mfa_enabled = True
    account.mfa_type = MFAType.APP
    account.backup_batch_id = batch_id
    db_session.add(account)
    await db_session.commit()
    await db_session.refresh(account)
    return account, secret, codes


@pytest.fixture
async def email_mfa_account(db_session, account) -> User:
    account.mfa_enabled = True
    account.mfa_type = MFAType.EMAIL
    db_session.add(account)
    await db_session.commit()
    await db_session.refresh(account)
    return account


@pytest.fixture
def auth_headers() -> Callable[[User], dict]:
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {security.create_access_token(user)}"}

    return _headers
