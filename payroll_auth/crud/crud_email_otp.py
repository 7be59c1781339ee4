# payroll_auth/crud/crud_email_otp.py
import math
from datetime import datetime, timedelta, timezone
from typing import Optional

import pyotp  # type: ignore
from loguru import logger
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from payroll_auth.core.config import settings
from payroll_auth.core.exceptions import CodeExpired, InvalidCode, RateLimited
from payroll_auth.core.security import generate_numeric_code, hash_secret_token, normalize_code
from payroll_auth.models.email_otp import EmailOTPChallenge, EmailOTPPurpose


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def get_challenge(db: AsyncSession, *, user_id: int) -> Optional[EmailOTPChallenge]:
    stmt = (
        select(EmailOTPChallenge)
        .where(EmailOTPChallenge.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


def seconds_until_resend(challenge: Optional[EmailOTPChallenge]) -> int:
    """Remaining resend cooldown for the account's current challenge (0 = may send)."""
    if challenge is None or settings.EMAIL_OTP_RESEND_COOLDOWN_SECONDS <= 0:
        return 0
    elapsed = (_now() - challenge.created_at).total_seconds()
    remaining = settings.EMAIL_OTP_RESEND_COOLDOWN_SECONDS - elapsed
    return max(0, math.ceil(remaining))


async def replace_challenge(
    db: AsyncSession, *, user_id: int, purpose: EmailOTPPurpose
) -> str:
    """
    Issues a new code for the account, superseding any earlier one.

    Delete and insert share one transaction, so there is never a moment where
    two codes are valid. Returns the plain code. Does not commit.
    """
    await db.execute(delete(EmailOTPChallenge).where(EmailOTPChallenge.user_id == user_id))
    code = generate_numeric_code(settings.EMAIL_OTP_LENGTH)
    now = _now()
    db.add(
        EmailOTPChallenge(
            user_id=user_id,
            purpose=purpose,
            code_hash=hash_secret_token(code),
            expires_at=now + timedelta(minutes=settings.EMAIL_OTP_EXPIRE_MINUTES),
            attempts=0,
            created_at=now,
        )
    )
    await db.flush()
    return code


async def issue_code(db: AsyncSession, *, user_id: int, purpose: EmailOTPPurpose) -> str:
    """Resend-cooldown check plus ``replace_challenge``, committed."""
    wait_seconds = seconds_until_resend(await get_challenge(db, user_id=user_id))
    if wait_seconds:
        raise RateLimited(f"Please wait {wait_seconds}s before requesting a new code.")
    code = await replace_challenge(db, user_id=user_id, purpose=purpose)
    await db.commit()
    logger.info(f"Email code ({purpose.value}) issued for user ID {user_id}")
    return code


async def delete_challenge(db: AsyncSession, *, user_id: int) -> int:
    result = await db.execute(delete(EmailOTPChallenge).where(EmailOTPChallenge.user_id == user_id))
    return result.rowcount


async def verify_and_consume(
    db: AsyncSession, *, user_id: int, purpose: EmailOTPPurpose, code: str
) -> None:
    """
    Checks ``code`` against the account's live challenge and deletes it on a match.

    Raises InvalidCode, CodeExpired or RateLimited without touching the
    database; callers roll back and then call ``record_failure``. The hash
    comparison runs before any branch so expired and mismatched codes cost
    the same.
    """
    challenge = await get_challenge(db, user_id=user_id)
    submitted_hash = hash_secret_token(normalize_code(code or ""))
    stored_hash = challenge.code_hash if challenge else hash_secret_token("")
    matches = pyotp.utils.strings_equal(submitted_hash, stored_hash) and challenge is not None

    if challenge is None or challenge.purpose != purpose:
        raise InvalidCode("No pending code. Please request a new one.")

    if challenge.attempts >= settings.EMAIL_OTP_MAX_ATTEMPTS:
        raise RateLimited("Too many attempts. Please request a new code.")

    if challenge.expires_at <= _now():
        raise CodeExpired()

    if not matches:
        raise InvalidCode()

    # Only one concurrent caller can delete the row
    result = await db.execute(
        delete(EmailOTPChallenge).where(
            EmailOTPChallenge.id == challenge.id,
            EmailOTPChallenge.code_hash == submitted_hash,
        )
    )
    if result.rowcount != 1:
        raise InvalidCode()


async def record_failure(db: AsyncSession, *, user_id: int, error: Exception) -> None:
    """Persists the consequence of a failed check: expired codes go away, misses count."""
    if isinstance(error, CodeExpired):
        await delete_challenge(db, user_id=user_id)
        logger.info(f"Expired email code discarded for user ID {user_id}")
    elif isinstance(error, InvalidCode):
        await db.execute(
            update(EmailOTPChallenge)
            .where(EmailOTPChallenge.user_id == user_id)
            .values(attempts=EmailOTPChallenge.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        logger.warning(f"Wrong email code for user ID {user_id}")
    await db.commit()
