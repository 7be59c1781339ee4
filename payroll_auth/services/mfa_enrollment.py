# payroll_auth/services/mfa_enrollment.py
"""
MFA enrollment, backup-code regeneration and disablement.

Nothing changes the account's MFA state until the matching confirm call
succeeds; every confirm is one transaction ending in a single commit.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_auth.core import security
from payroll_auth.core.config import settings
from payroll_auth.core.exceptions import (
    AlreadyEnrolled,
    CodeExpired,
    ExpiredEnrollment,
    InvalidCode,
    InvalidCredentials,
    NotEnrolled,
    RateLimited,
    Unauthorized,
)
from payroll_auth.crud import crud_email_otp, crud_mfa_recovery_code, crud_mfa_ticket
from payroll_auth.crud.crud_user import user as crud_user
from payroll_auth.models.email_otp import EmailOTPPurpose
from payroll_auth.models.user import MFAType, User

# Columns reset whenever MFA is turned off or a method is replaced
_CLEARED_PENDING = {
    "pending_otp_secret": None,
    "pending_otp_expires_at": None,
    "pending_backup_batch_id": None,
}


@dataclass
class TOTPSetup:
    secret: str
    otp_uri: str
    qr_code: str
    backup_codes: List[str]


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# --- Authenticator app (TOTP) ---
async def begin_totp_enrollment(db: AsyncSession, *, user: User) -> TOTPSetup:
    """
    Issues a pending secret and a pending backup-code batch.

    A second call replaces both; the account stays exactly as it was.
    """
    if user.mfa_enabled and user.mfa_type == MFAType.APP:
        raise AlreadyEnrolled("Authenticator app MFA is already enabled.")

    user_id = user.id
    previous_pending_batch = user.pending_backup_batch_id
    otp_secret = security.generate_otp_secret()
    batch_id, plain_codes = await crud_mfa_recovery_code.create_batch(db, user_id=user_id)
    if previous_pending_batch:
        await crud_mfa_recovery_code.delete_batch(db, user_id=user_id, batch_id=previous_pending_batch)

    user.pending_otp_secret = otp_secret
    user.pending_otp_expires_at = _now() + timedelta(minutes=settings.MFA_ENROLLMENT_EXPIRE_MINUTES)
    user.pending_backup_batch_id = batch_id
    db.add(user)
    await db.commit()
    await db.refresh(user)

    otp_uri = security.generate_otp_uri(
        secret=otp_secret, email=user.email, issuer_name=settings.MFA_ISSUER_NAME
    )
    try:
        qr_code = security.generate_qr_code_base64(otp_uri)
    except Exception as e:
        logger.error(f"Failed to render QR code for {user.email}: {e}")
        qr_code = ""

    logger.info(f"Authenticator app setup started for user ID {user_id}")
    return TOTPSetup(secret=otp_secret, otp_uri=otp_uri, qr_code=qr_code, backup_codes=plain_codes)


async def _discard_pending_enrollment(db: AsyncSession, *, user_id: int, batch_id: Optional[str]) -> None:
    await crud_user.apply_mfa_state(db, user_id=user_id, values=dict(_CLEARED_PENDING))
    if batch_id:
        await crud_mfa_recovery_code.delete_batch(db, user_id=user_id, batch_id=batch_id)
    await db.commit()


async def confirm_totp_enrollment(
    db: AsyncSession, *, user: User, code: str, is_backup_code: bool = False
) -> User:
    """
    Checks the first code against the pending secret (or a pending backup code)
    and commits the enrollment.

    Raises AlreadyEnrolled, ExpiredEnrollment or InvalidCode; a failure leaves
    the pending enrollment in place for another try.
    """
    if user.mfa_enabled and user.mfa_type == MFAType.APP:
        raise AlreadyEnrolled("Authenticator app MFA is already enabled.")

    user_id = user.id
    pending_secret = user.pending_otp_secret
    pending_batch = user.pending_backup_batch_id
    if not pending_secret:
        raise ExpiredEnrollment("No authenticator app setup in progress. Please start again.")

    if user.pending_otp_expires_at and user.pending_otp_expires_at <= _now():
        await _discard_pending_enrollment(db, user_id=user_id, batch_id=pending_batch)
        logger.info(f"Authenticator app setup expired for user ID {user_id}")
        raise ExpiredEnrollment()

    values = {
        "otp_secret": pending_secret,
        "otp_last_used_step": None,
        "mfa_enabled": True,
        "mfa_type": MFAType.APP,
        "backup_batch_id": pending_batch,
        **_CLEARED_PENDING,
    }
    if is_backup_code:
        accepted = await crud_mfa_recovery_code.consume(
            db, user_id=user_id, batch_id=pending_batch, plain_code=code
        )
    else:
        step = security.match_totp_step(pending_secret, code)
        accepted = step is not None
        # The enrollment code may not be replayed at the next login
        values["otp_last_used_step"] = step

    if not accepted:
        await db.rollback()
        logger.warning(f"Wrong first code during authenticator app setup for user ID {user_id}")
        raise InvalidCode()

    # Compare-and-set on the pending secret: a concurrent confirm or a restarted
    # setup makes this one lose
    applied = await crud_user.apply_mfa_state(
        db, user_id=user_id, values=values, expected={"pending_otp_secret": pending_secret}
    )
    if not applied:
        await db.rollback()
        raise ExpiredEnrollment("Authenticator app setup changed. Please start again.")

    keep = [pending_batch] if pending_batch else []
    await crud_mfa_recovery_code.delete_other_batches(db, user_id=user_id, keep_batch_ids=keep)
    await crud_email_otp.delete_challenge(db, user_id=user_id)
    await db.commit()
    await db.refresh(user)
    logger.info(f"Authenticator app MFA enabled for user ID {user_id}")
    return user


# --- Email one-time codes ---
async def send_email_enrollment_code(db: AsyncSession, *, user: User) -> str:
    """Issues (or re-issues) the enrollment code; returns it for dispatch."""
    if user.mfa_enabled and user.mfa_type == MFAType.EMAIL:
        raise AlreadyEnrolled("Email MFA is already enabled.")
    return await crud_email_otp.issue_code(db, user_id=user.id, purpose=EmailOTPPurpose.ENROLL)


async def confirm_email_enrollment(db: AsyncSession, *, user: User, code: str) -> User:
    """
    Checks the emailed code and switches the account to email MFA.

    An authenticator app enrollment, if any, is superseded: its secret and
    backup codes are dropped in the same commit.
    """
    if user.mfa_enabled and user.mfa_type == MFAType.EMAIL:
        raise AlreadyEnrolled("Email MFA is already enabled.")

    user_id = user.id
    try:
        await crud_email_otp.verify_and_consume(
            db, user_id=user_id, purpose=EmailOTPPurpose.ENROLL, code=code
        )
    except (InvalidCode, CodeExpired, RateLimited) as e:
        await db.rollback()
        await crud_email_otp.record_failure(db, user_id=user_id, error=e)
        raise

    await crud_user.apply_mfa_state(
        db,
        user_id=user_id,
        values={
            "mfa_enabled": True,
            "mfa_type": MFAType.EMAIL,
            "otp_secret": None,
            "otp_last_used_step": None,
            "backup_batch_id": None,
            **_CLEARED_PENDING,
        },
    )
    await crud_mfa_recovery_code.delete_all_codes_for_user(db, user_id=user_id)
    await db.commit()
    await db.refresh(user)
    logger.info(f"Email MFA enabled for user ID {user_id}")
    return user


# --- Backup codes ---
async def regenerate_backup_codes(
    db: AsyncSession, *, user: User, account_id: Optional[int] = None
) -> List[str]:
    """
    Replaces the active batch. Old codes stop working at the commit that makes
    the new batch active; the plain codes are returned this once.
    """
    if account_id is not None and account_id != user.id:
        raise Unauthorized("Backup codes can only be generated for your own account.")
    if not user.mfa_enabled:
        raise NotEnrolled()

    user_id = user.id
    keep_pending = user.pending_backup_batch_id
    batch_id, plain_codes = await crud_mfa_recovery_code.create_batch(db, user_id=user_id)
    await crud_user.apply_mfa_state(db, user_id=user_id, values={"backup_batch_id": batch_id})
    keep = [batch_id] + ([keep_pending] if keep_pending else [])
    removed = await crud_mfa_recovery_code.delete_other_batches(db, user_id=user_id, keep_batch_ids=keep)
    await db.commit()
    await db.refresh(user)
    logger.info(f"Backup codes regenerated for user ID {user_id} ({removed} old codes removed)")
    return plain_codes


# --- Disable ---
async def disable_mfa(db: AsyncSession, *, user: User, password: str) -> User:
    """
    Password-gated: turns MFA off and forgets the secret, codes and tickets.
    """
    if not security.verify_password(password, user.hashed_password):
        logger.warning(f"Wrong password while disabling MFA for user ID {user.id}")
        raise InvalidCredentials("Incorrect password.")
    if not user.mfa_enabled:
        raise NotEnrolled()

    user_id = user.id
    await crud_user.apply_mfa_state(
        db,
        user_id=user_id,
        values={
            "mfa_enabled": False,
            "mfa_type": MFAType.NONE,
            "otp_secret": None,
            "otp_last_used_step": None,
            "backup_batch_id": None,
            **_CLEARED_PENDING,
        },
    )
    rows_deleted = await crud_mfa_recovery_code.delete_all_codes_for_user(db, user_id=user_id)
    await crud_email_otp.delete_challenge(db, user_id=user_id)
    await crud_mfa_ticket.delete_tickets_for_user(db, user_id=user_id)
    await db.commit()
    await db.refresh(user)
    logger.info(f"MFA disabled for user ID {user_id}; {rows_deleted} backup codes removed.")
    return user
