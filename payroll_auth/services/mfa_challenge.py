# payroll_auth/services/mfa_challenge.py
"""
Login-time second factor.

``start_login`` either mints a session or issues a pending ticket;
``verify_ticket`` trades a live ticket plus one valid factor for a session.
A ticket is claimed (deleted) and the factor checked inside one transaction:
a bad factor rolls the claim back, so the same ticket can be retried until
it expires or runs out of attempts, while a good factor commits the claim and
no replay can find the ticket again.
"""
from datetime import datetime, timezone
from typing import Tuple, Union

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_auth.core import security
from payroll_auth.core.config import settings
from payroll_auth.core.exceptions import (
    AccountLockedException,
    CodeExpired,
    InvalidCode,
    InvalidCredentials,
    NotEnrolled,
    RateLimited,
    TicketExpired,
)
from payroll_auth.crud import crud_email_otp, crud_mfa_recovery_code, crud_mfa_ticket
from payroll_auth.crud.crud_user import user as crud_user
from payroll_auth.models.email_otp import EmailOTPPurpose
from payroll_auth.models.user import MFAType, User
from payroll_auth.schemas.mfa import MFAMethod
from payroll_auth.schemas.token import MFARequiredResponse, SessionResponse
from payroll_auth.schemas.user import AccountSnapshot

TICKET_EXHAUSTED = "Too many failed attempts. Please sign in again."


def build_session(user: User, *, mfa_passed: bool) -> SessionResponse:
    token = security.create_access_token(user=user, mfa_passed=mfa_passed)
    return SessionResponse(token=token, user=AccountSnapshot.model_validate(user))


async def start_login(
    db: AsyncSession, *, email: str, password: str
) -> Union[SessionResponse, MFARequiredResponse]:
    try:
        user = await crud_user.authenticate(db, email=email, password=password)
    except AccountLockedException as e:
        detail_msg = "Account locked due to too many failed login attempts."
        if e.locked_until:
            now = datetime.now(timezone.utc).replace(tzinfo=None)
            if e.locked_until > now:
                remaining_minutes = int((e.locked_until - now).total_seconds() // 60) + 1
                detail_msg = f"Account locked. Try again in {remaining_minutes} minute(s)."
        raise AccountLockedException(detail_msg, locked_until=e.locked_until)

    if not user:
        raise InvalidCredentials()

    if user.mfa_enabled:
        await crud_mfa_ticket.prune_expired_tickets(db)
        _, plain_ticket = await crud_mfa_ticket.create_ticket(db, user_id=user.id)
        logger.info(f"Login for {user.email}: MFA ({user.mfa_type.value}) required, ticket issued.")
        return MFARequiredResponse(temp_ticket=plain_ticket, mfa_type=user.mfa_type)

    logger.info(f"Login for {user.email}: success, issuing session.")
    return build_session(user, mfa_passed=False)


async def _load_ticket_owner(db: AsyncSession, *, ticket: str) -> Tuple[int, int, User]:
    db_ticket = await crud_mfa_ticket.get_live_ticket(db, plain_token=ticket)
    if db_ticket is None:
        raise TicketExpired()
    ticket_id, user_id = db_ticket.id, db_ticket.user_id
    if db_ticket.failed_attempts >= settings.MFA_MAX_VERIFY_ATTEMPTS:
        raise TicketExpired(TICKET_EXHAUSTED)

    user = await crud_user.get(db, id=user_id)
    if user is not None:
        await db.refresh(user)
    if user is None or not user.is_active or not user.mfa_enabled:
        # MFA was switched off (or the account disabled) after the ticket was issued
        raise TicketExpired()
    return ticket_id, user_id, user


async def send_login_email_code(db: AsyncSession, *, ticket: str) -> Tuple[str, str]:
    """Issues a login code for an email-MFA account; returns ``(email, code)``."""
    _, user_id, user = await _load_ticket_owner(db, ticket=ticket)
    if user.mfa_type != MFAType.EMAIL:
        raise NotEnrolled("Email verification is not enabled for this account.")
    email = user.email
    code = await crud_email_otp.issue_code(db, user_id=user_id, purpose=EmailOTPPurpose.LOGIN)
    return email, code


async def _check_second_factor(db: AsyncSession, *, user: User, code: str, method: MFAMethod) -> None:
    if method == MFAMethod.TOTP:
        if user.mfa_type != MFAType.APP or not user.otp_secret:
            raise InvalidCode("Authenticator app verification is not enabled for this account.")
        step = security.match_totp_step(user.otp_secret, code)
        if step is None:
            raise InvalidCode()
        if not await crud_user.claim_totp_step(db, user_id=user.id, step=step):
            raise InvalidCode("This code was already used. Wait for the next one.")
    elif method == MFAMethod.EMAIL:
        if user.mfa_type != MFAType.EMAIL:
            raise InvalidCode("Email verification is not enabled for this account.")
        await crud_email_otp.verify_and_consume(
            db, user_id=user.id, purpose=EmailOTPPurpose.LOGIN, code=code
        )
    elif method == MFAMethod.BACKUP:
        consumed = await crud_mfa_recovery_code.consume(
            db, user_id=user.id, batch_id=user.backup_batch_id, plain_code=code
        )
        if not consumed:
            raise InvalidCode("Invalid or already used backup code.")
    else:  # pragma: no cover - guarded by the request schema
        raise InvalidCode("Unsupported verification method.")


async def verify_ticket(
    db: AsyncSession, *, ticket: str, code: str, method: MFAMethod
) -> SessionResponse:
    """
    Raises TicketExpired (also for the failure that spends the last attempt),
    RateLimited, InvalidCode or CodeExpired; on success the ticket is gone for
    good.
    """
    ticket_id, user_id, user = await _load_ticket_owner(db, ticket=ticket)

    if not await crud_mfa_ticket.claim_ticket(db, ticket_id=ticket_id):
        await db.rollback()
        raise TicketExpired()

    try:
        await _check_second_factor(db, user=user, code=code, method=method)
    except (InvalidCode, CodeExpired, RateLimited) as e:
        await db.rollback()
        if method == MFAMethod.EMAIL:
            await crud_email_otp.record_failure(db, user_id=user_id, error=e)
        attempts = await crud_mfa_ticket.record_failed_attempt(db, ticket_id=ticket_id)
        logger.warning(f"MFA verification ({method.value}) failed for user ID {user_id}: {e.detail}")
        if attempts >= settings.MFA_MAX_VERIFY_ATTEMPTS:
            raise TicketExpired(TICKET_EXHAUSTED) from e
        raise

    await db.commit()
    await db.refresh(user)
    logger.info(f"MFA verification ({method.value}) succeeded for user ID {user_id}. Issuing session.")
    return build_session(user, mfa_passed=True)
