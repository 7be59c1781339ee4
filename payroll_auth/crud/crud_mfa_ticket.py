# payroll_auth/crud/crud_mfa_ticket.py
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from loguru import logger
from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from payroll_auth.core.config import settings
from payroll_auth.core.security import generate_ticket_token, hash_secret_token
from payroll_auth.models.mfa_ticket import MFATicket


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def create_ticket(db: AsyncSession, *, user_id: int) -> Tuple[MFATicket, str]:
    """
    Issues a pre-authentication ticket and returns ``(db_ticket, plain_token)``.

    Only the hash is stored; the plain token leaves the server once.
    """
    plain_token = generate_ticket_token()
    now = _now()
    db_ticket = MFATicket(
        user_id=user_id,
        token_hash=hash_secret_token(plain_token),
        issued_at=now,
        expires_at=now + timedelta(minutes=settings.MFA_TICKET_EXPIRE_MINUTES),
        failed_attempts=0,
    )
    db.add(db_ticket)
    await db.commit()
    await db.refresh(db_ticket)
    logger.info(f"MFA ticket (ID: {db_ticket.id}) issued for user ID {user_id}")
    return db_ticket, plain_token


async def get_live_ticket(db: AsyncSession, *, plain_token: str) -> Optional[MFATicket]:
    """Returns the ticket for ``plain_token`` if it exists and has not expired."""
    if not plain_token:
        return None
    stmt = (
        select(MFATicket)
        .where(
            MFATicket.token_hash == hash_secret_token(plain_token),
            MFATicket.expires_at > _now(),
        )
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalars().first()


async def claim_ticket(db: AsyncSession, *, ticket_id: int) -> bool:
    """
    Deletes a live ticket; True only for the one caller whose DELETE hit the row.

    Does not commit: rolling back the surrounding transaction puts the ticket
    back, which is how a failed second factor keeps the same ticket usable.
    """
    stmt = delete(MFATicket).where(
        MFATicket.id == ticket_id,
        MFATicket.expires_at > _now(),
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def record_failed_attempt(db: AsyncSession, *, ticket_id: int) -> int:
    """
    Counts a failed second factor against the ticket and returns the new total.

    A ticket that reaches ``MFA_MAX_VERIFY_ATTEMPTS`` is deleted in the same
    commit; only a fresh password login can continue.
    """
    stmt = (
        update(MFATicket)
        .where(MFATicket.id == ticket_id)
        .values(failed_attempts=MFATicket.failed_attempts + 1)
        .execution_options(synchronize_session=False)
    )
    await db.execute(stmt)
    result = await db.execute(select(MFATicket.failed_attempts).where(MFATicket.id == ticket_id))
    attempts = result.scalar_one_or_none() or 0
    if attempts >= settings.MFA_MAX_VERIFY_ATTEMPTS:
        await db.execute(delete(MFATicket).where(MFATicket.id == ticket_id))
        logger.info(f"MFA ticket (ID: {ticket_id}) used up its attempts and was revoked")
    await db.commit()
    return attempts


async def delete_tickets_for_user(db: AsyncSession, *, user_id: int) -> int:
    """Drops outstanding tickets (e.g. once MFA is turned off). Does not commit."""
    result = await db.execute(delete(MFATicket).where(MFATicket.user_id == user_id))
    return result.rowcount


async def prune_expired_tickets(db: AsyncSession) -> int:
    """Removes expired tickets."""
    result = await db.execute(delete(MFATicket).where(MFATicket.expires_at <= _now()))
    await db.commit()
    return result.rowcount
