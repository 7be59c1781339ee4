# payroll_auth/crud/crud_mfa_recovery_code.py
import secrets
import uuid
from typing import List, Tuple

from loguru import logger
from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from payroll_auth.core.config import settings
from payroll_auth.core.security import hash_secret_token, normalize_code
from payroll_auth.models.mfa_recovery_code import MFARecoveryCode

# Code format: "abc123-def456"
RECOVERY_CODE_BYTES = 3


def generate_plain_recovery_codes() -> List[str]:
    """Generates a fresh batch of human-readable backup codes."""
    codes: List[str] = []
    while len(codes) < settings.BACKUP_CODE_COUNT:
        code = f"{secrets.token_hex(RECOVERY_CODE_BYTES)}-{secrets.token_hex(RECOVERY_CODE_BYTES)}"
        if code not in codes:
            codes.append(code)
    return codes


async def create_batch(db: AsyncSession, *, user_id: int) -> Tuple[str, List[str]]:
    """
    Stores the hashes of a new batch and returns ``(batch_id, plain_codes)``.

    The batch is inert until a user row points at it. Does not commit.
    """
    batch_id = str(uuid.uuid4())
    plain_codes = generate_plain_recovery_codes()
    db.add_all(
        [
            MFARecoveryCode(
                user_id=user_id,
                batch_id=batch_id,
                code_hash=hash_secret_token(normalize_code(code)),
                is_used=False,
            )
            for code in plain_codes
        ]
    )
    await db.flush()
    logger.info(f"Generated {len(plain_codes)} backup codes (batch {batch_id}) for user ID {user_id}")
    return batch_id, plain_codes


async def delete_other_batches(db: AsyncSession, *, user_id: int, keep_batch_ids: List[str]) -> int:
    """Drops every batch of the user except ``keep_batch_ids``. Does not commit."""
    stmt = delete(MFARecoveryCode).where(
        MFARecoveryCode.user_id == user_id,
        MFARecoveryCode.batch_id.not_in(keep_batch_ids),
    )
    result = await db.execute(stmt)
    return result.rowcount


async def delete_batch(db: AsyncSession, *, user_id: int, batch_id: str) -> int:
    stmt = delete(MFARecoveryCode).where(
        MFARecoveryCode.user_id == user_id,
        MFARecoveryCode.batch_id == batch_id,
    )
    result = await db.execute(stmt)
    return result.rowcount


async def delete_all_codes_for_user(db: AsyncSession, *, user_id: int) -> int:
    """Drops every backup code of a user (MFA disabled). Does not commit."""
    stmt = delete(MFARecoveryCode).where(MFARecoveryCode.user_id == user_id)
    result = await db.execute(stmt)
    return result.rowcount


async def consume(db: AsyncSession, *, user_id: int, batch_id: str | None, plain_code: str) -> bool:
    """
    Marks a matching unused code of ``batch_id`` as used.

    Check and mark are one UPDATE, so of two concurrent callers with the same
    code exactly one gets rowcount 1. Unknown and already-used codes fail the
    same way. Does not commit.
    """
    if not batch_id or not plain_code:
        return False
    stmt = (
        update(MFARecoveryCode)
        .where(
            MFARecoveryCode.user_id == user_id,
            MFARecoveryCode.batch_id == batch_id,
            MFARecoveryCode.code_hash == hash_secret_token(normalize_code(plain_code)),
            MFARecoveryCode.is_used.is_(False),
        )
        .values(is_used=True)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def count_unused(db: AsyncSession, *, user_id: int, batch_id: str | None) -> int:
    if not batch_id:
        return 0
    stmt = select(func.count(MFARecoveryCode.id)).where(
        MFARecoveryCode.user_id == user_id,
        MFARecoveryCode.batch_id == batch_id,
        MFARecoveryCode.is_used.is_(False),
    )
    result = await db.execute(stmt)
    return result.scalar_one()
