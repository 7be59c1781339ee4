# payroll_auth/crud/crud_user.py
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from payroll_auth.core.config import settings
from payroll_auth.core.exceptions import AccountLockedException
from payroll_auth.core.security import get_password_hash, verify_password
from payroll_auth.crud.base import CRUDBase
from payroll_auth.models.user import MFAType, User
from payroll_auth.schemas.user import AccountCreate


class CRUDUser(CRUDBase[User, AccountCreate]):

    async def get_by_email(self, db: AsyncSession, *, email: str) -> Optional[User]:
        stmt = select(User).filter(User.email == email.lower())
        result = await db.execute(stmt)
        return result.scalars().first()

    async def create(self, db: AsyncSession, *, obj_in: AccountCreate) -> User:
        """Accounts are provisioned by administrators; MFA always starts off."""
        db_obj = User(
            email=obj_in.email.lower(),
            hashed_password=get_password_hash(obj_in.password),
            full_name=obj_in.full_name,
            role=obj_in.role,
            is_active=True,
            mfa_enabled=False,
            mfa_type=MFAType.NONE,
        )
        db.add(db_obj)
        await db.commit()
        await db.refresh(db_obj)
        return db_obj

    async def authenticate(self, db: AsyncSession, *, email: str, password: str) -> Optional[User]:
        """
        Checks email and password, applying the failed-attempt lockout.
        """
        user = await self.get_by_email(db, email=email)
        if not user:
            # Burn a hash anyway so unknown emails cost the same as wrong passwords
            verify_password(password, _DUMMY_HASH)
            return None

        now_naive = datetime.now(timezone.utc).replace(tzinfo=None)

        if user.locked_until and user.locked_until > now_naive:
            logger.warning(f"Login attempt for locked account {email} (until {user.locked_until})")
            raise AccountLockedException(
                f"Account locked until {user.locked_until}", locked_until=user.locked_until
            )

        if not verify_password(password, user.hashed_password):
            user.failed_login_attempts = (user.failed_login_attempts or 0) + 1
            if user.failed_login_attempts >= settings.LOGIN_MAX_FAILED_ATTEMPTS:
                lock_duration = timedelta(minutes=settings.LOGIN_LOCKOUT_MINUTES)
                user.locked_until = now_naive + lock_duration
                user.failed_login_attempts = 0
                logger.warning(
                    f"ACCOUNT LOCKED: {email} for {lock_duration} after "
                    f"{settings.LOGIN_MAX_FAILED_ATTEMPTS} failed attempts."
                )
            else:
                logger.warning(
                    f"Wrong password for {email}. Attempt "
                    f"{user.failed_login_attempts}/{settings.LOGIN_MAX_FAILED_ATTEMPTS}."
                )
            db.add(user)
            await db.commit()
            return None

        if not user.is_active:
            logger.warning(f"Login with correct password refused for inactive account: {email}")
            return None

        if user.failed_login_attempts > 0 or user.locked_until:
            user.failed_login_attempts = 0
            user.locked_until = None
            db.add(user)
            await db.commit()

        return user

    async def claim_totp_step(self, db: AsyncSession, *, user_id: int, step: int) -> bool:
        """
        Records ``step`` as the last accepted TOTP step, only if it is newer.

        A single conditional UPDATE: two requests carrying the same code cannot
        both see rowcount 1. Does not commit.
        """
        stmt = (
            update(User)
            .where(
                User.id == user_id,
                or_(User.otp_last_used_step.is_(None), User.otp_last_used_step < step),
            )
            .values(otp_last_used_step=step)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def apply_mfa_state(
        self,
        db: AsyncSession,
        *,
        user_id: int,
        values: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Conditionally writes MFA columns. ``expected`` pins column values that
        must still hold (compare-and-set); returns False when another request
        changed them first. Does not commit.
        """
        conditions = [User.id == user_id]
        for column, value in (expected or {}).items():
            attr = getattr(User, column)
            conditions.append(attr.is_(None) if value is None else attr == value)
        stmt = (
            update(User)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1


_DUMMY_HASH = get_password_hash("payroll-auth-timing-equalizer")

# Single CRUD instance used by services and endpoints
user = CRUDUser(User)
