# payroll_auth/db/initial_data.py
import asyncio
import sys

from loguru import logger

from payroll_auth.core.config import settings
from payroll_auth.crud.crud_user import user as crud_user
from payroll_auth.db.base import Base
from payroll_auth.db.session import dispose_engine, get_async_engine, get_session_factory
from payroll_auth.models import user  # noqa F401
from payroll_auth.schemas.user import AccountCreate


async def init_db(drop_existing: bool = False) -> None:
    engine = get_async_engine()
    async with engine.begin() as conn:
        if drop_existing:
            logger.info("Dropping all existing tables...")
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Creating tables defined in the models...")
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Tables ready.")


async def seed_first_account() -> None:
    """Creates the FIRST_ACCOUNT_* administrator when configured and missing."""
    if not settings.FIRST_ACCOUNT_EMAIL or not settings.FIRST_ACCOUNT_PASSWORD:
        logger.info("FIRST_ACCOUNT_EMAIL/PASSWORD not set, skipping seed account.")
        return

    async with get_session_factory()() as db:
        existing = await crud_user.get_by_email(db, email=settings.FIRST_ACCOUNT_EMAIL)
        if existing:
            logger.info(f"Seed account {existing.email} already exists.")
            return
        account = await crud_user.create(
            db,
            obj_in=AccountCreate(
                email=settings.FIRST_ACCOUNT_EMAIL,
                password=settings.FIRST_ACCOUNT_PASSWORD,
                full_name="Payroll Administrator",
                role="admin",
            ),
        )
        logger.info(f"Seed account {account.email} created (ID {account.id}).")


async def main() -> None:
    await init_db(drop_existing="--drop" in sys.argv)
    await seed_first_account()
    await dispose_engine()


if __name__ == "__main__":
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())  # type: ignore [attr-defined]

    try:
        asyncio.run(main())
    except Exception as e:
        logger.exception(f"Database initialisation failed: {e}")
        sys.exit(1)
