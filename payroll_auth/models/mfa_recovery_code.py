# payroll_auth/models/mfa_recovery_code.py
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_auth.db.base import Base

if TYPE_CHECKING:
    from .user import User  # noqa F401


class MFARecoveryCode(Base):
    __tablename__ = "mfa_recovery_codes"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    # Codes are issued in batches; only the batch referenced by the user is usable
    batch_id: Mapped[str] = mapped_column(String(36), nullable=False)

    # Keyed hash of the code, never the code itself
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    user: Mapped["User"] = relationship(back_populates="recovery_codes")

    __table_args__ = (
        Index("ix_mfa_recovery_codes_user_batch", "user_id", "batch_id"),
        Index("ix_mfa_recovery_codes_code_hash", "code_hash", unique=True),
    )
