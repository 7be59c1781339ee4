# payroll_auth/models/email_otp.py
import enum
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_auth.db.base import Base

if TYPE_CHECKING:
    from .user import User  # noqa F401


class EmailOTPPurpose(str, enum.Enum):
    ENROLL = "enroll"
    LOGIN = "login"


class EmailOTPChallenge(Base):
    __tablename__ = "email_otp_challenges"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    # unique: at most one live code per account
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    purpose: Mapped[EmailOTPPurpose] = mapped_column(
        Enum(EmailOTPPurpose, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    user: Mapped["User"] = relationship(back_populates="email_challenge")
