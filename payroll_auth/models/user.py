# payroll_auth/models/user.py
import enum
from datetime import datetime
from typing import List, Optional

from sqlalchemy import Boolean, DateTime, Enum, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payroll_auth.db.base import Base
from payroll_auth.models.email_otp import EmailOTPChallenge  # type: ignore
from payroll_auth.models.mfa_recovery_code import MFARecoveryCode  # type: ignore
from payroll_auth.models.mfa_ticket import MFATicket  # type: ignore


class MFAType(str, enum.Enum):
    NONE = "none"
    APP = "app"
    EMAIL = "email"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    full_name: Mapped[Optional[str]] = mapped_column(String(150))
    role: Mapped[str] = mapped_column(String(32), default="user", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # --- Account Lockout ---
    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # --- MFA ---
    # mfa_type != NONE <=> mfa_enabled
    mfa_enabled: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, server_default="false"
    )
    mfa_type: Mapped[MFAType] = mapped_column(
        Enum(MFAType, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        default=MFAType.NONE,
        nullable=False,
    )
    otp_secret: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    otp_last_used_step: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    backup_batch_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    # --- Pending authenticator-app enrollment (nothing here is "enabled") ---
    pending_otp_secret: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    pending_otp_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    pending_backup_batch_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    recovery_codes: Mapped[List["MFARecoveryCode"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    email_challenge: Mapped[Optional["EmailOTPChallenge"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", uselist=False
    )
    mfa_tickets: Mapped[List["MFATicket"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
