# payroll_auth/core/config.py
import logging
from pathlib import Path
from typing import List

from pydantic import EmailStr
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent.parent.parent
ENV_FILE_PATH = BASE_DIR / ".env"


class Settings(BaseSettings):

    # Core
    DATABASE_URL: str = "sqlite+aiosqlite:///./payroll_auth.db"
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 12
    API_PREFIX: str = "/api"

    # JWT claims
    JWT_ISSUER: str = "http://localhost:5000"
    JWT_AUDIENCE: str = "payroll-admin"

    # Account Lockout
    LOGIN_MAX_FAILED_ATTEMPTS: int = 5
    LOGIN_LOCKOUT_MINUTES: int = 15

    # MFA - login challenge
    MFA_TICKET_EXPIRE_MINUTES: int = 10
    MFA_MAX_VERIFY_ATTEMPTS: int = 5

    # MFA - authenticator app
    MFA_ISSUER_NAME: str = "Payroll Admin"
    MFA_ENROLLMENT_EXPIRE_MINUTES: int = 15

    # MFA - backup codes
    BACKUP_CODE_COUNT: int = 10

    # MFA - email codes
    EMAIL_OTP_LENGTH: int = 6
    EMAIL_OTP_EXPIRE_MINUTES: int = 10
    EMAIL_OTP_MAX_ATTEMPTS: int = 5
    EMAIL_OTP_RESEND_COOLDOWN_SECONDS: int = 60

    # Email (Brevo)
    BREVO_API_KEY: str | None = None
    EMAIL_FROM: EmailStr = "no-reply@payroll.example.com"
    EMAIL_FROM_NAME: str | None = "Payroll Admin"

    # Rate limiting (slowapi)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_DEFAULT: str = "60/minute"

    # CORS
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5000",
    ]

    # Optional seed account (db/initial_data.py)
    FIRST_ACCOUNT_EMAIL: EmailStr | None = None
    FIRST_ACCOUNT_PASSWORD: str | None = None

    class Config:
        case_sensitive = True
        env_file = ENV_FILE_PATH
        env_file_encoding = "utf-8"
        extra = "ignore"


try:
    settings = Settings()
except Exception as e:
    logging.error(f"FATAL: could not load 'settings' from environment / {ENV_FILE_PATH}: {e}")
    raise e
