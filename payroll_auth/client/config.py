# payroll_auth/client/config.py
import logging
from pathlib import Path

from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent.parent.parent
ENV_FILE_PATH = BASE_DIR / ".env"


class ClientSettings(BaseSettings):
    """Settings of the admin client; read from PAYROLL_* variables."""

    API_URL: str = "http://localhost:5000/api"
    CREDENTIALS_FILE: Path = Path.home() / ".payroll_admin" / "credentials.json"
    # Lifetime of the cached MFA ticket, matching the server's ticket TTL
    TICKET_CACHE_SECONDS: int = 600
    REQUEST_TIMEOUT: float = 10.0

    class Config:
        env_prefix = "PAYROLL_"
        case_sensitive = True
        env_file = ENV_FILE_PATH
        env_file_encoding = "utf-8"
        extra = "ignore"


try:
    client_settings = ClientSettings()
except Exception as e:
    logging.error(f"FATAL: could not load client settings from environment / {ENV_FILE_PATH}: {e}")
    raise e
