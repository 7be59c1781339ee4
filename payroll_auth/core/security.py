# payroll_auth/core/security.py
import base64
import hashlib
import hmac
import io
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pyotp  # type: ignore
import qrcode  # type: ignore
from jose import JWTError, jwt  # type: ignore
from loguru import logger
from passlib.context import CryptContext  # type: ignore

from payroll_auth.models.user import MFAType, User as UserModel

from .config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


# --- PASSWORDS ---
def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        # bcrypt only looks at the first 72 bytes
        password_bytes = plain_password.encode("utf-8")[:72]
        return pwd_context.verify(password_bytes, hashed_password)
    except Exception:
        return False


def get_password_hash(password: str) -> str:
    password_bytes = password.encode("utf-8")[:72]
    return pwd_context.hash(password_bytes)


# --- OPAQUE SECRETS (tickets, backup codes, email codes) ---
def hash_secret_token(value: str) -> str:
    """
    Keyed SHA-256 of a short-lived or single-use secret, taken byte for byte.

    Deterministic so the database can look rows up by hash and flip them in a
    single conditional UPDATE/DELETE.
    """
    return hmac.new(settings.SECRET_KEY.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()


def normalize_code(value: str) -> str:
    """Typed codes (backup and email) ignore surrounding blanks and letter case."""
    return value.strip().lower()


def generate_ticket_token() -> str:
    return secrets.token_urlsafe(32)


def generate_numeric_code(length: int) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


# --- SESSION TOKENS (JWT) ---
def create_access_token(user: UserModel, mfa_passed: bool = False) -> str:
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    mfa_type = user.mfa_type.value if isinstance(user.mfa_type, MFAType) else (user.mfa_type or "none")
    to_encode: Dict[str, Any] = {
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": now,
        "nbf": now,
        "exp": expire,
        "sub": str(user.id),
        "token_type": "access",
        "email": user.email,
        "mfa_type": mfa_type,
        "amr": ["pwd", "mfa"] if user.mfa_enabled and mfa_passed else ["pwd"],
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Dict | None:
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options={"verify_iss": True, "verify_aud": True},
        )
        if payload.get("token_type") != "access":
            return None
        return payload
    except JWTError as e:
        logger.warning(f"Failed to decode access token: {e}")
        return None


# --- TOTP ---
def generate_otp_secret() -> str:
    """Fresh base32 shared secret for an authenticator app."""
    return pyotp.random_base32()


def generate_otp_uri(secret: str, email: str, issuer_name: str) -> str:
    """
    Builds the 'otpauth://' provisioning URI scanned by authenticator apps.
    """
    safe_issuer_name = issuer_name.replace(":", "")
    return pyotp.totp.TOTP(secret).provisioning_uri(name=email, issuer_name=safe_issuer_name)


def match_totp_step(secret: str, code: str, for_time: Optional[datetime] = None) -> Optional[int]:
    """
    Returns the 30-second time step ``code`` belongs to, or ``None``.

    One step of clock skew is accepted on either side of ``for_time``. Every
    candidate is compared so the running time does not depend on which step
    matched.
    """
    if not secret or not code:
        return None
    candidate = code.strip().replace(" ", "")
    if not candidate.isdigit():
        return None
    totp = pyotp.TOTP(secret)
    when = for_time or datetime.now(timezone.utc)
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    current_step = totp.timecode(when)
    matched: Optional[int] = None
    for step in (current_step - 1, current_step, current_step + 1):
        if pyotp.utils.strings_equal(candidate, totp.generate_otp(step)):
            matched = step
    return matched


def generate_qr_code_base64(otp_uri: str) -> str:
    """Renders the provisioning URI as a PNG data URI."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(otp_uri)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffered = io.BytesIO()
    img.save(buffered, format="PNG")
    img_str = base64.b64encode(buffered.getvalue()).decode("utf-8")
    return f"data:image/png;base64,{img_str}"
