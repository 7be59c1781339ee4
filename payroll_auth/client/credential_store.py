# payroll_auth/client/credential_store.py
"""
Client-side holder of the session token, the account snapshot and the
short-lived MFA ticket.

The ticket lives under its own key with its own expiry and is never written
into the session entry. Saving one drops the other: a session ends the
challenge, and a new challenge means a new login. A session whose token has
expired (or cannot be read) is cleared the moment anyone asks for it.
"""
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from jose import JWTError, jwt  # type: ignore
from loguru import logger

from payroll_auth.client.config import client_settings
from payroll_auth.client.storage import Clock, KeyValueStore
from payroll_auth.models.user import MFAType
from payroll_auth.schemas.user import AccountSnapshot

SESSION_KEY = "session"
TICKET_KEY = "mfa_ticket"


@dataclass
class Session:
    token: str
    user: AccountSnapshot


@dataclass
class PendingTicket:
    ticket: str
    mfa_type: MFAType


def token_expiry(token: str) -> Optional[float]:
    """Reads ``exp`` without checking the signature; the server does that."""
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return None
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        return None
    return float(exp)


class CredentialStore:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        ticket_ttl_seconds: Optional[int] = None,
        clock: Clock = time.time,
    ):
        self._store = store
        self._ticket_ttl = ticket_ttl_seconds or client_settings.TICKET_CACHE_SECONDS
        self._clock = clock

    # --- Session ---
    def save(self, token: str, user: AccountSnapshot) -> Session:
        expires_at = token_expiry(token)
        if expires_at is None:
            raise ValueError("Session token carries no readable expiry.")
        self._store.set(
            SESSION_KEY,
            {"token": token, "user": user.model_dump(mode="json", by_alias=True)},
            expires_at=expires_at,
        )
        self.clear_ticket()
        logger.info(f"Session stored for {user.email}")
        return Session(token=token, user=user)

    def load(self) -> Optional[Session]:
        raw: Optional[Dict[str, Any]] = self._store.get(SESSION_KEY)
        if not raw:
            return None
        token = raw.get("token")
        expires_at = token_expiry(token) if isinstance(token, str) else None
        if expires_at is None or expires_at <= self._clock():
            logger.info("Stored session expired or unreadable, clearing credentials.")
            self.clear()
            return None
        try:
            user = AccountSnapshot.model_validate(raw.get("user") or {})
        except ValueError:
            self.clear()
            return None
        return Session(token=token, user=user)

    def update_user(self, user: AccountSnapshot) -> Optional[Session]:
        """Replaces the snapshot kept next to a still-valid token."""
        session = self.load()
        if session is None:
            return None
        return self.save(session.token, user)

    @property
    def token(self) -> Optional[str]:
        session = self.load()
        return session.token if session else None

    def clear(self) -> None:
        self._store.delete(SESSION_KEY)
        self.clear_ticket()

    # --- MFA ticket ---
    def save_ticket(self, ticket: str, mfa_type: MFAType) -> PendingTicket:
        self._store.delete(SESSION_KEY)
        self._store.set(
            TICKET_KEY,
            {"ticket": ticket, "mfa_type": MFAType(mfa_type).value},
            expires_at=self._clock() + self._ticket_ttl,
        )
        return PendingTicket(ticket=ticket, mfa_type=MFAType(mfa_type))

    def load_ticket(self) -> Optional[PendingTicket]:
        raw = self._store.get(TICKET_KEY)
        if not raw:
            return None
        return PendingTicket(ticket=raw["ticket"], mfa_type=MFAType(raw["mfa_type"]))

    def clear_ticket(self) -> None:
        self._store.delete(TICKET_KEY)
