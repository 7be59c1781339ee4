# tests/test_09_credential_store.py
import json
import time

import pytest
from jose import jwt

from payroll_auth.client.credential_store import SESSION_KEY, TICKET_KEY, CredentialStore, token_expiry
from payroll_auth.client.storage import FileStore, MemoryStore
from payroll_auth.models.user import MFAType
from payroll_auth.schemas.user import AccountSnapshot

START = 1_700_000_000.0
SNAPSHOT = AccountSnapshot(id=7, email="admin@example.com", full_name="Payroll Admin", role="admin")


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_token(exp: float) -> str:
    return jwt.encode({"sub": "7", "exp": int(exp)}, "client-test-key", algorithm="HS256")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> CredentialStore:
    return CredentialStore(MemoryStore(clock=clock), ticket_ttl_seconds=600, clock=clock)


def test_save_then_load_round_trip(store: CredentialStore):
    token = make_token(START + 3600)
    store.save(token, SNAPSHOT)

    session = store.load()
    assert session is not None
    assert session.token == token
    assert session.user == SNAPSHOT
    assert store.token == token


def test_load_self_invalidates_after_token_expiry(store: CredentialStore, clock: FakeClock):
    store.save(make_token(START + 60), SNAPSHOT)
    clock.advance(59)
    assert store.load() is not None

    clock.advance(2)
    assert store.load() is None
    assert store.token is None


def test_unreadable_session_is_cleared_with_any_ticket(clock: FakeClock):
    backend = MemoryStore(clock=clock)
    store = CredentialStore(backend, ticket_ttl_seconds=600, clock=clock)
    backend.set(SESSION_KEY, {"token": "garbage", "user": SNAPSHOT.model_dump(by_alias=True)})
    backend.set(TICKET_KEY, {"ticket": "stale", "mfa_type": "app"})

    assert store.load() is None
    assert backend.get(SESSION_KEY) is None
    assert backend.get(TICKET_KEY) is None


def test_save_rejects_token_without_expiry(store: CredentialStore):
    with pytest.raises(ValueError):
        store.save("not-a-jwt", SNAPSHOT)
    assert token_expiry(jwt.encode({"sub": "7"}, "k", algorithm="HS256")) is None


def test_ticket_is_kept_apart_from_session(clock: FakeClock):
    backend = MemoryStore(clock=clock)
    store = CredentialStore(backend, ticket_ttl_seconds=600, clock=clock)

    store.save_ticket("ticket-abc", MFAType.EMAIL)
    assert backend.get(SESSION_KEY) is None
    pending = store.load_ticket()
    assert pending.ticket == "ticket-abc"
    assert pending.mfa_type == MFAType.EMAIL

    # A full session ends the challenge and never carries the ticket
    store.save(make_token(START + 3600), SNAPSHOT)
    assert store.load_ticket() is None
    assert "ticket-abc" not in json.dumps(backend.get(SESSION_KEY))

    # A new challenge means a new login: the old session goes
    store.save_ticket("ticket-def", MFAType.APP)
    assert store.load() is None
    assert store.load_ticket().ticket == "ticket-def"


def test_ticket_expires_on_its_own(store: CredentialStore, clock: FakeClock):
    store.save_ticket("ticket-xyz", MFAType.APP)
    clock.advance(599)
    assert store.load_ticket() is not None
    clock.advance(2)
    assert store.load_ticket() is None


def test_clear_removes_session_and_ticket(store: CredentialStore):
    store.save(make_token(START + 3600), SNAPSHOT)
    store.save_ticket("ticket-1", MFAType.APP)
    store.clear()
    assert store.load() is None
    assert store.load_ticket() is None


def test_update_user_keeps_token(store: CredentialStore):
    token = make_token(START + 3600)
    store.save(token, SNAPSHOT)
    updated = SNAPSHOT.model_copy(update={"mfa_enabled": True, "mfa_type": MFAType.APP})

    session = store.update_user(updated)
    assert session.token == token
    assert store.load().user.mfa_type == MFAType.APP


def test_update_user_without_session(store: CredentialStore):
    assert store.update_user(SNAPSHOT) is None


def test_file_store_survives_restart(tmp_path):
    path = tmp_path / "creds" / "credentials.json"
    token = make_token(time.time() + 3600)
    CredentialStore(FileStore(path)).save(token, SNAPSHOT)

    reopened = CredentialStore(FileStore(path))
    session = reopened.load()
    assert session is not None
    assert session.token == token
    assert session.user.email == SNAPSHOT.email


def test_file_store_drops_expired_entries(tmp_path):
    clock = FakeClock()
    backend = FileStore(tmp_path / "credentials.json", clock=clock)
    backend.set(TICKET_KEY, {"ticket": "t", "mfa_type": "app"}, expires_at=START + 10)
    assert backend.get(TICKET_KEY) is not None
    clock.advance(11)
    assert backend.get(TICKET_KEY) is None
    assert TICKET_KEY not in json.loads((tmp_path / "credentials.json").read_text())


def test_file_store_tolerates_corrupt_file(tmp_path):
    path = tmp_path / "credentials.json"
    path.write_text("{not json")
    backend = FileStore(path)
    assert backend.get(SESSION_KEY) is None
    backend.set("k", "v")
    assert backend.get("k") == "v"


def test_memory_store_expiry(clock: FakeClock):
    backend = MemoryStore(clock=clock)
    backend.set("a", 1, expires_at=START + 5)
    backend.set("b", 2)
    clock.advance(5)
    assert backend.get("a") is None
    assert backend.get("b") == 2
    backend.delete("b")
    backend.delete("missing")
    assert backend.get("b") is None
