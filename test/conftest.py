"""Pytest configuration and fixtures for the door access tests."""

import os
import tempfile
import threading
from pathlib import Path
from types import SimpleNamespace

import pytest

_TMP_DIR = Path(tempfile.mkdtemp(prefix="door_access_test_"))


def pytest_configure(config):
    """Point configuration at a throwaway SQLite file before config is imported."""
    os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR / 'test.db'}"
    os.environ["UPLOADS_DIR"] = str(_TMP_DIR / "uploads")
    os.environ["LOGS_DIR"] = str(_TMP_DIR / "logs")
    os.environ["ENVIRONMENT"] = "test"
    os.environ["USE_S3"] = "false"
    os.environ["ACCESS_CODE_HASH_ROUNDS"] = "4"
    os.environ["RATE_LIMIT_PER_MINUTE"] = "100000"
    os.environ["RATE_LIMIT_PER_HOUR"] = "100000"
    os.environ["SECRET_KEY"] = "test-secret-key"
    os.environ["ENCRYPTION_KEY"] = "test-encryption-passphrase"


class FakeRelay:
    """
    In-memory stand-in for TasmotaClient. Records calls and flags any two
    toggles on the same address that overlap in time.
    """

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.state = {}
        self.calls = []
        self.overlaps = 0
        self._active = set()
        self._guard = threading.Lock()

    def toggle(self, address, key=None):
        from core.errors import ActuatorError

        with self._guard:
            if address in self._active:
                self.overlaps += 1
            self._active.add(address)
        try:
            if self.fail:
                raise ActuatorError(address, "connection refused")
            current = self.state.get(address, False)
            if self.delay:
                threading.Event().wait(self.delay)
            self.state[address] = not current
            self.calls.append((address, key))
            return {"POWER": "ON" if self.state[address] else "OFF"}
        finally:
            with self._guard:
                self._active.discard(address)


class Clock:
    """Settable clock for the engine."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def database():
    """Fresh schema per test."""
    import config
    from database.connection import Database

    db = Database(config.DATABASE_URL)
    db.drop_tables()
    db.create_tables()
    config.db = db
    yield db
    db.engine.dispose()


@pytest.fixture
def session(database):
    s = database.SessionLocal()
    yield s
    s.close()


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def make_engine():
    from core.door_locks import KeyedLockRegistry
    from core.face_recognizer import FaceRecognizer
    from services.credential_matcher import CredentialMatcher
    from services.verification_service import VerificationEngine

    def _make(actuator, clock=None, threshold=0.6):
        kwargs = {}
        if clock is not None:
            kwargs["clock"] = clock
        return VerificationEngine(
            matcher=CredentialMatcher(FaceRecognizer(similarity_threshold=threshold)),
            actuator=actuator,
            locks=KeyedLockRegistry(),
            **kwargs,
        )

    return _make


@pytest.fixture
def factory(session):
    """Helpers to create principals, doors and grants directly in the store."""
    import config
    from auth.security import encrypt_data, hash_access_code
    from database.models import Door, DoorGrant, User, UserRole

    counter = {"n": 0}

    def user(role=UserRole.GUEST, code="1234", created_by=None, **fields):
        counter["n"] += 1
        u = User(
            name=fields.pop("name", f"User {counter['n']}"),
            email=fields.pop("email", f"user{counter['n']}@example.com"),
            role=role,
            access_code_hash=hash_access_code(code, config.ACCESS_CODE_HASH_ROUNDS),
            created_by=created_by,
            **fields,
        )
        session.add(u)
        session.commit()
        return u

    def door(window_days=0, address=None, key=None, **fields):
        counter["n"] += 1
        d = Door(
            name=fields.pop("name", f"Door {counter['n']}"),
            actuator_address=address or f"10.0.0.{counter['n']}",
            actuator_key_encrypted=encrypt_data(key) if key else None,
            double_verification_window_days=window_days,
            **fields,
        )
        session.add(d)
        session.commit()
        return d

    def grant(u, d, granted_by=None):
        session.add(DoorGrant(user_id=u.id, door_id=d.id, granted_by=granted_by))
        session.commit()
        session.refresh(u)

    return SimpleNamespace(user=user, door=door, grant=grant)


@pytest.fixture
def client(database, relay, make_engine):
    """TestClient wired to the test database, a local image store and a fake relay."""
    from fastapi.testclient import TestClient

    import config
    from app import app
    from routers.access import get_verification_engine
    from storage.image_store import ImageStore

    engine = make_engine(relay)
    app.dependency_overrides[get_verification_engine] = lambda: engine

    # No context manager: lifespan does not run, the fixtures provide the singletons
    config.image_store = ImageStore(_TMP_DIR / "uploads")
    config.verification_engine = engine
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_header():
    from services.auth_service import AuthService

    def _header(user):
        return {"Authorization": f"Bearer {AuthService.create_token(user)}"}

    return _header
