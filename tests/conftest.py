"""
PyTest configuration and shared fixtures for the ActGuard test suite.

Every service is wired against a frozen clock and an in-memory store so
lockout windows, expiry and time-of-day scoring are deterministic.
"""
import os

os.environ.setdefault("ACTGUARD_ENVIRONMENT", "test")
os.environ.setdefault("ACTGUARD_LOG_TO_FILE", "false")

from datetime import datetime, timezone
from typing import Callable

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from actguard.core.clock import FrozenClock
from actguard.core.encryption import SecretCipher
from actguard.database.memory import InMemorySecurityStore
from actguard.database.sql import SqlAlchemySecurityStore
from actguard.security.audit import AuditTrail
from actguard.security.authentication import AccessGuard
from actguard.security.mfa_system import RecoveryCodeVault
from actguard.security.models import Account, SecurityPolicy, new_id
from actguard.security.passwords import CredentialPolicy
from actguard.security.sessions import SessionRegistry


STRONG_PASSWORD = "Tr1cky$Horse9"
FIXED_KEY = bytes(range(32))


@pytest.fixture
def clock() -> FrozenClock:
    """Monday 2024-01-15 12:00 UTC, well inside normal hours."""
    return FrozenClock(datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc), local_timezone="UTC")


@pytest.fixture
def policy() -> SecurityPolicy:
    return SecurityPolicy()


@pytest.fixture
def store(policy) -> InMemorySecurityStore:
    store = InMemorySecurityStore()
    store.create_security_policy(policy)
    return store


@pytest.fixture
def sql_store(policy) -> SqlAlchemySecurityStore:
    """SQLAlchemy store on a private in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    store = SqlAlchemySecurityStore(engine=engine)
    store.create_all()
    store.create_security_policy(policy)
    return store


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher(FIXED_KEY)


@pytest.fixture
def audit(store, clock) -> AuditTrail:
    return AuditTrail(store, clock)


@pytest.fixture
def credentials(store, cipher, audit, clock) -> CredentialPolicy:
    # Low bcrypt cost keeps the suite fast
    return CredentialPolicy(store, cipher, audit, clock, rounds=4)


@pytest.fixture
def mfa(store, cipher, audit, clock) -> RecoveryCodeVault:
    return RecoveryCodeVault(store, cipher, audit, clock, issuer="ActGuard Test", backup_code_count=10)


@pytest.fixture
def sessions(store, audit, clock) -> SessionRegistry:
    return SessionRegistry(store, audit, clock)


@pytest.fixture
def guard(store, cipher, clock, audit, credentials, mfa, sessions) -> AccessGuard:
    return AccessGuard(
        store,
        cipher=cipher,
        clock=clock,
        audit=audit,
        credentials=credentials,
        mfa=mfa,
        sessions=sessions,
    )


@pytest.fixture
def make_account(store, credentials, clock) -> Callable[..., Account]:
    """Factory seeding an account whose password is STRONG_PASSWORD unless told otherwise."""

    def _make(email: str = "alice@example.com", password: str = STRONG_PASSWORD, **kwargs) -> Account:
        return store.create_account(Account(
            id=kwargs.pop("id", new_id()),
            email=email,
            password_hash=credentials.hash(password),
            updated_at=kwargs.pop("updated_at", clock.now()),
            created_at=clock.now(),
            **kwargs,
        ))

    return _make


@pytest.fixture
def alice(make_account) -> Account:
    return make_account()
