from datetime import datetime, timedelta

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine

from renoveasy_auth.container import build_container
from renoveasy_auth.core.config import Settings
from renoveasy_auth.core.key_manager import JwtKeyPair, KeyManager, compute_kid, generate_rsa_keypair
from renoveasy_auth.database import create_db_and_tables
from renoveasy_auth.infrastructure.sms.mock_provider import MockSmsProvider


class FakeClock:
    """Settable naive-UTC clock shared by every component under test."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value

    def advance(self, seconds):
        self.value += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture(scope="session")
def rsa_pair():
    return generate_rsa_keypair()


@pytest.fixture
def keys(rsa_pair, clock):
    private_pem, public_pem = rsa_pair
    return KeyManager(
        {1: AESGCM.generate_key(bit_length=256)},
        JwtKeyPair(private_pem=private_pem, public_pem=public_pem, kid=compute_kid(public_pem)),
        retirement_seconds=900,
        clock=clock,
    )


def make_settings(**overrides):
    values = dict(
        ENV="test",
        DATABASE_URL="sqlite://",
        REDIS_URL=None,
        SMS_PROVIDER="mock",
        SMS_BACKUP_PROVIDER=None,
        AUDIT_BACKEND="sql",
        DELAY_BASE_MS=0,
        DELAY_VARIANCE_MS=0,
        ATTACK_SLOW_PENALTY_MS=0,
        CLEANUP_ENABLED=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def sms():
    return MockSmsProvider()


@pytest.fixture
def container(engine, keys, clock, sms):
    return build_container(make_settings(), engine=engine, sms=sms, keys=keys, clock=clock)
