import pytest

from renoveasy_auth.container import build_audit_logger, build_container, build_sms_provider
from renoveasy_auth.infrastructure.audit.noop_logger import NoopAuditLogger
from renoveasy_auth.infrastructure.audit.std_logger import StdAuditLogger
from renoveasy_auth.infrastructure.cache.memory_otp_store import InMemoryOtpStore
from renoveasy_auth.infrastructure.sms.mock_provider import MockSmsProvider

from conftest import make_settings


def test_without_redis_everything_is_in_process(container):
    assert container.redis is None
    assert isinstance(container.otp_store, InMemoryOtpStore)
    assert container.cleanup.otp_purger is None


def test_with_redis_the_store_falls_back_to_the_database(engine, keys, clock, sms):
    fakeredis = pytest.importorskip("fakeredis")
    container = build_container(make_settings(OTP_FALLBACK_POLICY="failover"), engine=engine,
                                redis_client=fakeredis.FakeRedis(), sms=sms, keys=keys, clock=clock)
    assert container.otp_store.policy == "failover"
    assert container.otp_store.secondary.backend == "database"
    assert container.cleanup.otp_purger is container.otp_store.secondary


def test_sms_provider_selection():
    settings = make_settings()
    assert isinstance(build_sms_provider("mock", settings), MockSmsProvider)
    with pytest.raises(ValueError):
        build_sms_provider("carrier-pigeon", settings)


def test_noop_audit_is_refused_in_production(engine):
    assert isinstance(build_audit_logger(make_settings(AUDIT_BACKEND="noop"), engine), NoopAuditLogger)
    assert isinstance(build_audit_logger(make_settings(AUDIT_BACKEND="log"), engine), StdAuditLogger)
    with pytest.raises(RuntimeError):
        build_audit_logger(make_settings(AUDIT_BACKEND="noop", ENV="production"), engine)
