import statistics
import time
from datetime import timedelta

import pytest
from sqlmodel import Session, select

from renoveasy_auth.application.ports.user_repo import UserType
from renoveasy_auth.application.services.auth_service import RequestContext
from renoveasy_auth.container import build_container
from renoveasy_auth.db.models import AuthAuditLog, OtpFallback
from renoveasy_auth.exceptions import AuthError, ErrorCode

from conftest import make_settings

RAW_PHONE = "13812345678"
E164 = "+8613812345678"


def _error(fn, *args, **kwargs):
    with pytest.raises(AuthError) as exc:
        fn(*args, **kwargs)
    return exc.value


def _wrong(sms, phone=E164):
    return "000000" if sms.last_code(phone) != "000000" else "111111"


def test_happy_path_new_user(container, sms):
    service = container.auth_service
    sent = service.send_code(RAW_PHONE, "86")
    assert sent.resend_after_s == 60
    assert sent.phone_masked == "+*********5678"

    login = service.verify_code(RAW_PHONE, "86", sms.last_code(E164))
    assert login.is_new_user
    assert login.requires_type_selection
    assert login.user_type is None
    assert login.tokens.access_token and login.tokens.refresh_token

    assert service.select_user_type(login.user_id, "worker") == UserType.WORKER
    assert _error(service.select_user_type, login.user_id, "customer").code == ErrorCode.USER_TYPE_ALREADY_SELECTED

    pair = service.refresh(login.tokens.refresh_token)
    assert container.tokens.verify_access(pair.access_token).user_type == "worker"
    # presenting the rotated token again is treated as theft of the family
    assert _error(service.refresh, login.tokens.refresh_token).code == ErrorCode.REFRESH_REUSE_DETECTED


def test_returning_user(container, sms):
    service = container.auth_service
    service.send_code(RAW_PHONE, "86")
    first = service.verify_code(RAW_PHONE, "86", sms.last_code(E164))
    service.select_user_type(first.user_id, "customer")

    service.send_code("+86 138 1234 5678", "+86")
    again = service.verify_code(RAW_PHONE, "86", sms.last_code(E164))
    assert again.user_id == first.user_id
    assert not again.is_new_user
    assert not again.requires_type_selection
    assert again.user_type == "customer"


def test_wrong_code_then_lock(container, sms, clock):
    service = container.auth_service
    service.send_code(RAW_PHONE, "86")
    wrong = _wrong(sms)
    remaining = []
    for _ in range(5):
        err = _error(service.verify_code, RAW_PHONE, "86", wrong)
        assert err.code == ErrorCode.CODE_MISMATCH
        remaining.append(err.details["remaining_attempts"])
    assert remaining == [4, 3, 2, 1, 0]

    assert _error(service.verify_code, RAW_PHONE, "86", wrong).code == ErrorCode.TOO_MANY_ATTEMPTS
    err = _error(service.send_code, RAW_PHONE, "86")
    assert err.code == ErrorCode.ACCOUNT_LOCKED
    assert err.details["unlock_at"] == clock() + timedelta(minutes=15)

    clock.advance(15 * 60 + 1)
    service.send_code(RAW_PHONE, "86")
    assert service.verify_code(RAW_PHONE, "86", sms.last_code(E164)).user_id


def test_rate_limit(container):
    service = container.auth_service
    for _ in range(5):
        service.send_code(RAW_PHONE, "86")
    err = _error(service.send_code, RAW_PHONE, "86")
    assert err.code == ErrorCode.RATE_LIMIT_EXCEEDED
    assert 0 < err.details["retry_after_s"] <= 3600


def test_rate_limit_window_boundary(container, clock):
    service = container.auth_service
    for _ in range(5):
        service.send_code(RAW_PHONE, "86")
    clock.advance(3600 + 1)
    service.send_code(RAW_PHONE, "86")


def test_expiry(container, sms, clock):
    service = container.auth_service
    service.send_code(RAW_PHONE, "86")
    clock.advance(11 * 60)
    assert _error(service.verify_code, RAW_PHONE, "86", sms.last_code(E164)).code == ErrorCode.CODE_EXPIRED


def test_refresh_reuse_attack(container, sms):
    service = container.auth_service
    service.send_code(RAW_PHONE, "86")
    r0 = service.verify_code(RAW_PHONE, "86", sms.last_code(E164)).tokens.refresh_token
    r1 = service.refresh(r0).refresh_token
    assert _error(service.refresh, r0).code == ErrorCode.REFRESH_REUSE_DETECTED
    assert _error(service.refresh, r1).code == ErrorCode.TOKEN_REVOKED


def test_logout_completeness(container, sms):
    service = container.auth_service
    service.send_code(RAW_PHONE, "86")
    login = service.verify_code(RAW_PHONE, "86", sms.last_code(E164))
    rotated = service.refresh(login.tokens.refresh_token)

    assert service.logout(login.user_id) == 1
    for access in (login.tokens.access_token, rotated.access_token):
        assert _error(container.tokens.verify_access, access).code == ErrorCode.TOKEN_REVOKED
    for refresh in (login.tokens.refresh_token, rotated.refresh_token):
        assert _error(service.refresh, refresh).code == ErrorCode.TOKEN_REVOKED


def test_invalid_inputs(container):
    service = container.auth_service
    assert _error(service.send_code, "12345", "86").code == ErrorCode.INVALID_PHONE_FORMAT
    assert _error(service.send_code, RAW_PHONE, "abc").code == ErrorCode.INVALID_COUNTRY_CODE
    assert _error(service.verify_code, RAW_PHONE, "86", "12").code == ErrorCode.INVALID_CODE_LENGTH
    assert _error(service.select_user_type, "nobody", "admin").code == ErrorCode.INVALID_USER_TYPE
    assert _error(service.select_user_type, "nobody", "unset").code == ErrorCode.INVALID_USER_TYPE
    assert _error(service.select_user_type, "nobody", "worker").code == ErrorCode.USER_NOT_FOUND


def test_registration_can_be_closed(engine, keys, clock, sms):
    container = build_container(make_settings(ALLOW_REGISTRATION=False), engine=engine, sms=sms, keys=keys, clock=clock)
    service = container.auth_service
    service.send_code(RAW_PHONE, "86")
    assert _error(service.verify_code, RAW_PHONE, "86", sms.last_code(E164)).code == ErrorCode.USER_NOT_FOUND


def test_per_ip_send_limit(engine, keys, clock, sms):
    container = build_container(make_settings(IP_RATE_LIMIT_MAX_REQUESTS=2), engine=engine, sms=sms, keys=keys,
                                clock=clock)
    ctx = RequestContext(ip="5.5.5.5")
    service = container.auth_service
    service.send_code("13800000001", "86", ctx)
    service.send_code("13800000002", "86", ctx)
    assert _error(service.send_code, "13800000003", "86", ctx).code == ErrorCode.RATE_LIMIT_EXCEEDED
    service.send_code("13800000003", "86", RequestContext(ip="6.6.6.6"))


def test_stuffing_requires_captcha(container):
    service = container.auth_service
    ctx = RequestContext(ip="9.9.9.9")
    for i in range(6):
        assert _error(service.verify_code, f"1380000000{i}", "86", "123456", ctx).code == ErrorCode.CODE_NOT_FOUND
    err = _error(service.verify_code, "13800000009", "86", "123456", ctx)
    assert err.code == ErrorCode.SUSPECTED_ABUSE
    assert err.details["action"] == "challenge_captcha"

    solved = RequestContext(ip="9.9.9.9", captcha_verified=True)
    assert _error(service.verify_code, "13800000009", "86", "123456", solved).code == ErrorCode.CODE_NOT_FOUND


def test_enumeration_is_challenged(engine, keys, clock, sms):
    container = build_container(make_settings(IP_RATE_LIMIT_MAX_REQUESTS=100), engine=engine, sms=sms, keys=keys,
                                clock=clock)
    service = container.auth_service
    ctx = RequestContext(ip="7.7.7.7")
    for i in range(10):
        service.send_code(f"138000000{i:02d}", "86", ctx)
    assert _error(service.send_code, "13800000099", "86", ctx).code == ErrorCode.SUSPECTED_ABUSE


def test_every_operation_is_audited_without_raw_phone(container, engine, sms):
    service = container.auth_service
    ctx = RequestContext(ip="1.2.3.4", user_agent="pytest")
    service.send_code(RAW_PHONE, "86", ctx)
    _error(service.verify_code, RAW_PHONE, "86", _wrong(sms), ctx)
    login = service.verify_code(RAW_PHONE, "86", sms.last_code(E164), ctx)
    service.select_user_type(login.user_id, "worker", ctx)
    service.refresh(login.tokens.refresh_token, ctx)
    service.logout(login.user_id, ctx)

    with Session(engine) as session:
        rows = session.exec(select(AuthAuditLog).order_by(AuthAuditLog.id)).all()
    assert [(r.event, r.success) for r in rows] == [
        ("send_code", True),
        ("verify_code", False),
        ("verify_code", True),
        ("select_type", True),
        ("refresh", True),
        ("logout", True),
    ]
    assert rows[1].details and "CODE_MISMATCH" in rows[1].details
    assert all(r.ip_address == "1.2.3.4" for r in rows)
    for row in rows:
        assert RAW_PHONE not in (row.phone_masked or "")
        assert RAW_PHONE not in (row.details or "")


def test_redis_outage_after_send(engine, keys, clock, sms):
    fakeredis = pytest.importorskip("fakeredis")
    pytest.importorskip("lupa")
    server = fakeredis.FakeServer()
    container = build_container(make_settings(), engine=engine, redis_client=fakeredis.FakeRedis(server=server),
                                sms=sms, keys=keys, clock=clock)
    service = container.auth_service
    service.send_code(RAW_PHONE, "86")
    with Session(engine) as session:
        # mirror policy: the send also wrote the database row
        assert session.get(OtpFallback, E164) is not None

    server.connected = False
    login = service.verify_code(RAW_PHONE, "86", sms.last_code(E164))
    assert login.is_new_user
    assert container.otp_store.served["database"] >= 1

    # new codes can still be requested while the circuit is open
    service.send_code(RAW_PHONE, "86")
    assert service.verify_code(RAW_PHONE, "86", sms.last_code(E164)).user_id == login.user_id


def _timed(fn):
    started = time.monotonic()
    try:
        fn()
    except AuthError:
        pass
    return (time.monotonic() - started) * 1000


def test_verify_latency_is_flat(engine, keys, clock, sms):
    container = build_container(make_settings(DELAY_BASE_MS=150, DELAY_VARIANCE_MS=0), engine=engine, sms=sms,
                                keys=keys, clock=clock)
    service = container.auth_service
    samples = {"success": [], "mismatch": [], "not_found": []}
    for i in range(3):
        phone = f"1390000000{i}"
        e164 = f"+86{phone}"
        service.send_code(phone, "86")
        samples["mismatch"].append(_timed(lambda: service.verify_code(phone, "86", _wrong(sms, e164))))
        samples["success"].append(_timed(lambda: service.verify_code(phone, "86", sms.last_code(e164))))
        samples["not_found"].append(_timed(lambda: service.verify_code(f"1370000000{i}", "86", "123456")))
    means = [statistics.mean(v) for v in samples.values()]
    assert max(means) - min(means) < 20
    assert min(means) >= 149


def test_locked_phone_is_answered_immediately(engine, keys, clock, sms):
    container = build_container(make_settings(DELAY_BASE_MS=300, DELAY_VARIANCE_MS=0), engine=engine, sms=sms,
                                keys=keys, clock=clock)
    service = container.auth_service
    for _ in range(5):
        service.account_lock.record_failure(E164, "code_mismatch")
    assert _timed(lambda: service.verify_code(RAW_PHONE, "86", "123456")) < 150
    assert _error(service.verify_code, RAW_PHONE, "86", "123456").code == ErrorCode.ACCOUNT_LOCKED
