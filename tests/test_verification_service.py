import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
import redis
from requests.exceptions import ReadTimeout

from renoveasy_auth.application.services.account_lock import AccountLock
from renoveasy_auth.application.services.attack_detector import AttackDetector
from renoveasy_auth.application.services.verification_service import VerificationService
from renoveasy_auth.core.otp_encryption import OtpEncryption
from renoveasy_auth.core.phone import normalize
from renoveasy_auth.exceptions import AuthError, ErrorCode
from renoveasy_auth.infrastructure.cache.memory_cache import InMemoryCache
from renoveasy_auth.infrastructure.cache.memory_otp_store import InMemoryOtpStore
from renoveasy_auth.infrastructure.rate_limit.memory_rate_limiter import InMemoryRateLimiter
from renoveasy_auth.infrastructure.sms.mock_provider import MockSmsProvider
from renoveasy_auth.infrastructure.sms.twilio_provider import TwilioSmsProvider

PHONE = normalize("13812345678", "86")


def _service(keys, clock, sms=None, store=None, **kwargs):
    cache = InMemoryCache(clock=clock)
    return VerificationService(
        store=store or InMemoryOtpStore(clock=clock),
        encryption=OtpEncryption(keys),
        rate_limiter=InMemoryRateLimiter(5, 3600, clock=clock),
        sms=sms or MockSmsProvider(),
        account_lock=AccountLock(cache, clock=clock),
        detector=AttackDetector(clock=clock),
        cache=cache,
        clock=clock,
        **kwargs
    )


def _error(fn, *args, **kwargs):
    with pytest.raises(AuthError) as exc:
        fn(*args, **kwargs)
    return exc.value


def test_send_code_stores_only_ciphertext(keys, clock, sms):
    svc = _service(keys, clock, sms=sms)
    result = svc.send_code(PHONE)
    code = sms.last_code(PHONE.e164)
    assert len(code) == 6 and code.isdigit()
    assert result.phone_masked == PHONE.masked
    assert result.expires_at == clock() + timedelta(minutes=10)
    assert result.resend_after_s == 60
    assert result.next_resend_at == clock() + timedelta(seconds=60)

    record = svc.store.get(PHONE.e164)
    assert code.encode() not in record.ciphertext
    assert record.attempt_count == 0


def test_correct_code_verifies_once(keys, clock, sms):
    svc = _service(keys, clock, sms=sms)
    svc.send_code(PHONE)
    result = svc.verify_code(PHONE, sms.last_code(PHONE.e164))
    assert result.success
    assert _error(svc.verify_code, PHONE, sms.last_code(PHONE.e164)).code == ErrorCode.CODE_NOT_FOUND


def test_only_latest_code_verifies(keys, clock, sms):
    svc = _service(keys, clock, sms=sms)
    svc.send_code(PHONE)
    first = sms.last_code(PHONE.e164)
    svc.send_code(PHONE)
    second = sms.last_code(PHONE.e164)
    if first != second:
        assert not svc.verify_code(PHONE, first).success
    assert svc.verify_code(PHONE, second).success


def test_mismatch_counts_down_then_exhausts(keys, clock, sms):
    svc = _service(keys, clock, sms=sms)
    svc.send_code(PHONE)
    wrong = "000000" if sms.last_code(PHONE.e164) != "000000" else "111111"
    remaining = [svc.verify_code(PHONE, wrong).remaining_attempts for _ in range(5)]
    assert remaining == [4, 3, 2, 1, 0]

    err = _error(svc.verify_code, PHONE, sms.last_code(PHONE.e164))
    assert err.code == ErrorCode.TOO_MANY_ATTEMPTS
    err = _error(svc.verify_code, PHONE, sms.last_code(PHONE.e164))
    assert err.code == ErrorCode.ACCOUNT_LOCKED
    assert err.details["unlock_at"] == clock() + timedelta(minutes=15)


def test_success_resets_failure_counter(keys, clock, sms):
    svc = _service(keys, clock, sms=sms)
    svc.send_code(PHONE)
    wrong = "000000" if sms.last_code(PHONE.e164) != "000000" else "111111"
    for _ in range(3):
        svc.verify_code(PHONE, wrong)
    assert svc.verify_code(PHONE, sms.last_code(PHONE.e164)).success
    assert svc.account_lock.check(PHONE.e164).failures == 0


def test_expired_code(keys, clock, sms):
    svc = _service(keys, clock, sms=sms)
    svc.send_code(PHONE)
    clock.advance(11 * 60)
    assert _error(svc.verify_code, PHONE, sms.last_code(PHONE.e164)).code == ErrorCode.CODE_EXPIRED
    # the expired record is dropped on first sight
    assert _error(svc.verify_code, PHONE, sms.last_code(PHONE.e164)).code == ErrorCode.CODE_NOT_FOUND


@pytest.mark.parametrize("code", ["12345", "1234567", "12a456", "", "١٢٣٤٥٦"])
def test_malformed_codes(keys, clock, code):
    svc = _service(keys, clock)
    assert _error(svc.verify_code, PHONE, code).code == ErrorCode.INVALID_CODE_LENGTH


def test_rate_limit_on_sixth_send(keys, clock):
    svc = _service(keys, clock)
    for _ in range(5):
        svc.send_code(PHONE)
    err = _error(svc.send_code, PHONE)
    assert err.code == ErrorCode.RATE_LIMIT_EXCEEDED
    assert 0 < err.details["retry_after_s"] <= 3600


def test_sms_failure_rolls_back(keys, clock):
    svc = _service(keys, clock, sms=MockSmsProvider(fail=True))
    assert _error(svc.send_code, PHONE).code == ErrorCode.SMS_SEND_FAILED
    assert svc.store.get(PHONE.e164) is None
    assert svc.rate_limiter.check(PHONE.e164).count == 0


def test_enforced_resend_cooldown(keys, clock):
    svc = _service(keys, clock, enforce_resend_cooldown=True)
    svc.send_code(PHONE)
    err = _error(svc.send_code, PHONE)
    assert err.code == ErrorCode.RATE_LIMIT_EXCEEDED
    assert err.details["retry_after_s"] == 60
    clock.advance(60)
    svc.send_code(PHONE)


def test_undecryptable_record_is_internal_error(keys, clock, sms):
    svc = _service(keys, clock, sms=sms, expiration_minutes=60)
    svc.send_code(PHONE)
    keys.rotate_otp()
    clock.advance(901)
    keys.rotate_otp()
    assert _error(svc.verify_code, PHONE, sms.last_code(PHONE.e164)).code == ErrorCode.INTERNAL


def test_store_outage_is_storage_unavailable(keys, clock):
    class DownStore(InMemoryOtpStore):
        def get(self, phone):
            raise redis.exceptions.ConnectionError("down")

        def store(self, otp):
            raise redis.exceptions.ConnectionError("down")

    svc = _service(keys, clock, store=DownStore(clock=clock))
    assert _error(svc.send_code, PHONE).code == ErrorCode.STORAGE_UNAVAILABLE
    # the rate limit slot is handed back
    assert svc.rate_limiter.check(PHONE.e164).count == 0
    assert _error(svc.verify_code, PHONE, "123456").code == ErrorCode.STORAGE_UNAVAILABLE


def test_code_comparison_is_constant_time(keys, clock, sms, monkeypatch):
    from renoveasy_auth.application.services import verification_service

    calls = []
    real = verification_service.hmac.compare_digest

    def spy(a, b):
        calls.append((a, b))
        return real(a, b)

    monkeypatch.setattr(verification_service.hmac, "compare_digest", spy)
    svc = _service(keys, clock, sms=sms)
    svc.send_code(PHONE)
    svc.verify_code(PHONE, "000000" if sms.last_code(PHONE.e164) != "000000" else "111111")
    assert len(calls) == 1


class _BarrierStore(InMemoryOtpStore):
    """Holds every read until `parties` callers have read the same record."""

    def __init__(self, parties, clock):
        super().__init__(clock=clock)
        self.barrier = threading.Barrier(parties, timeout=5)

    def get(self, phone):
        record = super().get(phone)
        self.barrier.wait()
        return record


def _concurrently(n, fn):
    outcomes = []

    def call():
        try:
            return fn()
        except AuthError as e:
            return e.code

    with ThreadPoolExecutor(max_workers=n) as pool:
        futures = [pool.submit(call) for _ in range(n)]
        for future in futures:
            outcomes.append(future.result())
    return outcomes


def test_concurrent_wrong_guesses_respect_max_attempts(keys, clock, sms, monkeypatch):
    from renoveasy_auth.application.services import verification_service

    compared = []
    real = verification_service.hmac.compare_digest

    def counting(a, b):
        compared.append(a)
        return real(a, b)

    monkeypatch.setattr(verification_service.hmac, "compare_digest", counting)
    store = _BarrierStore(20, clock)
    svc = _service(keys, clock, sms=sms, store=store)
    svc.send_code(PHONE)
    wrong = "000000" if sms.last_code(PHONE.e164) != "000000" else "111111"

    outcomes = _concurrently(20, lambda: svc.verify_code(PHONE, wrong))

    assert len(compared) == 5
    assert outcomes.count(ErrorCode.TOO_MANY_ATTEMPTS) == 15
    assert sorted(o.remaining_attempts for o in outcomes if not isinstance(o, ErrorCode)) == [0, 1, 2, 3, 4]


def test_code_is_accepted_only_once_under_concurrency(keys, clock, sms):
    store = _BarrierStore(2, clock)
    svc = _service(keys, clock, sms=sms, store=store)
    svc.send_code(PHONE)
    code = sms.last_code(PHONE.e164)

    outcomes = _concurrently(2, lambda: svc.verify_code(PHONE, code))

    assert sum(1 for o in outcomes if not isinstance(o, ErrorCode) and o.success) == 1
    assert ErrorCode.CODE_NOT_FOUND in outcomes


def test_replaced_code_cannot_be_consumed(keys, clock, sms):
    store = InMemoryOtpStore(clock=clock)
    svc = _service(keys, clock, sms=sms, store=store)
    svc.send_code(PHONE)
    old = store.get(PHONE.e164)
    svc.send_code(PHONE)
    assert not store.consume(PHONE.e164, old.nonce)
    assert store.get(PHONE.e164) is not None


def test_unexpected_sms_error_still_rolls_back(keys, clock):
    class BrokenTransport(MockSmsProvider):
        def send_verification_code(self, phone, code):
            raise TimeoutError("read timed out")

    svc = _service(keys, clock, sms=BrokenTransport())
    with pytest.raises(TimeoutError):
        svc.send_code(PHONE)
    assert svc.store.get(PHONE.e164) is None
    assert svc.rate_limiter.check(PHONE.e164).count == 0


def test_sms_timeout_is_reported_as_send_failure(keys, clock):
    class TimingOutMessages:
        def create(self, **kwargs):
            raise ReadTimeout("read timed out")

    client = type("Client", (), {"messages": TimingOutMessages()})()
    svc = _service(keys, clock, sms=TwilioSmsProvider("sid", "token", "+15550000000", client=client))
    assert _error(svc.send_code, PHONE).code == ErrorCode.SMS_SEND_FAILED
    assert svc.store.get(PHONE.e164) is None
    assert svc.rate_limiter.check(PHONE.e164).count == 0
