import random
import threading
import time

from renoveasy_auth.application.services.delay_responder import DelayResponder


def test_target_stays_within_band():
    responder = DelayResponder(base_ms=100, variance_ms=50, rng=random.Random(7))
    for _ in range(100):
        assert 100 <= responder.target_ms() <= 150
    assert 1100 <= responder.target_ms(extra_ms=1000) <= 1150


def test_pad_skips_when_already_slow():
    responder = DelayResponder(base_ms=10, variance_ms=0)
    started = time.monotonic() - 1.0
    assert responder.pad(started) == 0.0


def test_pad_sleeps_up_to_target():
    responder = DelayResponder(base_ms=40, variance_ms=0)
    started = time.monotonic()
    responder.pad(started)
    assert time.monotonic() - started >= 0.039


def test_cancel_ends_wait_early():
    responder = DelayResponder(base_ms=5000, variance_ms=0)
    cancel = threading.Event()
    cancel.set()
    started = time.monotonic()
    responder.pad(started, cancel=cancel)
    assert time.monotonic() - started < 1.0
