# renoveasy_auth/application/services/attack_detector.py
"""Short-horizon classification of request streams into attack patterns.

Events are kept in memory per process for the longest configured window.
For a given event log, clock and set of thresholds the verdict is deterministic.
"""
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Deque, List, Optional, Tuple

from ...utils import utcnow


class AttackPattern(str, Enum):
    CREDENTIAL_STUFFING = "credential_stuffing"
    BRUTE_FORCE = "brute_force"
    DISTRIBUTED_BRUTE = "distributed_brute"
    ENUMERATION = "enumeration"


class RecommendedAction(str, Enum):
    ALLOW = "allow"
    SLOW = "slow"
    CHALLENGE_CAPTCHA = "challenge_captcha"
    BLOCK = "block"


PATTERN_ACTIONS = {
    AttackPattern.CREDENTIAL_STUFFING: RecommendedAction.CHALLENGE_CAPTCHA,
    AttackPattern.BRUTE_FORCE: RecommendedAction.SLOW,
    AttackPattern.DISTRIBUTED_BRUTE: RecommendedAction.BLOCK,
    AttackPattern.ENUMERATION: RecommendedAction.CHALLENGE_CAPTCHA,
}


@dataclass
class DetectorThresholds:
    stuffing_phones: int = 5
    stuffing_window: int = 600
    brute_failures: int = 10
    brute_window: int = 600
    distributed_failures: int = 5
    distributed_ips: int = 3
    distributed_window: int = 600
    enumeration_phones: int = 10
    enumeration_window: int = 300


@dataclass
class Assessment:
    patterns: List[AttackPattern] = field(default_factory=list)
    action: RecommendedAction = RecommendedAction.ALLOW


class AttackDetector:
    def __init__(self, thresholds: Optional[DetectorThresholds] = None,
                 clock: Callable[[], datetime] = utcnow) -> None:
        self.t = thresholds or DetectorThresholds()
        self._clock = clock
        self._failures: Deque[Tuple[datetime, str, Optional[str], str]] = deque()
        self._sends: Deque[Tuple[datetime, str, Optional[str]]] = deque()
        self._lock = threading.Lock()
        self._horizon = timedelta(seconds=max(
            self.t.stuffing_window, self.t.brute_window, self.t.distributed_window, self.t.enumeration_window
        ))

    def _prune(self, now: datetime) -> None:
        cutoff = now - self._horizon
        while self._failures and self._failures[0][0] <= cutoff:
            self._failures.popleft()
        while self._sends and self._sends[0][0] <= cutoff:
            self._sends.popleft()

    def observe_failure(self, phone: str, ip: Optional[str], reason: str) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._failures.append((now, phone, ip, reason))

    def observe_send(self, phone: str, ip: Optional[str]) -> None:
        with self._lock:
            now = self._clock()
            self._prune(now)
            self._sends.append((now, phone, ip))

    def assess(self, phone: str, ip: Optional[str], sending: bool = False) -> Assessment:
        """Classify the stream as seen by a request for `phone` from `ip`.

        With `sending` the pending send-code for `phone` counts towards enumeration.
        """
        with self._lock:
            now = self._clock()
            self._prune(now)
            failures = list(self._failures)
            sends = list(self._sends)

        def since(seconds: int) -> datetime:
            return now - timedelta(seconds=seconds)

        patterns: List[AttackPattern] = []

        if ip is not None:
            start = since(self.t.stuffing_window)
            phones = {p for ts, p, i, _ in failures if ts > start and i == ip}
            if len(phones) > self.t.stuffing_phones:
                patterns.append(AttackPattern.CREDENTIAL_STUFFING)

        start = since(self.t.brute_window)
        if sum(1 for ts, p, _, _ in failures if ts > start and p == phone) > self.t.brute_failures:
            patterns.append(AttackPattern.BRUTE_FORCE)

        start = since(self.t.distributed_window)
        on_phone = [(ts, i) for ts, p, i, _ in failures if ts > start and p == phone]
        ips = {i for _, i in on_phone if i is not None}
        if len(on_phone) > self.t.distributed_failures and len(ips) > self.t.distributed_ips:
            patterns.append(AttackPattern.DISTRIBUTED_BRUTE)

        if ip is not None:
            start = since(self.t.enumeration_window)
            targets = {p for ts, p, i in sends if ts > start and i == ip}
            if sending:
                targets.add(phone)
            if len(targets) > self.t.enumeration_phones:
                patterns.append(AttackPattern.ENUMERATION)

        if not patterns:
            return Assessment()
        if len(patterns) > 1:
            return Assessment(patterns=patterns, action=RecommendedAction.BLOCK)
        return Assessment(patterns=patterns, action=PATTERN_ACTIONS[patterns[0]])
