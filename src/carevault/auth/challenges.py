"""
One-Time Passcode Challenge Store

Keyed, time-expiring, attempt-bounded, single-use OTP challenges.

Features:
- Fixed-width numeric codes from a cryptographically secure source
- At most one live challenge per key (a new issue supersedes the old one)
- Lazy expiry on access; an optional sweep only bounds memory
- "Lock, don't leak": once attempts are exhausted, even the correct code is
  refused without revealing whether it matched

Concurrency:
- issue/verify for the same key are serialized by a per-key lock
- different keys never share a lock, so they do not contend
"""

import hmac
import logging
import secrets
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Optional, Tuple


logger = logging.getLogger(__name__)


# Challenge configuration
OTP_DIGITS = 6             # Code width
OTP_TTL_SECONDS = 300      # 5 minutes
OTP_MAX_ATTEMPTS = 5       # Wrong guesses allowed per challenge


class ChallengeOutcome(Enum):
    """Result of a verification attempt."""
    ACCEPTED = "accepted"
    WRONG_CODE = "wrong_code"
    EXPIRED = "expired"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    NOT_FOUND = "not_found"


@dataclass
class Challenge:
    """A live OTP record. Owned exclusively by ChallengeStore."""
    key: str
    code: str
    created_at: float
    expires_at: float
    remaining_attempts: int
    consumed: bool = False

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


def generate_code(digits: int = OTP_DIGITS) -> str:
    """
    Generate a fixed-width numeric code.

    Args:
        digits: Number of digits

    Returns:
        Zero-padded decimal string of exactly `digits` characters
    """
    return str(secrets.randbelow(10 ** digits)).zfill(digits)


class ChallengeStore:
    """
    In-process store of OTP challenges.

    Example:
        >>> store = ChallengeStore()
        >>> code = store.issue("a@x.com")
        >>> store.verify("a@x.com", code)
        <ChallengeOutcome.ACCEPTED: 'accepted'>
    """

    def __init__(self, ttl_seconds: float = OTP_TTL_SECONDS,
                 max_attempts: int = OTP_MAX_ATTEMPTS,
                 digits: int = OTP_DIGITS,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the store.

        Args:
            ttl_seconds: Lifetime of a challenge
            max_attempts: Wrong guesses tolerated before the challenge locks
            digits: Code width
            clock: Time source (seconds); injectable for tests
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._ttl = ttl_seconds
        self._max_attempts = max_attempts
        self._digits = digits
        self._clock = clock

        self._challenges: Dict[str, Challenge] = {}
        self._key_locks: Dict[str, _KeyLock] = {}
        # Guards the two dicts above; never held while waiting on a key lock
        self._registry_lock = threading.Lock()

        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweeper = threading.Event()

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def digits(self) -> int:
        return self._digits

    @contextmanager
    def _locked(self, key: str):
        """Hold the lock for `key`; the entry is dropped once idle and empty."""
        with self._registry_lock:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = self._key_locks[key] = _KeyLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._registry_lock:
                entry.users -= 1
                if entry.users == 0 and key not in self._challenges:
                    del self._key_locks[key]

    def issue(self, key: str) -> str:
        """
        Create a fresh challenge for `key`, discarding any prior one.

        The store never delivers the code; the caller hands it to a notifier.

        Args:
            key: Owning key (email or phone)

        Returns:
            The generated code
        """
        if not key:
            raise ValueError("challenge key must not be empty")

        code = generate_code(self._digits)
        with self._locked(key):
            now = self._clock()
            challenge = Challenge(
                key=key,
                code=code,
                created_at=now,
                expires_at=now + self._ttl,
                remaining_attempts=self._max_attempts,
            )
            with self._registry_lock:
                self._challenges[key] = challenge
        return code

    def verify(self, key: str, candidate: str) -> ChallengeOutcome:
        """
        Check `candidate` against the live challenge for `key`.

        Args:
            key: Owning key
            candidate: Code presented by the user

        Returns:
            ChallengeOutcome describing the result
        """
        outcome, _ = self.attempt(key, candidate)
        return outcome

    def attempt(self, key: str, candidate: str) -> Tuple[ChallengeOutcome, int]:
        """
        Like verify(), also returning the attempts left after this one.

        Both values are read under the key's lock, so concurrent guesses
        each see their own count.
        """
        with self._locked(key):
            with self._registry_lock:
                challenge = self._challenges.get(key)

            if challenge is None or challenge.consumed:
                return ChallengeOutcome.NOT_FOUND, 0

            if challenge.is_expired(self._clock()):
                self._evict(key, challenge)
                return ChallengeOutcome.EXPIRED, 0

            if challenge.remaining_attempts <= 0:
                return ChallengeOutcome.ATTEMPTS_EXHAUSTED, 0

            # CONSTANT-TIME comparison; non-strings never match
            candidate_bytes = candidate.encode() if isinstance(candidate, str) else b""
            if hmac.compare_digest(candidate_bytes, challenge.code.encode()):
                challenge.consumed = True
                self._evict(key, challenge)
                return ChallengeOutcome.ACCEPTED, 0

            challenge.remaining_attempts -= 1
            if challenge.remaining_attempts == 0:
                logger.warning("OTP challenge locked after %d wrong attempts", self._max_attempts)
            return ChallengeOutcome.WRONG_CODE, challenge.remaining_attempts

    def remaining_attempts(self, key: str) -> int:
        """Remaining guesses for the live challenge, 0 if none."""
        with self._registry_lock:
            challenge = self._challenges.get(key)
        if challenge is None or challenge.is_expired(self._clock()):
            return 0
        return challenge.remaining_attempts

    def _evict(self, key: str, challenge: Challenge) -> None:
        with self._registry_lock:
            # A superseding issue may have replaced the record already
            if self._challenges.get(key) is challenge:
                del self._challenges[key]

    def purge_expired(self) -> int:
        """
        Remove expired challenges.

        Memory optimization only; verify() already treats expired records
        as gone.

        Returns:
            Number of challenges removed
        """
        now = self._clock()
        with self._registry_lock:
            expired = [k for k, c in self._challenges.items() if c.is_expired(now)]
            for key in expired:
                del self._challenges[key]
                entry = self._key_locks.get(key)
                if entry is not None and entry.users == 0:
                    del self._key_locks[key]
        if expired:
            logger.debug("Purged %d expired OTP challenges", len(expired))
        return len(expired)

    def start_sweeper(self, interval_seconds: float) -> None:
        """Start a daemon thread calling purge_expired() every interval."""
        if interval_seconds <= 0 or self._sweeper is not None:
            return
        self._stop_sweeper.clear()

        def _run():
            while not self._stop_sweeper.wait(interval_seconds):
                self.purge_expired()

        self._sweeper = threading.Thread(target=_run, name="otp-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._stop_sweeper.set()
        self._sweeper.join()
        self._sweeper = None

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._challenges)
