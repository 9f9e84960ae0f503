"""
Security Event Logger

Audit trail for authentication events.

Features:
- Registration, login, token, OTP and profile events
- Privacy-preserving subject hashes (SHA-256); emails and ids are never
  written in plaintext
- JSON records emitted to the `carevault.audit` logger
- Subscriber callbacks and a bounded in-memory history

Secrets (passwords, OTP codes, tokens) are never part of an event.
"""

import hashlib
import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional


logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("carevault.audit")


# ============================================================================
# Constants
# ============================================================================

EVENT_VERSION = "1.0"
DEFAULT_HISTORY_SIZE = 1000


# ============================================================================
# Privacy Functions
# ============================================================================

def get_subject_hash(identifier: str) -> str:
    """
    Compute privacy-preserving hash of an identifier (email, id, phone).

    Identifiers are lower-cased first so the same email always correlates.

    Args:
        identifier: The plaintext identifier

    Returns:
        Hex-encoded SHA-256 hash
    """
    return hashlib.sha256(identifier.strip().lower().encode()).hexdigest()


# ============================================================================
# Event Types
# ============================================================================

class EventType(Enum):
    """Types of security events that can be logged."""

    # Registration / authentication
    REGISTERED = "registered"
    REGISTRATION_REJECTED = "registration_rejected"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    TOKEN_REJECTED = "token_rejected"

    # One-time passcodes
    OTP_ISSUED = "otp_issued"
    OTP_VERIFIED = "otp_verified"
    OTP_FAILED = "otp_failed"
    OTP_LOCKED = "otp_locked"
    NOTIFICATION_FAILED = "notification_failed"

    # Profile
    PROFILE_UPDATED = "profile_updated"
    PASSWORD_CHANGED = "password_changed"


# ============================================================================
# Event Structure
# ============================================================================

@dataclass
class SecurityEvent:
    """
    A security event.

    All subject-identifying information is hashed before it gets here.
    """
    event_type: EventType
    subject_hash: str
    timestamp: int
    kind: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> str:
        """Serialize to a compact JSON line."""
        return json.dumps({
            'version': EVENT_VERSION,
            'type': self.event_type.value,
            'subject': self.subject_hash[:16],
            'kind': self.kind,
            'time': self.timestamp,
            'iso_time': datetime.fromtimestamp(self.timestamp, timezone.utc).isoformat(),
            'details': self.details,
        }, separators=(',', ':'), sort_keys=True, default=str)

    @classmethod
    def from_record(cls, record: str) -> 'SecurityEvent':
        """Parse an event from its JSON line."""
        data = json.loads(record)
        return cls(
            event_type=EventType(data['type']),
            subject_hash=data['subject'],
            timestamp=data['time'],
            kind=data.get('kind'),
            details=data.get('details', {}),
        )

    def __str__(self) -> str:
        dt = datetime.fromtimestamp(self.timestamp, timezone.utc)
        return (
            f"[{dt.strftime('%Y-%m-%d %H:%M:%S')}] "
            f"{self.event_type.value} | "
            f"subject:{self.subject_hash[:8]}..."
        )


# ============================================================================
# Event Logger
# ============================================================================

class EventLogger:
    """
    Records security events to the audit logger and an in-memory history.
    """

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the event logger.

        Args:
            history_size: Number of recent events kept in memory
            clock: Time source
        """
        self._history: Deque[SecurityEvent] = deque(maxlen=history_size)
        self._lock = threading.Lock()
        self._clock = clock
        self._callbacks: List[Callable[[SecurityEvent], None]] = []

    def add_callback(self, callback: Callable[[SecurityEvent], None]) -> None:
        """Add a callback to be notified of new events."""
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[SecurityEvent], None]) -> None:
        """Remove a callback."""
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def record(self, event_type: EventType, subject: Optional[str],
               kind: Optional[str] = None, **details: Any) -> SecurityEvent:
        """
        Record an event.

        Args:
            event_type: What happened
            subject: Plaintext identifier (hashed here), or None for system events
            kind: Principal kind, if known
            **details: Extra non-secret context

        Returns:
            The logged event
        """
        event = SecurityEvent(
            event_type=event_type,
            subject_hash=get_subject_hash(subject) if subject else "system",
            timestamp=int(self._clock()),
            kind=kind,
            details=details,
        )
        with self._lock:
            self._history.append(event)

        level = logging.WARNING if event_type in _WARNING_EVENTS else logging.INFO
        audit_logger.log(level, event.to_record())

        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                # A broken subscriber must not break the audited flow
                logger.exception("Audit callback failed for %s", event_type.value)
        return event

    def recent(self, event_type: Optional[EventType] = None) -> List[SecurityEvent]:
        """Events in the in-memory history, oldest first."""
        with self._lock:
            events = list(self._history)
        if event_type is not None:
            events = [e for e in events if e.event_type is event_type]
        return events

    def count(self, event_type: EventType) -> int:
        return len(self.recent(event_type))


_WARNING_EVENTS = frozenset({
    EventType.LOGIN_FAILED,
    EventType.TOKEN_REJECTED,
    EventType.OTP_LOCKED,
    EventType.NOTIFICATION_FAILED,
})
