# Integration Module
"""
Audit logging for authentication events.

All events are logged with privacy-preserving subject hashes.
"""

from .event_logger import (
    EventLogger,
    EventType,
    SecurityEvent,
    get_subject_hash,
)

__all__ = [
    'EventType',
    'SecurityEvent',
    'EventLogger',
    'get_subject_hash',
]
