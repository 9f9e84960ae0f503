"""Shared fixtures for the CareVault test suite."""

import re
import threading
import time
from datetime import date

import pytest

from carevault.auth.challenges import ChallengeStore
from carevault.auth.credentials import CredentialHasher
from carevault.auth.facade import AuthFacade
from carevault.auth.tokens import SessionTokenService
from carevault.exceptions import NotifierError
from carevault.integration.event_logger import EventLogger
from carevault.store import InMemoryRecordStore
from carevault.upstream import UpstreamCaller


SECRET = "test-secret-" + "k" * 48
TODAY = date(2025, 3, 1)

# Cheapest legal Argon2id parameters; production defaults are far higher
FAST_ARGON2 = {'time_cost': 1, 'memory_cost': 8, 'parallelism': 1}

CODE_PATTERN = re.compile(r'\b(\d{6})\b')


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    """Captures messages; optionally fails every send."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages = []
        self.delivered = threading.Event()

    def send(self, destination, message):
        if self.fail:
            self.delivered.set()
            raise NotifierError("mailbox unavailable")
        self.messages.append((destination, message))
        self.delivered.set()

    def last_code(self, timeout: float = 2.0) -> str:
        assert self.delivered.wait(timeout), "notification was never sent"
        return CODE_PATTERN.search(self.messages[-1][1]).group(1)


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def hasher():
    return CredentialHasher(**FAST_ARGON2)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryRecordStore(today=lambda: TODAY)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def tokens():
    return SessionTokenService(SECRET)


@pytest.fixture
def challenges(clock):
    return ChallengeStore(clock=clock)


@pytest.fixture
def facade(store, hasher, challenges, tokens, notifier):
    facade = AuthFacade(
        store=store,
        hasher=hasher,
        challenges=challenges,
        tokens=tokens,
        notifier=notifier,
        audit=EventLogger(),
        upstream=UpstreamCaller(timeout=2.0),
        today=lambda: TODAY,
    )
    yield facade
    facade.close()


def patient_payload(**overrides):
    payload = {
        'first_name': 'Asha',
        'last_name': 'Rao',
        'email': 'a@x.com',
        'phone': '+919876543210',
        'password': 'longenough1',
        'confirm_password': 'longenough1',
        'date_of_birth': '1990-04-12',
    }
    payload.update(overrides)
    return payload


def staff_payload(**overrides):
    payload = {
        'employee_id': 'EMP-001',
        'first_name': 'John',
        'last_name': 'Doe',
        'email': 'john@hospital.org',
        'password': 'StaffPass123',
        'confirm_password': 'StaffPass123',
        'hospital_id': 'HOSP1001',
        'role': 'Doctor',
        'department': 'Cardiology',
    }
    payload.update(overrides)
    return payload
