"""
Record Store Interface

The auth core reaches persistent staff/patient records only through the
RecordStore protocol. Uniqueness violations and missing records are raised as
distinct errors so the core can tell "conflict" from "outage".

InMemoryRecordStore is the reference implementation, used in development and
as the test double.
"""

import dataclasses
import logging
import threading
import uuid
from datetime import date
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Protocol, Tuple

from .exceptions import RecordNotFound, StoreError, UniquenessError
from .models import PRINCIPAL_TYPES, PatientPrincipal, Principal, PrincipalKind, StaffPrincipal


logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    """Storage operations the auth core depends on."""

    def find_by_identifier(self, kind: PrincipalKind, identifier: str) -> Optional[Principal]:
        """Look up by id or email (staff also by employee id)."""

    def insert(self, kind: PrincipalKind, fields: Mapping[str, Any]) -> Principal:
        """Create a record. Raises UniquenessError on a duplicate unique field."""

    def update(self, kind: PrincipalKind, principal_id: str,
               updates: Iterable[Tuple[str, Any]]) -> Principal:
        """Apply (field, value) pairs. Raises RecordNotFound."""

    def count_registered(self, kind: PrincipalKind, year: int) -> int:
        """Number of records of `kind` registered during `year`."""


# Unique columns per kind (beyond the primary id)
UNIQUE_FIELDS = {
    PrincipalKind.STAFF: ('email', 'employee_id'),
    PrincipalKind.PATIENT: ('email', 'mrn'),
}

ID_FIELDS = {
    PrincipalKind.STAFF: 'staff_id',
    PrincipalKind.PATIENT: 'patient_id',
}


class InMemoryRecordStore:
    """
    Thread-safe, dict-backed RecordStore.

    Failures can be injected for a single call with fail_next(), which makes
    the store usable for exercising the core's error paths.
    """

    def __init__(self, today: Callable[[], date] = date.today):
        self._records: Dict[PrincipalKind, Dict[str, Principal]] = {
            kind: {} for kind in PrincipalKind
        }
        self._lock = threading.Lock()
        self._today = today
        self._failures: Dict[str, Exception] = {}

    def fail_next(self, operation: str, error: Optional[Exception] = None) -> None:
        """Make the next call to `operation` raise `error` (StoreError by default)."""
        self._failures[operation] = error or StoreError(f"injected failure in {operation}")

    def _maybe_fail(self, operation: str) -> None:
        error = self._failures.pop(operation, None)
        if error is not None:
            raise error

    def find_by_identifier(self, kind: PrincipalKind, identifier: str) -> Optional[Principal]:
        self._maybe_fail('find_by_identifier')
        if not identifier:
            return None
        wanted = str(identifier).strip()
        with self._lock:
            table = self._records[kind]
            record = table.get(wanted)
            if record is None:
                for candidate in table.values():
                    if _matches(candidate, wanted):
                        record = candidate
                        break
            return dataclasses.replace(record) if record is not None else None

    def insert(self, kind: PrincipalKind, fields: Mapping[str, Any]) -> Principal:
        self._maybe_fail('insert')
        values = dict(fields)
        id_field = ID_FIELDS[kind]
        values[id_field] = str(uuid.uuid4())
        if kind is PrincipalKind.PATIENT:
            values.setdefault('registered_date', self._today())

        try:
            record = PRINCIPAL_TYPES[kind](**values)
        except TypeError as e:
            raise StoreError(f"cannot build {kind.value} record: {e}") from e

        with self._lock:
            table = self._records[kind]
            for name in UNIQUE_FIELDS[kind]:
                value = _unique_value(getattr(record, name))
                if any(_unique_value(getattr(other, name)) == value for other in table.values()):
                    logger.debug("Unique constraint on %s.%s rejected insert", kind.value, name)
                    raise UniquenessError(name)
            table[record.principal_id] = record
            return dataclasses.replace(record)

    def update(self, kind: PrincipalKind, principal_id: str,
               updates: Iterable[Tuple[str, Any]]) -> Principal:
        self._maybe_fail('update')
        with self._lock:
            record = self._records[kind].get(principal_id)
            if record is None:
                raise RecordNotFound(f"{kind.value} {principal_id}")
            known = {f.name for f in dataclasses.fields(record)}
            changes = dict(updates)
            unknown = set(changes) - known
            if unknown:
                raise StoreError(f"unknown column(s): {sorted(unknown)}")
            updated = dataclasses.replace(record, **changes)
            self._records[kind][principal_id] = updated
            return dataclasses.replace(updated)

    def count_registered(self, kind: PrincipalKind, year: int) -> int:
        self._maybe_fail('count_registered')
        with self._lock:
            if kind is PrincipalKind.STAFF:
                return len(self._records[kind])
            return sum(
                1 for record in self._records[kind].values()
                if record.registered_date is not None and record.registered_date.year == year
            )

    def add(self, record: Principal) -> Principal:
        """Seed an existing record as-is (fixtures, imports)."""
        with self._lock:
            self._records[record.kind][record.principal_id] = record
        return record


def _unique_value(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


def _matches(record: Principal, identifier: str) -> bool:
    if record.email.lower() == identifier.lower():
        return True
    if isinstance(record, StaffPrincipal):
        return record.employee_id == identifier
    if isinstance(record, PatientPrincipal):
        return record.mrn == identifier
    return False
