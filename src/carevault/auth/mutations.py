"""
Profile Mutation Builder

Turns a request's proposed field changes into an ordered, allow-listed
update instruction for the record store.

The allow-lists below are the single place that decides which stored fields
a request may touch. Any proposed name outside them is ignored.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Mapping, Tuple

from ..models import PrincipalKind


logger = logging.getLogger(__name__)


PATIENT_MUTABLE_FIELDS = (
    'phone',
    'address_line1',
    'city',
    'state',
    'zip_code',
    'emergency_contact_name',
    'emergency_contact_phone',
    'emergency_contact_relationship',
)

STAFF_MUTABLE_FIELDS = (
    'first_name',
    'last_name',
    'phone',
)

PROFILE_FIELDS = {
    PrincipalKind.PATIENT: PATIENT_MUTABLE_FIELDS,
    PrincipalKind.STAFF: STAFF_MUTABLE_FIELDS,
}

# Password changes go through their own allow-list, never the profile one
CREDENTIAL_FIELDS = ('password_hash',)

AUDIT_FIELD = 'updated_at'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MutationPlan:
    """Ordered (field, value) pairs; the audit timestamp is always last."""
    updates: Tuple[Tuple[str, Any], ...] = ()

    def __bool__(self) -> bool:
        return bool(self.updates)

    def __iter__(self):
        return iter(self.updates)

    @property
    def fields(self) -> List[str]:
        return [name for name, _ in self.updates]


# Returned when nothing allow-listed was proposed
NOOP = MutationPlan()


class ProfileMutationBuilder:
    """
    Builds update instructions restricted to an allow-list.

    Example:
        >>> builder = ProfileMutationBuilder(PATIENT_MUTABLE_FIELDS)
        >>> plan = builder.build({'city': 'Pune', 'mrn': 'MRN-000000'})
        >>> plan.fields
        ['city', 'updated_at']
    """

    def __init__(self, allowed_fields: Iterable[str],
                 clock: Callable[[], datetime] = _utcnow):
        """
        Initialize the builder.

        Args:
            allowed_fields: Field names this builder may emit, in output order
            clock: Source of the audit timestamp
        """
        self._allowed = tuple(allowed_fields)
        if AUDIT_FIELD in self._allowed:
            raise ValueError(f"{AUDIT_FIELD} is managed by the builder")
        self._clock = clock

    @classmethod
    def for_profile(cls, kind: PrincipalKind, **kwargs) -> 'ProfileMutationBuilder':
        return cls(PROFILE_FIELDS[kind], **kwargs)

    @classmethod
    def for_credentials(cls, **kwargs) -> 'ProfileMutationBuilder':
        return cls(CREDENTIAL_FIELDS, **kwargs)

    @property
    def allowed_fields(self) -> Tuple[str, ...]:
        return self._allowed

    def build(self, proposal: Mapping[str, Any]) -> MutationPlan:
        """
        Filter a proposal down to allow-listed fields.

        A field counts as proposed when its key is present, even with a None
        value (which clears it).

        Args:
            proposal: Field name -> new value, as received

        Returns:
            MutationPlan, or NOOP if no allow-listed field was proposed
        """
        updates = [(name, proposal[name]) for name in self._allowed if name in proposal]

        ignored = [name for name in proposal if name not in self._allowed]
        if ignored:
            logger.debug("Ignoring %d non-mutable field(s) in update", len(ignored))

        if not updates:
            return NOOP

        updates.append((AUDIT_FIELD, self._clock()))
        return MutationPlan(tuple(updates))
