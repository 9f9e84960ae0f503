"""
Principal Data Model

Identity records for the two principal kinds the service authenticates:
- StaffPrincipal: hospital staff (doctors, nurses, administrators, ...)
- PatientPrincipal: patients, identified to humans by their MRN

Records are plain attribute structs returned by the record store. The stored
password hash travels with the record but is never part of its public view.
"""

from dataclasses import dataclass, fields
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Union


class PrincipalKind(Enum):
    """Tag distinguishing the two principal kinds (also the token `kind` claim)."""
    STAFF = "staff"
    PATIENT = "patient"


class StaffRole(Enum):
    ADMIN = "Admin"
    DOCTOR = "Doctor"
    NURSE = "Nurse"
    PHARMACIST = "Pharmacist"
    TECHNICIAN = "Technician"
    RECEPTIONIST = "Receptionist"


class PrincipalStatus(Enum):
    """Employment status (staff) or patient status. Only ACTIVE may log in."""
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    SUSPENDED = "Suspended"


# Fields stripped from every record before it leaves the service
PRIVATE_FIELDS = frozenset({'password_hash'})


@dataclass
class StaffPrincipal:
    """A hospital staff member."""
    staff_id: str
    employee_id: str
    first_name: str
    last_name: str
    email: str
    role: StaffRole
    department: str
    hospital_id: str
    employment_status: PrincipalStatus = PrincipalStatus.ACTIVE
    phone: Optional[str] = None
    password_hash: Optional[str] = None  # None means "never set", not "wrong"
    updated_at: Optional[datetime] = None

    kind = PrincipalKind.STAFF

    @property
    def principal_id(self) -> str:
        return self.staff_id

    @property
    def status(self) -> PrincipalStatus:
        return self.employment_status

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def token_claims(self) -> Dict[str, Any]:
        """Display/authorization claims embedded in staff session tokens."""
        return {
            'name': self.display_name,
            'email': self.email,
            'role': self.role.value,
        }

    def public_view(self) -> Dict[str, Any]:
        return _public_view(self)


@dataclass
class PatientPrincipal:
    """A registered patient. The MRN is assigned once at creation."""
    patient_id: str
    mrn: str
    first_name: str
    last_name: str
    email: str
    date_of_birth: date
    phone: Optional[str] = None
    password_hash: Optional[str] = None
    patient_status: PrincipalStatus = PrincipalStatus.ACTIVE
    registered_date: Optional[date] = None

    # Demographic / contact fields, mutable after creation
    gender: str = "Unknown"
    blood_type: Optional[str] = None
    address_line1: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_phone: Optional[str] = None
    emergency_contact_relationship: Optional[str] = None

    consent_for_treatment: bool = True
    consent_for_data_share: bool = True
    updated_at: Optional[datetime] = None

    kind = PrincipalKind.PATIENT

    @property
    def principal_id(self) -> str:
        return self.patient_id

    @property
    def status(self) -> PrincipalStatus:
        return self.patient_status

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def token_claims(self) -> Dict[str, Any]:
        """Display claims embedded in patient session tokens."""
        return {
            'mrn': self.mrn,
            'email': self.email,
            'name': self.display_name,
        }

    def public_view(self) -> Dict[str, Any]:
        return _public_view(self)


Principal = Union[StaffPrincipal, PatientPrincipal]

PRINCIPAL_TYPES = {
    PrincipalKind.STAFF: StaffPrincipal,
    PrincipalKind.PATIENT: PatientPrincipal,
}


def _public_view(record) -> Dict[str, Any]:
    """Serialize a record to plain JSON-friendly values, minus private fields."""
    view: Dict[str, Any] = {}
    for f in fields(record):
        if f.name in PRIVATE_FIELDS:
            continue
        value = getattr(record, f.name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, date):
            value = value.isoformat()
        view[f.name] = value
    view['kind'] = record.kind.value
    view['name'] = record.display_name
    return view


@dataclass(frozen=True)
class AuthResult:
    """Outcome of a successful register/login: sanitized principal + token."""
    principal: Dict[str, Any]
    token: str
    expires_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'token': self.token,
            'expires_at': self.expires_at,
            self.principal['kind']: self.principal,
        }
