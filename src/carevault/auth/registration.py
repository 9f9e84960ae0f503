"""
Registration Request Validation

Checks and normalizes the request payloads of the register and
change-password flows, and derives patient MRNs.

Validation errors are collected (not raised one at a time) so the caller
gets every problem with the request in one response.
"""

import re
from datetime import date
from typing import Any, Dict, List, Mapping, Optional

from ..exceptions import ValidationFailed
from ..models import PrincipalKind, StaffRole


PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

# MRN-YYNNNN: two-digit registration year, then a per-year sequence
MRN_PATTERN = re.compile(r'^MRN-\d{2}\d{4,}$')
MRN_SEQUENCE_WIDTH = 4

PATIENT_REQUIRED = ('first_name', 'last_name', 'email', 'password', 'date_of_birth')
PATIENT_OPTIONAL = ('phone', 'gender', 'blood_type', 'address_line1', 'city', 'state', 'zip_code')

STAFF_REQUIRED = (
    'employee_id', 'first_name', 'last_name', 'email', 'password',
    'hospital_id', 'role', 'department',
)
STAFF_OPTIONAL = ('phone',)


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _clean(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def normalize_email(email: str) -> str:
    return email.strip().lower()


def password_errors(password: str, confirm: Optional[str],
                    min_length: int = PASSWORD_MIN_LENGTH) -> List[str]:
    """
    Check a new password and its confirmation.

    Args:
        password: Proposed password
        confirm: Confirmation copy
        min_length: Minimum accepted length

    Returns:
        List of error messages (empty if acceptable)
    """
    errors = []
    if len(password) < min_length:
        errors.append(f"Password must be at least {min_length} characters")
    if len(password) > PASSWORD_MAX_LENGTH:
        errors.append(f"Password must be at most {PASSWORD_MAX_LENGTH} characters")
    if password != confirm:
        errors.append("Passwords do not match")
    return errors


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        return None


def _require(payload: Mapping[str, Any], required) -> None:
    missing = [name for name in required if _blank(payload.get(name))]
    if missing:
        raise ValidationFailed(
            f"Missing required fields: {', '.join(missing)}",
            fields=missing,
        )


def validate_registration(kind: PrincipalKind, payload: Mapping[str, Any],
                          min_length: int = PASSWORD_MIN_LENGTH) -> Dict[str, Any]:
    """
    Validate a registration payload.

    Args:
        kind: Principal kind being registered
        payload: Raw request fields (includes password and confirm_password)
        min_length: Minimum password length

    Returns:
        Normalized record fields; the plaintext stays under 'password'

    Raises:
        ValidationFailed: With the offending field names
    """
    if not isinstance(payload, Mapping):
        raise ValidationFailed("Request body must be an object")
    if kind is PrincipalKind.PATIENT:
        required, optional = PATIENT_REQUIRED, PATIENT_OPTIONAL
    else:
        required, optional = STAFF_REQUIRED, STAFF_OPTIONAL

    _require(payload, required)
    not_text = [name for name in ('email', 'password') if not isinstance(payload[name], str)]
    if not_text:
        raise ValidationFailed("Email and password must be strings", fields=not_text)

    errors: List[str] = []
    bad_fields: List[str] = []

    password = payload['password']
    pw_errors = password_errors(password, payload.get('confirm_password'), min_length)
    if pw_errors:
        errors.extend(pw_errors)
        bad_fields.append('password')

    email = normalize_email(payload['email'])
    if not EMAIL_PATTERN.match(email):
        errors.append("Email address is not valid")
        bad_fields.append('email')

    record: Dict[str, Any] = {name: _clean(payload[name]) for name in required}
    record['email'] = email
    record['password'] = password
    for name in optional:
        if not _blank(payload.get(name)):
            record[name] = _clean(payload[name])

    if kind is PrincipalKind.PATIENT:
        dob = _parse_date(payload['date_of_birth'])
        if dob is None or dob > date.today():
            errors.append("Date of birth must be a valid past date (YYYY-MM-DD)")
            bad_fields.append('date_of_birth')
        record['date_of_birth'] = dob
        record.setdefault('gender', 'Unknown')
    else:
        try:
            record['role'] = StaffRole(record['role'])
        except ValueError:
            errors.append(f"Unknown role: {record['role']}")
            bad_fields.append('role')

    if errors:
        raise ValidationFailed("; ".join(errors), fields=bad_fields)
    return record


def validate_password_change(payload: Mapping[str, Any],
                             min_length: int = PASSWORD_MIN_LENGTH) -> Dict[str, str]:
    """
    Validate a change-password payload.

    Returns:
        Dict with 'current_password' and 'new_password'
    """
    if not isinstance(payload, Mapping):
        raise ValidationFailed("Request body must be an object")
    _require(payload, ('current_password', 'new_password', 'confirm_password'))
    if not all(isinstance(payload[name], str) for name in ('current_password', 'new_password')):
        raise ValidationFailed("Passwords must be strings", fields=['new_password'])
    errors = password_errors(payload['new_password'], payload['confirm_password'], min_length)
    if errors:
        raise ValidationFailed("; ".join(errors), fields=['new_password'])
    return {
        'current_password': payload['current_password'],
        'new_password': payload['new_password'],
    }


def format_mrn(year: int, sequence: int) -> str:
    """
    Format a medical record number.

    Args:
        year: Registration year (four digits)
        sequence: 1-based position among this year's registrations

    Returns:
        'MRN-YYNNNN' (the sequence widens past 9999)
    """
    return f"MRN-{year % 100:02d}{str(sequence).zfill(MRN_SEQUENCE_WIDTH)}"
