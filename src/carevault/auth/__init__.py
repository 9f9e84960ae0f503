# Authentication Module
"""
Credential-and-session core:
- Password hashing (Argon2id) - credentials.py
- One-time passcode challenges - challenges.py
- Signed session tokens (JWT, HS256) - tokens.py
- Allow-listed profile updates - mutations.py
- Request validation and MRN derivation - registration.py
- The user-visible flows - facade.py

Security features:
- Self-describing password digests, constant-time verification
- Single-use, expiring, attempt-bounded OTPs with per-key locking
- Stateless tokens; signature and expiry checked together
- Uninformative login failures (no account enumeration)
"""

from .credentials import CredentialHasher
from .challenges import Challenge, ChallengeOutcome, ChallengeStore, generate_code
from .tokens import SessionTokenService, VerifiedSession
from .mutations import (
    MutationPlan,
    NOOP,
    PATIENT_MUTABLE_FIELDS,
    STAFF_MUTABLE_FIELDS,
    ProfileMutationBuilder,
)
from .registration import format_mrn, validate_password_change, validate_registration
from .facade import AuthFacade

__all__ = [
    # Credentials
    'CredentialHasher',
    # Challenges
    'Challenge',
    'ChallengeOutcome',
    'ChallengeStore',
    'generate_code',
    # Tokens
    'SessionTokenService',
    'VerifiedSession',
    # Mutations
    'MutationPlan',
    'NOOP',
    'PATIENT_MUTABLE_FIELDS',
    'STAFF_MUTABLE_FIELDS',
    'ProfileMutationBuilder',
    # Registration
    'format_mrn',
    'validate_password_change',
    'validate_registration',
    # Flows
    'AuthFacade',
]
