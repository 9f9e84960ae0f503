"""
Authentication Facade

Composes the credential hasher, challenge store, token service and mutation
builder into the user-visible flows:
- register (staff or patient)
- login
- verify token / authorize
- get, update profile and change password
- request and verify one-time passcodes

Every flow runs inside a boundary that re-raises the public error kinds and
turns anything unexpected into Internal. Principal kind and id always come
from a verified token, never from a request body.
"""

import functools
import hmac
import logging
import threading
from datetime import date
from typing import Any, Callable, Dict, Mapping, Optional, Union

from ..config import Settings
from ..exceptions import (
    AlreadyExists,
    CareVaultError,
    CredentialNotSet,
    Expired,
    Forbidden,
    Internal,
    InvalidCredentials,
    NotFound,
    RateLimited,
    RecordNotFound,
    TokenExpired,
    TokenMalformed,
    UniquenessError,
    Upstream,
    ValidationFailed,
)
from ..integration.event_logger import EventLogger, EventType
from ..models import AuthResult, Principal, PrincipalKind, PrincipalStatus
from ..notify import Notifier, SmtpNotifier
from ..store import RecordStore
from ..upstream import UpstreamCaller
from .challenges import ChallengeOutcome, ChallengeStore
from .credentials import CredentialHasher
from .mutations import ProfileMutationBuilder
from .registration import (
    PASSWORD_MIN_LENGTH,
    format_mrn,
    normalize_email,
    validate_password_change,
    validate_registration,
)
from .tokens import SessionTokenService, VerifiedSession


logger = logging.getLogger(__name__)


STAFF_TOKEN_TTL_SECONDS = 8 * 3600
PATIENT_TOKEN_TTL_SECONDS = 24 * 3600

OTP_MESSAGE = "Your verification code is {code}. It expires in {minutes} minutes."


def flow(name: str):
    """Flow boundary: public errors pass through, anything else becomes Internal."""
    def decorator(method):
        @functools.wraps(method)
        def wrapper(self, *args, **kwargs):
            try:
                return method(self, *args, **kwargs)
            except CareVaultError as e:
                if e.detail:
                    logger.info("%s failed: %s (%s)", name, e.code, e.detail)
                raise
            except Exception as e:
                logger.exception("Unexpected error in %s", name)
                raise Internal(detail=f"{type(e).__name__}: {e}") from e
        return wrapper
    return decorator


def _as_kind(kind: Union[PrincipalKind, str]) -> PrincipalKind:
    if isinstance(kind, PrincipalKind):
        return kind
    try:
        return PrincipalKind(str(kind).strip().lower())
    except ValueError:
        raise ValidationFailed(f"Unknown principal kind: {kind}", fields=['kind']) from None


def _challenge_key(key: str) -> str:
    if not isinstance(key, str) or not key.strip():
        raise ValidationFailed("An email or phone number is required", fields=['key'])
    key = key.strip()
    return normalize_email(key) if '@' in key else key


def _candidate_code(code: Any, digits: int) -> str:
    # JSON clients may send the code as a number, dropping leading zeros
    if isinstance(code, int) and not isinstance(code, bool) and code >= 0:
        return str(code).zfill(digits)
    if not isinstance(code, str):
        raise ValidationFailed("Verification code must be a string of digits", fields=['code'])
    return code.strip()


class AuthFacade:
    """
    Entry point for all authentication flows.

    Example:
        >>> facade = AuthFacade.from_settings(get_settings(), InMemoryRecordStore())
        >>> result = facade.register("patient", {...})
        >>> facade.verify_token(result.token).claims["mrn"]
    """

    def __init__(self, store: RecordStore,
                 hasher: CredentialHasher,
                 challenges: ChallengeStore,
                 tokens: SessionTokenService,
                 notifier: Optional[Notifier] = None,
                 audit: Optional[EventLogger] = None,
                 upstream: Optional[UpstreamCaller] = None,
                 staff_token_ttl: int = STAFF_TOKEN_TTL_SECONDS,
                 patient_token_ttl: int = PATIENT_TOKEN_TTL_SECONDS,
                 password_min_length: int = PASSWORD_MIN_LENGTH,
                 today: Callable[[], date] = date.today):
        self._store = store
        self._hasher = hasher
        self._challenges = challenges
        self._tokens = tokens
        self._notifier = notifier
        self._audit = audit or EventLogger()
        self._upstream = upstream or UpstreamCaller()
        self._token_ttl = {
            PrincipalKind.STAFF: staff_token_ttl,
            PrincipalKind.PATIENT: patient_token_ttl,
        }
        self._password_min_length = password_min_length
        self._today = today

    @classmethod
    def from_settings(cls, settings: Settings, store: RecordStore,
                      notifier: Optional[Notifier] = None,
                      audit: Optional[EventLogger] = None) -> 'AuthFacade':
        """Wire every component from configuration. Called once at service start."""
        challenges = ChallengeStore(
            ttl_seconds=settings.otp_ttl_seconds,
            max_attempts=settings.otp_max_attempts,
            digits=settings.otp_digits,
        )
        challenges.start_sweeper(settings.otp_sweep_interval_seconds)

        if notifier is None and settings.smtp_host:
            notifier = SmtpNotifier(
                host=settings.smtp_host,
                port=settings.smtp_port,
                username=settings.smtp_username,
                password=settings.smtp_password.get_secret_value() if settings.smtp_password else None,
                sender=settings.smtp_sender,
                timeout=settings.upstream_timeout_seconds,
            )

        return cls(
            store=store,
            hasher=CredentialHasher(
                time_cost=settings.argon2_time_cost,
                memory_cost=settings.argon2_memory_cost,
                parallelism=settings.argon2_parallelism,
            ),
            challenges=challenges,
            tokens=SessionTokenService(
                settings.session_secret.get_secret_value(),
                algorithm=settings.token_algorithm,
            ),
            notifier=notifier,
            audit=audit,
            upstream=UpstreamCaller(timeout=settings.upstream_timeout_seconds),
            staff_token_ttl=settings.staff_token_ttl_seconds,
            patient_token_ttl=settings.patient_token_ttl_seconds,
            password_min_length=settings.password_min_length,
        )

    def close(self) -> None:
        """Stop the OTP sweeper and the upstream worker pool."""
        self._challenges.stop_sweeper()
        self._upstream.shutdown()

    @property
    def audit(self) -> EventLogger:
        return self._audit

    # ========================================================================
    # Registration
    # ========================================================================

    @flow("register")
    def register(self, kind: Union[PrincipalKind, str], payload: Mapping[str, Any],
                 cancel: Optional[threading.Event] = None) -> AuthResult:
        """
        Register a new principal and log it in.

        Args:
            kind: 'staff' or 'patient'
            payload: Request fields, including password and confirm_password
            cancel: Optional cancellation signal for store calls

        Returns:
            AuthResult with the sanitized principal and a session token

        Raises:
            ValidationFailed, AlreadyExists, Upstream, Internal
        """
        kind = _as_kind(kind)
        fields = validate_registration(kind, payload, self._password_min_length)

        existing = self._upstream.call(
            self._store.find_by_identifier, kind, fields['email'], cancel=cancel)
        if existing is not None:
            self._audit.record(EventType.REGISTRATION_REJECTED, fields['email'], kind.value,
                               reason='duplicate_email')
            raise AlreadyExists(
                "Email already registered. Please use a different email or sign in.",
                fields=['email'],
            )

        # Hash outside any lock; this is the expensive step
        fields['password_hash'] = self._hasher.hash(fields.pop('password'))

        if kind is PrincipalKind.PATIENT:
            principal = self._insert_patient(fields, cancel)
        else:
            principal = self._insert(kind, fields, cancel)

        self._audit.record(EventType.REGISTERED, principal.principal_id, kind.value)
        logger.info("Registered %s principal", kind.value)
        return self._authenticated(principal)

    def _insert(self, kind: PrincipalKind, fields: Dict[str, Any],
                cancel: Optional[threading.Event]) -> Principal:
        try:
            return self._upstream.call(self._store.insert, kind, fields, cancel=cancel)
        except UniquenessError as e:
            raise self._conflict(e) from e

    def _insert_patient(self, fields: Dict[str, Any],
                        cancel: Optional[threading.Event]) -> Principal:
        """
        Insert a patient with a freshly derived MRN.

        The sequence read and the insert are not atomic across the store
        boundary: two concurrent registrations can derive the same MRN. The
        store's unique constraint rejects the loser, which re-derives once.
        """
        today = self._today()
        fields['registered_date'] = today
        sequence = self._next_mrn_sequence(today.year, cancel)

        for attempt in range(2):
            fields['mrn'] = format_mrn(today.year, sequence)
            try:
                return self._upstream.call(
                    self._store.insert, PrincipalKind.PATIENT, fields, cancel=cancel)
            except UniquenessError as e:
                if e.field != 'mrn' or attempt > 0:
                    raise self._conflict(e) from e
                logger.warning("MRN %s already taken, re-deriving", fields['mrn'])
                sequence = max(sequence + 1, self._next_mrn_sequence(today.year, cancel))

        raise Internal(detail="unreachable MRN allocation state")

    def _next_mrn_sequence(self, year: int, cancel: Optional[threading.Event]) -> int:
        # Non-critical read: one retry before giving up
        try:
            count = self._upstream.call(
                self._store.count_registered, PrincipalKind.PATIENT, year, cancel=cancel)
        except Upstream as e:
            if cancel is not None and cancel.is_set():
                raise
            logger.warning("MRN sequence read failed (%s), retrying once", e.detail)
            count = self._upstream.call(
                self._store.count_registered, PrincipalKind.PATIENT, year, cancel=cancel)
        return int(count) + 1

    @staticmethod
    def _conflict(error: UniquenessError) -> CareVaultError:
        if error.field in ('email', 'employee_id'):
            return AlreadyExists(f"{error.field.replace('_', ' ').capitalize()} already registered",
                                 fields=[error.field])
        return Upstream(detail=f"unique constraint on {error.field}")

    # ========================================================================
    # Login
    # ========================================================================

    @flow("login")
    def login(self, kind: Union[PrincipalKind, str], identifier: str, password: str,
              hospital_id: Optional[str] = None,
              cancel: Optional[threading.Event] = None) -> AuthResult:
        """
        Authenticate a principal.

        Unknown identifiers, inactive principals, wrong passwords and (for
        staff) a hospital mismatch all produce the same InvalidCredentials.

        Args:
            kind: 'staff' or 'patient'
            identifier: Email or id (staff: also employee id)
            password: Plaintext password
            hospital_id: Required for staff
            cancel: Optional cancellation signal for store calls

        Returns:
            AuthResult with the sanitized principal and a session token
        """
        kind = _as_kind(kind)
        required = {'identifier': identifier, 'password': password}
        if kind is PrincipalKind.STAFF:
            required['hospital_id'] = hospital_id
        missing = [name for name, value in required.items()
                   if not isinstance(value, str) or not value.strip()]
        if missing:
            raise ValidationFailed(f"Missing required fields: {', '.join(missing)}",
                                   fields=missing)

        principal = self._upstream.call(
            self._store.find_by_identifier, kind, identifier.strip(), cancel=cancel)

        if principal is None or principal.status is not PrincipalStatus.ACTIVE:
            self._hasher.burn(password)
            raise self._login_failed(identifier, kind, 'unknown_or_inactive')

        if not principal.password_hash:
            raise CredentialNotSet("Account password not set. Contact an administrator.",
                                   detail=f"{kind.value} without password hash")

        if not self._hasher.verify(password, principal.password_hash):
            raise self._login_failed(identifier, kind, 'wrong_password')

        if kind is PrincipalKind.STAFF and not hmac.compare_digest(
                principal.hospital_id.encode(), hospital_id.strip().encode()):
            raise self._login_failed(identifier, kind, 'hospital_mismatch')

        self._upgrade_hash(principal, password, cancel)
        self._audit.record(EventType.LOGIN_SUCCESS, principal.principal_id, kind.value)
        return self._authenticated(principal)

    def _login_failed(self, identifier: str, kind: PrincipalKind, reason: str) -> InvalidCredentials:
        # `reason` goes to the audit trail only, never to the caller
        self._audit.record(EventType.LOGIN_FAILED, identifier, kind.value, reason=reason)
        return InvalidCredentials("Invalid credentials")

    def _upgrade_hash(self, principal: Principal, password: str,
                      cancel: Optional[threading.Event]) -> None:
        """Re-hash with current parameters after a successful login (best effort)."""
        if not self._hasher.needs_rehash(principal.password_hash):
            return
        plan = ProfileMutationBuilder.for_credentials().build(
            {'password_hash': self._hasher.hash(password)})
        try:
            self._upstream.call(self._store.update, principal.kind, principal.principal_id,
                                plan.updates, cancel=cancel)
        except (Upstream, RecordNotFound) as e:
            logger.warning("Could not upgrade password hash: %s", type(e).__name__)

    def _authenticated(self, principal: Principal) -> AuthResult:
        ttl = self._token_ttl[principal.kind]
        token, session = self._tokens.issue_session(
            principal.principal_id, principal.kind, principal.token_claims(), ttl_seconds=ttl)
        return AuthResult(principal=principal.public_view(), token=token,
                          expires_at=session.expires_at)

    # ========================================================================
    # Tokens
    # ========================================================================

    @flow("verify_token")
    def verify_token(self, token: str) -> VerifiedSession:
        """
        Verify a session token and return its embedded claims.

        Raises:
            Expired: Token past its expiry ("please log in again")
            InvalidCredentials: Tampered or garbage token
        """
        try:
            return self._tokens.verify(token)
        except (TokenExpired, TokenMalformed) as e:
            self._audit.record(EventType.TOKEN_REJECTED, None, reason=e.code)
            raise

    def authorize(self, token: str,
                  kind: Optional[Union[PrincipalKind, str]] = None) -> VerifiedSession:
        """Verify `token` and, if given, require the principal kind."""
        session = self.verify_token(token)
        if kind is not None and session.kind is not _as_kind(kind):
            raise Forbidden(f"Access denied. {_as_kind(kind).value.capitalize()} only.")
        return session

    # ========================================================================
    # Profile
    # ========================================================================

    @flow("get_profile")
    def get_profile(self, token: str, kind: Optional[Union[PrincipalKind, str]] = None,
                    cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Return the caller's own record, without its password hash."""
        session = self.authorize(token, kind)
        principal = self._find_own(session, cancel)
        return principal.public_view()

    @flow("update_profile")
    def update_profile(self, token: str, proposal: Mapping[str, Any],
                       kind: Optional[Union[PrincipalKind, str]] = None,
                       cancel: Optional[threading.Event] = None) -> Dict[str, Any]:
        """
        Apply allow-listed profile changes for the caller.

        Args:
            token: Session token of the caller
            proposal: Proposed field -> value changes from the request
            kind: Required principal kind, if the endpoint is kind-specific
            cancel: Optional cancellation signal

        Returns:
            The updated record, without its password hash
        """
        session = self.authorize(token, kind)
        if not isinstance(proposal, Mapping):
            raise ValidationFailed("Update body must be an object")

        plan = ProfileMutationBuilder.for_profile(session.kind).build(proposal)
        if not plan:
            raise ValidationFailed("No valid fields to update")

        try:
            updated = self._upstream.call(self._store.update, session.kind,
                                          session.principal_id, plan.updates, cancel=cancel)
        except RecordNotFound as e:
            raise NotFound(f"{session.kind.value.capitalize()} not found") from e

        self._audit.record(EventType.PROFILE_UPDATED, session.principal_id,
                           session.kind.value, fields=plan.fields[:-1])
        return updated.public_view()

    @flow("update_password")
    def update_password(self, token: str, payload: Mapping[str, Any],
                        kind: Optional[Union[PrincipalKind, str]] = None,
                        cancel: Optional[threading.Event] = None) -> None:
        """
        Change the caller's password after re-verifying the current one.

        Args:
            token: Session token of the caller
            payload: current_password, new_password, confirm_password
            kind: Required principal kind, if the endpoint is kind-specific
            cancel: Optional cancellation signal
        """
        session = self.authorize(token, kind)
        request = validate_password_change(payload, self._password_min_length)

        principal = self._find_own(session, cancel)
        if not principal.password_hash:
            raise CredentialNotSet(detail=f"{session.kind.value} without password hash")
        if not self._hasher.verify(request['current_password'], principal.password_hash):
            raise InvalidCredentials("Current password is incorrect", fields=['current_password'])

        plan = ProfileMutationBuilder.for_credentials().build(
            {'password_hash': self._hasher.hash(request['new_password'])})
        try:
            self._upstream.call(self._store.update, session.kind,
                                session.principal_id, plan.updates, cancel=cancel)
        except RecordNotFound as e:
            raise NotFound(f"{session.kind.value.capitalize()} not found") from e

        self._audit.record(EventType.PASSWORD_CHANGED, session.principal_id, session.kind.value)

    def _find_own(self, session: VerifiedSession,
                  cancel: Optional[threading.Event]) -> Principal:
        principal = self._upstream.call(self._store.find_by_identifier, session.kind,
                                        session.principal_id, cancel=cancel)
        if principal is None:
            raise NotFound(f"{session.kind.value.capitalize()} not found")
        return principal

    # ========================================================================
    # One-time passcodes
    # ========================================================================

    @flow("request_otp")
    def request_otp(self, key: str) -> Dict[str, Any]:
        """
        Issue a passcode for `key` and hand it to the notifier.

        Delivery happens in the background; the code is valid as soon as
        this returns, whether or not delivery later succeeds. The code is
        never returned to the caller.
        """
        key = _challenge_key(key)
        code = self._challenges.issue(key)
        self._audit.record(EventType.OTP_ISSUED, key)

        if self._notifier is not None:
            minutes = max(1, int(self._challenges.ttl_seconds // 60))
            message = OTP_MESSAGE.format(code=code, minutes=minutes)
            self._upstream.dispatch(
                self._notifier.send, key, message,
                on_error=lambda error: self._notification_failed(key, error),
            )
        else:
            logger.warning("No notifier configured; OTP issued but not delivered")

        return {'expires_in': int(self._challenges.ttl_seconds)}

    def _notification_failed(self, key: str, error: BaseException) -> None:
        logger.warning("OTP delivery failed: %s", type(error).__name__)
        self._audit.record(EventType.NOTIFICATION_FAILED, key, error=type(error).__name__)

    @flow("verify_otp")
    def verify_otp(self, key: str, code: Union[str, int]) -> bool:
        """
        Check a passcode.

        Returns:
            True when accepted (the challenge is consumed)

        Raises:
            InvalidCredentials: Wrong code (attempts remain)
            RateLimited: Attempts exhausted; even the right code is refused
            Expired: Challenge expired
            NotFound: No live challenge for this key
            ValidationFailed: Code is not a string or integer (no attempt is spent)
        """
        key = _challenge_key(key)
        code = _candidate_code(code, self._challenges.digits)
        outcome, remaining = self._challenges.attempt(key, code)

        if outcome is ChallengeOutcome.ACCEPTED:
            self._audit.record(EventType.OTP_VERIFIED, key)
            return True

        if outcome is ChallengeOutcome.WRONG_CODE:
            self._audit.record(EventType.OTP_FAILED, key, remaining=remaining)
            raise InvalidCredentials(
                f"Incorrect verification code ({remaining} attempts remaining)",
                fields=['code'],
            )
        if outcome is ChallengeOutcome.ATTEMPTS_EXHAUSTED:
            self._audit.record(EventType.OTP_LOCKED, key)
            raise RateLimited("Too many incorrect attempts. Request a new code.")
        if outcome is ChallengeOutcome.EXPIRED:
            raise Expired("Verification code expired. Request a new code.")
        raise NotFound("No active verification code. Request a new code.")