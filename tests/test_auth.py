"""
Unit tests for the auth components.

Tests:
- Password hashing (Argon2id)
- OTP challenges (expiry, attempt bound, single use, per-key locking)
- Session tokens
- Allow-listed profile mutations
- Registration validation and MRN formatting
"""

import threading
import time
from datetime import date, datetime, timezone

import jwt
import pytest

from carevault.auth.challenges import ChallengeOutcome, ChallengeStore, generate_code
from carevault.auth.credentials import CredentialHasher
from carevault.auth.mutations import (
    AUDIT_FIELD,
    NOOP,
    PATIENT_MUTABLE_FIELDS,
    ProfileMutationBuilder,
)
from carevault.auth.registration import (
    MRN_PATTERN,
    format_mrn,
    password_errors,
    validate_password_change,
    validate_registration,
)
from carevault.auth.tokens import SessionTokenService
from carevault.exceptions import (
    CorruptCredential,
    Expired,
    InvalidCredentials,
    InvalidInput,
    TokenExpired,
    TokenMalformed,
    ValidationFailed,
)
from carevault.models import PrincipalKind, StaffRole

from tests.conftest import FAST_ARGON2, SECRET, patient_payload, staff_payload, wait_for


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


class TestCredentialHasher:
    """Unit tests for password hashing."""

    def test_hash_is_argon2id(self, hasher):
        """Digests are self-describing Argon2id strings."""
        digest = hasher.hash("longenough1")
        assert digest.startswith("$argon2id$")

    def test_verify_correct_password(self, hasher):
        """Correct password should verify."""
        digest = hasher.hash("longenough1")
        assert hasher.verify("longenough1", digest) is True

    def test_verify_wrong_password(self, hasher):
        """Wrong password returns False rather than raising."""
        digest = hasher.hash("longenough1")
        assert hasher.verify("longenough2", digest) is False

    def test_same_password_different_hashes(self, hasher):
        """Same password should have different hashes (random salt)."""
        assert hasher.hash("longenough1") != hasher.hash("longenough1")

    def test_empty_plaintext_rejected(self, hasher):
        """Empty passwords are invalid input for both hash and verify."""
        with pytest.raises(InvalidInput):
            hasher.hash("")
        digest = hasher.hash("longenough1")
        with pytest.raises(InvalidInput):
            hasher.verify("", digest)

    def test_unparseable_digest_is_corrupt(self, hasher):
        """A damaged stored digest is distinct from a wrong password."""
        with pytest.raises(CorruptCredential):
            hasher.verify("longenough1", "not-a-hash")
        with pytest.raises(CorruptCredential):
            hasher.verify("longenough1", "")

    def test_old_parameters_still_verify(self, hasher):
        """Raising the work factor never invalidates stored digests."""
        old_digest = hasher.hash("longenough1")
        stronger = CredentialHasher(**dict(FAST_ARGON2, time_cost=2))
        assert stronger.verify("longenough1", old_digest)
        assert stronger.needs_rehash(old_digest)
        assert not hasher.needs_rehash(old_digest)

    def test_burn_never_raises(self, hasher):
        """The timing decoy accepts any plaintext, including empty."""
        hasher.burn("anything")
        hasher.burn("")


class TestChallengeStore:
    """Unit tests for OTP challenges."""

    def test_code_format(self):
        """Codes are fixed-width numeric strings."""
        for _ in range(50):
            code = generate_code(6)
            assert len(code) == 6
            assert code.isdigit()

    def test_issue_and_accept(self, challenges):
        """The issued code is accepted once."""
        code = challenges.issue("a@x.com")
        assert challenges.verify("a@x.com", code) is ChallengeOutcome.ACCEPTED

    def test_single_use(self, challenges):
        """A consumed challenge is gone."""
        code = challenges.issue("a@x.com")
        challenges.verify("a@x.com", code)
        assert challenges.verify("a@x.com", code) is ChallengeOutcome.NOT_FOUND

    def test_unknown_key(self, challenges):
        """Verifying without an issue is NOT_FOUND."""
        assert challenges.verify("nobody@x.com", "123456") is ChallengeOutcome.NOT_FOUND

    def test_wrong_code_decrements_attempts(self, challenges):
        """Each wrong guess costs one attempt."""
        code = challenges.issue("a@x.com")
        assert challenges.verify("a@x.com", _wrong(code)) is ChallengeOutcome.WRONG_CODE
        assert challenges.remaining_attempts("a@x.com") == challenges.max_attempts - 1

    def test_attempt_reports_remaining(self, challenges):
        """attempt() returns the count left after this guess."""
        code = challenges.issue("a@x.com")
        first = challenges.attempt("a@x.com", _wrong(code))
        second = challenges.attempt("a@x.com", _wrong(code))
        assert first == (ChallengeOutcome.WRONG_CODE, challenges.max_attempts - 1)
        assert second == (ChallengeOutcome.WRONG_CODE, challenges.max_attempts - 2)
        assert challenges.attempt("a@x.com", code) == (ChallengeOutcome.ACCEPTED, 0)

    def test_exhausted_refuses_correct_code(self, challenges):
        """After max attempts even the right code is refused."""
        code = challenges.issue("a@x.com")
        for _ in range(challenges.max_attempts):
            assert challenges.verify("a@x.com", _wrong(code)) is ChallengeOutcome.WRONG_CODE
        assert challenges.verify("a@x.com", code) is ChallengeOutcome.ATTEMPTS_EXHAUSTED
        assert challenges.verify("a@x.com", code) is ChallengeOutcome.ATTEMPTS_EXHAUSTED

    def test_expiry(self, challenges, clock):
        """Expired challenges are reported once, then forgotten."""
        code = challenges.issue("a@x.com")
        clock.advance(challenges.ttl_seconds + 1)
        assert challenges.verify("a@x.com", code) is ChallengeOutcome.EXPIRED
        assert challenges.verify("a@x.com", code) is ChallengeOutcome.NOT_FOUND

    def test_exhausted_then_expired_is_expired(self, challenges, clock):
        """Expiry wins over exhaustion, and the record is then dropped."""
        code = challenges.issue("a@x.com")
        for _ in range(challenges.max_attempts):
            challenges.verify("a@x.com", _wrong(code))
        clock.advance(challenges.ttl_seconds + 1)
        assert challenges.verify("a@x.com", code) is ChallengeOutcome.EXPIRED
        assert challenges.verify("a@x.com", code) is ChallengeOutcome.NOT_FOUND

    def test_valid_at_exact_expiry(self, challenges, clock):
        """A challenge is still live at exactly its expiry instant."""
        code = challenges.issue("a@x.com")
        clock.advance(challenges.ttl_seconds)
        assert challenges.verify("a@x.com", code) is ChallengeOutcome.ACCEPTED

    def test_reissue_supersedes(self, challenges, monkeypatch):
        """A new issue discards the previous code and resets attempts."""
        codes = iter(["111111", "222222"])
        monkeypatch.setattr("carevault.auth.challenges.generate_code", lambda digits: next(codes))

        challenges.issue("a@x.com")
        challenges.verify("a@x.com", "999999")
        challenges.issue("a@x.com")

        assert challenges.remaining_attempts("a@x.com") == challenges.max_attempts
        assert challenges.verify("a@x.com", "111111") is ChallengeOutcome.WRONG_CODE
        assert challenges.verify("a@x.com", "222222") is ChallengeOutcome.ACCEPTED

    def test_non_string_candidate(self, challenges):
        """Non-string candidates never match."""
        challenges.issue("a@x.com")
        assert challenges.verify("a@x.com", None) is ChallengeOutcome.WRONG_CODE

    def test_empty_key_rejected(self, challenges):
        """Challenges need an owning key."""
        with pytest.raises(ValueError):
            challenges.issue("")

    def test_purge_expired(self, challenges, clock):
        """The sweep drops expired records only."""
        challenges.issue("a@x.com")
        challenges.issue("b@x.com")
        clock.advance(challenges.ttl_seconds + 1)
        challenges.issue("c@x.com")

        assert challenges.purge_expired() == 2
        assert len(challenges) == 1

    def test_sweeper_thread(self):
        """The background sweeper purges without any verify call."""
        store = ChallengeStore(ttl_seconds=0.05)
        store.issue("a@x.com")
        store.start_sweeper(0.02)
        try:
            assert wait_for(lambda: len(store) == 0)
        finally:
            store.stop_sweeper()

    def test_concurrent_wrong_guesses_are_bounded(self, challenges):
        """Parallel guesses never exceed the attempt budget."""
        code = challenges.issue("a@x.com")
        outcomes = []
        barrier = threading.Barrier(20)

        def guess():
            barrier.wait()
            outcomes.append(challenges.verify("a@x.com", _wrong(code)))

        threads = [threading.Thread(target=guess) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(ChallengeOutcome.WRONG_CODE) == challenges.max_attempts
        assert outcomes.count(ChallengeOutcome.ATTEMPTS_EXHAUSTED) == 20 - challenges.max_attempts

    def test_concurrent_remaining_counts_are_distinct(self, challenges):
        """Each parallel wrong guess sees its own remaining count."""
        code = challenges.issue("a@x.com")
        results = []
        barrier = threading.Barrier(challenges.max_attempts)

        def guess():
            barrier.wait()
            results.append(challenges.attempt("a@x.com", _wrong(code)))

        threads = [threading.Thread(target=guess) for _ in range(challenges.max_attempts)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert {outcome for outcome, _ in results} == {ChallengeOutcome.WRONG_CODE}
        assert sorted(left for _, left in results) == list(range(challenges.max_attempts))

    def test_keys_do_not_contend(self, challenges):
        """A held lock on one key does not block another key."""
        code = challenges.issue("b@x.com")
        result = []

        with challenges._locked("a@x.com"):
            worker = threading.Thread(target=lambda: result.append(challenges.verify("b@x.com", code)))
            worker.start()
            worker.join(timeout=1.0)
            assert not worker.is_alive()

        assert result == [ChallengeOutcome.ACCEPTED]


class TestSessionTokens:
    """Unit tests for signed session tokens."""

    def test_issue_and_verify(self, tokens):
        """Claims survive the round trip."""
        token = tokens.issue("p-1", PrincipalKind.PATIENT, {'mrn': 'MRN-250001'}, ttl_seconds=60)
        session = tokens.verify(token)
        assert session.principal_id == "p-1"
        assert session.kind is PrincipalKind.PATIENT
        assert session.claims == {'mrn': 'MRN-250001'}
        assert session.expires_at - session.issued_at == 60

    def test_three_segments(self, tokens):
        """Wire format is header.payload.signature."""
        token = tokens.issue("s-1", PrincipalKind.STAFF, {})
        assert token.count(".") == 2

    def test_tampered_signature(self, tokens):
        """Changing one signature character invalidates the token."""
        token = tokens.issue("p-1", PrincipalKind.PATIENT, {})
        header, payload, signature = token.split(".")
        i = len(signature) // 2
        flipped = "A" if signature[i] != "A" else "B"
        tampered = ".".join([header, payload, signature[:i] + flipped + signature[i + 1:]])
        with pytest.raises(TokenMalformed):
            tokens.verify(tampered)

    def test_wrong_secret(self, tokens):
        """Tokens signed with another key are rejected."""
        other = SessionTokenService("another-secret-" + "z" * 40)
        token = other.issue("p-1", PrincipalKind.PATIENT, {})
        with pytest.raises(InvalidCredentials):
            tokens.verify(token)

    def test_garbage(self, tokens):
        """Non-tokens are malformed."""
        for junk in ("", "abc", "a.b.c"):
            with pytest.raises(TokenMalformed):
                tokens.verify(junk)

    def test_expired(self):
        """A correctly signed but expired token is TokenExpired."""
        past = SessionTokenService(SECRET, clock=lambda: time.time() - 7200)
        token = past.issue("p-1", PrincipalKind.PATIENT, {}, ttl_seconds=3600)
        with pytest.raises(TokenExpired) as excinfo:
            SessionTokenService(SECRET).verify(token)
        assert isinstance(excinfo.value, Expired)
        assert "log in again" in excinfo.value.message

    def test_verify_uses_service_clock(self, clock):
        """Expiry is judged against the service's own clock."""
        service = SessionTokenService(SECRET, clock=clock)
        token = service.issue("p-1", PrincipalKind.PATIENT, {}, ttl_seconds=3600)

        session = service.verify(token)
        assert session.issued_at == int(clock())
        assert session.expires_at == int(clock()) + 3600

        clock.advance(3599)
        assert service.verify(token).principal_id == "p-1"
        clock.advance(1)
        with pytest.raises(TokenExpired):
            service.verify(token)

    def test_issue_session_matches_token(self, tokens):
        """The session returned at issue equals what verify later reads."""
        token, session = tokens.issue_session("p-1", PrincipalKind.PATIENT, {'mrn': 'MRN-1'}, ttl_seconds=60)
        assert tokens.verify(token) == session

    def test_reserved_claims_rejected(self, tokens):
        """Extra claims may not shadow the format's own claims."""
        with pytest.raises(ValueError):
            tokens.issue("p-1", PrincipalKind.PATIENT, {'sub': 'someone-else'})

    def test_unknown_kind(self):
        """A validly signed token with an unknown kind is malformed."""
        now = int(time.time())
        token = jwt.encode({'sub': 'x', 'kind': 'admin', 'iat': now, 'exp': now + 60},
                           SECRET, algorithm="HS256")
        with pytest.raises(TokenMalformed):
            SessionTokenService(SECRET).verify(token)

    def test_missing_required_claim(self):
        """Tokens without kind/sub are malformed."""
        now = int(time.time())
        token = jwt.encode({'sub': 'x', 'iat': now, 'exp': now + 60}, SECRET, algorithm="HS256")
        with pytest.raises(TokenMalformed):
            SessionTokenService(SECRET).verify(token)

    def test_empty_secret(self):
        """A service needs a secret."""
        with pytest.raises(ValueError):
            SessionTokenService("")


class TestProfileMutationBuilder:
    """Unit tests for allow-listed updates."""

    FIXED = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def _builder(self, kind=PrincipalKind.PATIENT):
        return ProfileMutationBuilder.for_profile(kind, clock=lambda: self.FIXED)

    def test_filters_and_orders(self):
        """Only allow-listed fields survive, in allow-list order, audit last."""
        plan = self._builder().build({
            'zip_code': '411001',
            'mrn': 'MRN-000000',
            'city': 'Pune',
            'password_hash': 'x',
        })
        assert plan.updates == (
            ('city', 'Pune'),
            ('zip_code', '411001'),
            (AUDIT_FIELD, self.FIXED),
        )

    def test_none_clears_field(self):
        """A present key with a None value is still an update."""
        plan = self._builder().build({'phone': None})
        assert plan.fields == ['phone', AUDIT_FIELD]

    def test_noop(self):
        """Nothing allow-listed means NOOP, which is falsy."""
        plan = self._builder().build({'mrn': 'MRN-000000', 'patient_status': 'Active'})
        assert plan is NOOP
        assert not plan

    def test_staff_cannot_change_role(self):
        """Role and hospital are not staff-mutable."""
        plan = self._builder(PrincipalKind.STAFF).build({'role': 'Admin', 'hospital_id': 'H2'})
        assert plan is NOOP

    def test_credentials_builder(self):
        """The credential builder only emits the password hash."""
        plan = ProfileMutationBuilder.for_credentials(clock=lambda: self.FIXED).build(
            {'password_hash': 'digest', 'city': 'Pune'})
        assert plan.fields == ['password_hash', AUDIT_FIELD]

    def test_audit_field_not_allowable(self):
        """The audit timestamp is always builder-managed."""
        with pytest.raises(ValueError):
            ProfileMutationBuilder(PATIENT_MUTABLE_FIELDS + (AUDIT_FIELD,))


class TestRegistrationValidation:
    """Tests for registration and password-change payloads."""

    def test_valid_patient(self):
        """A complete patient payload is normalized."""
        record = validate_registration(PrincipalKind.PATIENT, patient_payload(email=" A@X.com "))
        assert record['email'] == "a@x.com"
        assert record['date_of_birth'] == date(1990, 4, 12)
        assert record['gender'] == "Unknown"
        assert record['password'] == "longenough1"
        assert 'confirm_password' not in record

    def test_valid_staff(self):
        """Staff roles are parsed into StaffRole."""
        record = validate_registration(PrincipalKind.STAFF, staff_payload())
        assert record['role'] is StaffRole.DOCTOR
        assert record['hospital_id'] == "HOSP1001"

    def test_missing_fields(self):
        """Every missing required field is named."""
        with pytest.raises(ValidationFailed) as excinfo:
            validate_registration(PrincipalKind.PATIENT, {'email': 'a@x.com'})
        assert set(excinfo.value.fields) == {'first_name', 'last_name', 'password', 'date_of_birth'}

    def test_errors_are_collected(self):
        """Several problems are reported together."""
        payload = patient_payload(password="short", confirm_password="other", email="nope")
        with pytest.raises(ValidationFailed) as excinfo:
            validate_registration(PrincipalKind.PATIENT, payload)
        assert 'password' in excinfo.value.fields
        assert 'email' in excinfo.value.fields
        assert "at least 8" in excinfo.value.message
        assert "do not match" in excinfo.value.message

    def test_future_birth_date(self):
        """Date of birth must be in the past."""
        with pytest.raises(ValidationFailed) as excinfo:
            validate_registration(PrincipalKind.PATIENT, patient_payload(date_of_birth="2999-01-01"))
        assert excinfo.value.fields == ['date_of_birth']

    def test_unknown_role(self):
        """Staff role must be one of StaffRole."""
        with pytest.raises(ValidationFailed):
            validate_registration(PrincipalKind.STAFF, staff_payload(role="Janitor"))

    def test_not_a_mapping(self):
        """Non-object bodies are rejected."""
        with pytest.raises(ValidationFailed):
            validate_registration(PrincipalKind.PATIENT, ["a@x.com"])

    def test_password_errors(self):
        """Length bounds and confirmation."""
        assert password_errors("longenough1", "longenough1") == []
        assert len(password_errors("x" * 129, "x" * 129)) == 1

    def test_password_change(self):
        """Change-password payloads need all three fields."""
        request = validate_password_change({
            'current_password': 'longenough1',
            'new_password': 'evenlonger22',
            'confirm_password': 'evenlonger22',
        })
        assert request == {'current_password': 'longenough1', 'new_password': 'evenlonger22'}
        with pytest.raises(ValidationFailed):
            validate_password_change({'current_password': 'x', 'new_password': 'evenlonger22'})

    def test_mrn_format(self):
        """MRN-YYNNNN, widening past 9999."""
        assert format_mrn(2025, 1) == "MRN-250001"
        assert format_mrn(2031, 12345) == "MRN-3112345"
        assert MRN_PATTERN.match(format_mrn(2025, 1))
        assert MRN_PATTERN.match(format_mrn(2031, 12345))
