"""
Session Token Module

Stateless, signed, expiring session tokens (JWT, HMAC-SHA256).

Wire format: header.payload.signature, each segment base64url encoded.
The payload carries the subject id (`sub`), principal kind (`kind`),
issued-at (`iat`), expiry (`exp`) and a small set of display/authorization
claims.

Security considerations:
- Signature and expiry are checked together on every verify
- Signature comparison is constant-time (PyJWT uses hmac.compare_digest)
- No server-side session table: rotating the secret invalidates every
  outstanding token, and claims are a snapshot bounded by the TTL
- Never log tokens
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Tuple, Union

import jwt

from ..exceptions import TokenExpired, TokenMalformed
from ..models import PrincipalKind


logger = logging.getLogger(__name__)


TOKEN_ALGORITHM = "HS256"
DEFAULT_TTL_SECONDS = 3600

# Claim names owned by the token format itself
RESERVED_CLAIMS = frozenset({'sub', 'kind', 'iat', 'exp', 'nbf', 'iss', 'aud', 'jti'})


@dataclass(frozen=True)
class VerifiedSession:
    """Claims recovered from a valid token."""
    principal_id: str
    kind: PrincipalKind
    issued_at: int
    expires_at: int
    claims: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.principal_id,
            'kind': self.kind.value,
            'issued_at': self.issued_at,
            'expires_at': self.expires_at,
            **self.claims,
        }


class SessionTokenService:
    """
    Signs and verifies session tokens with a process-wide symmetric secret.

    Example:
        >>> service = SessionTokenService(secret)
        >>> token = service.issue("p-1", PrincipalKind.PATIENT, {"mrn": "MRN-250001"})
        >>> service.verify(token).claims["mrn"]
        'MRN-250001'
    """

    def __init__(self, secret: Union[str, bytes],
                 algorithm: str = TOKEN_ALGORITHM,
                 clock: Callable[[], float] = time.time):
        """
        Initialize the token service.

        Args:
            secret: HMAC signing secret
            algorithm: JWS algorithm (HMAC family)
            clock: Time source for `iat`/`exp` at issuance and the expiry check
        """
        if not secret:
            raise ValueError("session secret must not be empty")
        self._secret = secret
        self._algorithm = algorithm
        self._clock = clock

    def issue(self, principal_id: str, kind: PrincipalKind,
              claims: Mapping[str, Any],
              ttl_seconds: int = DEFAULT_TTL_SECONDS) -> str:
        """
        Mint a token for a principal.

        Args:
            principal_id: Stable identifier of the principal
            kind: Principal kind
            claims: Extra display/authorization claims (frozen into the token)
            ttl_seconds: Lifetime in seconds

        Returns:
            Encoded token string
        """
        token, _ = self.issue_session(principal_id, kind, claims, ttl_seconds)
        return token

    def issue_session(self, principal_id: str, kind: PrincipalKind,
                      claims: Mapping[str, Any],
                      ttl_seconds: int = DEFAULT_TTL_SECONDS) -> Tuple[str, VerifiedSession]:
        """Mint a token and return it with the session it encodes."""
        clashing = RESERVED_CLAIMS.intersection(claims)
        if clashing:
            raise ValueError(f"reserved claim names: {sorted(clashing)}")

        issued_at = int(self._clock())
        session = VerifiedSession(
            principal_id=str(principal_id),
            kind=kind,
            issued_at=issued_at,
            expires_at=issued_at + int(ttl_seconds),
            claims=dict(claims),
        )
        payload = dict(claims)
        payload.update({
            'sub': session.principal_id,
            'kind': kind.value,
            'iat': session.issued_at,
            'exp': session.expires_at,
        })
        return jwt.encode(payload, self._secret, algorithm=self._algorithm), session

    def verify(self, token: str) -> VerifiedSession:
        """
        Verify signature and expiry, and return the embedded claims.

        Expiry is judged against this service's clock, the same one that
        stamped `exp` at issuance.

        Args:
            token: Encoded token

        Returns:
            VerifiedSession

        Raises:
            TokenExpired: Correctly signed but past its expiry
            TokenMalformed: Garbage, tampered, or signed with another key
        """
        if not token or not isinstance(token, str):
            raise TokenMalformed(detail="empty token")

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={
                    'require': ['sub', 'kind', 'iat', 'exp'],
                    'verify_exp': False,
                    'verify_iat': False,
                },
            )
        except jwt.InvalidTokenError as e:
            logger.info("Rejected session token: %s", type(e).__name__)
            raise TokenMalformed(detail=type(e).__name__) from e

        expires_at = payload.pop('exp')
        issued_at = payload.pop('iat')
        if not isinstance(expires_at, int) or not isinstance(issued_at, int):
            raise TokenMalformed(detail="non-integer iat/exp")
        if self._clock() >= expires_at:
            raise TokenExpired(detail=f"expired at {expires_at}")

        try:
            kind = PrincipalKind(payload.pop('kind'))
        except ValueError as e:
            raise TokenMalformed(detail="unknown principal kind") from e

        return VerifiedSession(
            principal_id=payload.pop('sub'),
            kind=kind,
            issued_at=issued_at,
            expires_at=expires_at,
            claims=payload,
        )
