"""
Credential Hashing Module

Implements one-way password hashing using the Argon2id algorithm.

Features:
- Argon2id password hashing (winner of Password Hashing Competition)
- Self-describing digests: algorithm, parameters, salt and output are encoded
  together, so raising the work factor never invalidates stored digests
- Constant-time verification (delegated to argon2-cffi)
- Distinguishes "wrong password" from "damaged stored digest"

Security considerations:
- Never log plaintext passwords or digests
- Hashing is CPU and memory bound; callers must not hold shared locks
  while calling into this module
"""

import logging
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from ..exceptions import CorruptCredential, InvalidInput


logger = logging.getLogger(__name__)


# Argon2id configuration
# - time_cost: number of iterations
# - memory_cost: memory usage in KiB
# - parallelism: number of parallel threads
# - hash_len: length of the hash output
# - salt_len: length of the random salt
ARGON2_CONFIG = {
    'time_cost': 3,          # Number of iterations
    'memory_cost': 65536,    # 64 MiB memory
    'parallelism': 4,        # 4 parallel threads
    'hash_len': 32,          # 256-bit hash
    'salt_len': 16,          # 128-bit salt
    'type': Type.ID          # Argon2id (hybrid)
}

# Used only to spend equivalent time when no stored digest exists
_TIMING_DECOY = "carevault-timing-decoy"


class CredentialHasher:
    """
    Password hasher using Argon2id.

    Example:
        >>> hasher = CredentialHasher()
        >>> digest = hasher.hash("longenough1")
        >>> hasher.verify("longenough1", digest)
        True
    """

    def __init__(self, **kwargs):
        """
        Initialize the hasher.

        Args:
            **kwargs: Override default Argon2 parameters (time_cost,
                memory_cost, parallelism, hash_len, salt_len)
        """
        config = ARGON2_CONFIG.copy()
        config.update(kwargs)

        self._hasher = PasswordHasher(
            time_cost=config['time_cost'],
            memory_cost=config['memory_cost'],
            parallelism=config['parallelism'],
            hash_len=config['hash_len'],
            salt_len=config['salt_len'],
            type=config['type']
        )
        self._decoy_digest: Optional[str] = None

    def hash(self, plaintext: str) -> str:
        """
        Hash a password.

        Args:
            plaintext: Password to hash

        Returns:
            Argon2id digest string (includes parameters and salt)

        Raises:
            InvalidInput: If the password is empty
        """
        _require_plaintext(plaintext)
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str) -> bool:
        """
        Verify a password against a stored digest.

        Args:
            plaintext: Candidate password
            digest: Stored Argon2 digest

        Returns:
            True if the password matches, False otherwise

        Raises:
            InvalidInput: If the candidate password is empty
            CorruptCredential: If the stored digest cannot be parsed
        """
        _require_plaintext(plaintext)
        if not digest:
            raise CorruptCredential(detail="empty stored digest")

        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as e:
            logger.error("Stored credential digest is unreadable (%s)", type(e).__name__)
            raise CorruptCredential(detail=type(e).__name__) from e

    def needs_rehash(self, digest: str) -> bool:
        """
        Check whether a digest was produced with outdated parameters.

        Args:
            digest: Existing digest

        Returns:
            True if the digest should be regenerated with current parameters
        """
        try:
            return self._hasher.check_needs_rehash(digest)
        except (InvalidHashError, ValueError):
            return False

    def burn(self, plaintext: str) -> None:
        """
        Spend one verification worth of time without a real digest.

        Called on the unknown-principal path of login so response time does
        not reveal whether an identifier exists.
        """
        if self._decoy_digest is None:
            self._decoy_digest = self._hasher.hash(_TIMING_DECOY)
        try:
            self._hasher.verify(self._decoy_digest, plaintext or "-")
        except VerifyMismatchError:
            pass


def _require_plaintext(plaintext: str) -> None:
    if not isinstance(plaintext, str) or plaintext == "":
        raise InvalidInput("Password must not be empty", fields=['password'])
