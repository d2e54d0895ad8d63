from __future__ import annotations

from typing import Any

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from commerce_auth.config import MIN_SALT_BYTES, Settings
from commerce_auth.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """Salted one-way password digests (argon2id).

    Digests are PHC strings (``$argon2id$v=19$m=..,t=..,p=..$<salt>$<hash>``):
    the salt and cost parameters travel with the hash, so ``verify`` needs
    nothing but the stored string. Every ``hash`` call draws a new random salt.
    """

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
        salt_len: int = MIN_SALT_BYTES,
    ) -> None:
        if salt_len < MIN_SALT_BYTES:
            raise ValueError(f"salt_len must be at least {MIN_SALT_BYTES} bytes")
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            salt_len=salt_len,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialHasher":
        return cls(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost_kib,
            parallelism=settings.password_parallelism,
            salt_len=settings.password_salt_bytes,
        )

    @staticmethod
    def _encode(plaintext: str) -> bytes:
        # Lone surrogates are legal in a str but not in strict UTF-8
        return plaintext.encode("utf-8", "surrogatepass")

    def hash(self, plaintext: str) -> str:
        return self._pwd_hasher.hash(self._encode(plaintext))

    def verify(self, plaintext: str, digest: Any) -> bool:
        """Return True when ``plaintext`` matches ``digest``.

        Never raises: a mismatch, a digest that does not parse, or a
        non-string digest all yield False.
        """
        if not isinstance(digest, str) or not isinstance(plaintext, str):
            return False
        if not digest.isascii():
            # PHC strings are ASCII; anything else cannot be a digest we made
            return False
        try:
            return self._pwd_hasher.verify(digest, self._encode(plaintext))
        except VerificationError:
            return False
        except InvalidHashError:
            logger.warning("password_digest_malformed")
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(digest)
        except (InvalidHashError, ValueError):
            return False
