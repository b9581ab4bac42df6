"""
auth/passwords.py -- Salted, peppered Argon2id password hashing.

Security design decisions:
  Pepper: the plaintext is first run through HMAC-SHA256 keyed with the
       deployment-wide PEPPER. A stolen users table is useless for offline
       guessing without the pepper, which lives only in the environment.
       The HMAC output is fixed-length, so arbitrarily long passwords cost
       the same to hash.

  Argon2id (argon2-cffi): memory-hard, per-call random salt (32 bytes),
       parameters and salt encoded in the PHC string it returns. verify() is
       constant-time with respect to the digest comparison.

  Legacy bcrypt: hashes written before the Argon2id migration start with
       $2a$/$2b$/$2y$ and were not peppered. They still verify, and
       needs_rehash() flags them so the login path upgrades them in place
       without forcing a password reset.

  Worker pool: hashing is deliberately CPU- and memory-expensive. Every call
       runs on a dedicated bounded ThreadPoolExecutor (argon2-cffi releases
       the GIL) and waits at most `timeout` seconds. A timeout raises
       AuthBackendError: login fails closed, never open.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

import bcrypt
from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from auth.errors import AuthBackendError, CorruptCredentialError

logger = logging.getLogger("tenantauth.auth.passwords")

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
_ARGON2_PREFIX = "$argon2"


class PasswordHasher:
    """Peppered Argon2id hashing with online cost upgrades.

    Usage:
        hasher = PasswordHasher(pepper=settings.pepper)
        encoded = hasher.hash("correct horse battery staple")
        hasher.verify("correct horse battery staple", encoded)   # True
        hasher.needs_rehash(encoded)                             # False
        hasher.close()
    """

    def __init__(
        self,
        pepper: str,
        *,
        memory_cost: int = 64 * 1024,
        time_cost: int = 3,
        parallelism: int = 2,
        salt_len: int = 32,
        hash_len: int = 32,
        workers: int = 4,
        timeout: float = 5.0,
    ) -> None:
        if salt_len < 16:
            raise ValueError("salt_len must be at least 16 bytes")
        self._pepper = pepper.encode("utf-8")
        self._argon2 = Argon2Hasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_len,
            salt_len=salt_len,
            type=Type.ID,
        )
        self._timeout = timeout
        self._pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pwhash")
        self._dummy_hash: str | None = None

    @classmethod
    def from_settings(cls, settings) -> PasswordHasher:
        return cls(
            settings.pepper,
            memory_cost=settings.argon2_memory_cost,
            time_cost=settings.argon2_time_cost,
            parallelism=settings.argon2_parallelism,
            workers=settings.hash_workers,
            timeout=settings.hash_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def hash(self, plaintext: str) -> str:
        """Return the encoded Argon2id hash (salt and parameters embedded)."""
        return self._run(self._argon2.hash, self._peppered(plaintext))

    def verify(self, plaintext: str, encoded_hash: str) -> bool:
        """Return True if plaintext matches encoded_hash.

        Raises CorruptCredentialError if encoded_hash cannot be parsed --
        callers treat that as a failed verification, never as a crash.
        """
        if not encoded_hash:
            raise CorruptCredentialError("empty credential hash")
        if encoded_hash.startswith(_BCRYPT_PREFIXES):
            return self._run(self._verify_bcrypt, plaintext, encoded_hash)
        if not encoded_hash.startswith(_ARGON2_PREFIX):
            raise CorruptCredentialError("unrecognised credential hash format")
        return self._run(self._verify_argon2, plaintext, encoded_hash)

    def needs_rehash(self, encoded_hash: str) -> bool:
        """True when the hash is legacy bcrypt or uses outdated Argon2 parameters."""
        if encoded_hash.startswith(_BCRYPT_PREFIXES):
            return True
        try:
            return self._argon2.check_needs_rehash(encoded_hash)
        except (InvalidHashError, ValueError) as exc:
            raise CorruptCredentialError("unparseable argon2 parameters") from exc

    def verify_dummy(self, plaintext: str) -> None:
        """Burn one verification against a fixed hash.

        Called when the identity does not exist so that an unknown account
        costs the same time as a wrong password.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self.hash("tenantauth_timing_dummy")
        self.verify(plaintext, self._dummy_hash)

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _peppered(self, plaintext: str) -> str:
        return hmac.new(self._pepper, plaintext.encode("utf-8"), hashlib.sha256).hexdigest()

    def _verify_argon2(self, plaintext: str, encoded_hash: str) -> bool:
        try:
            return self._argon2.verify(encoded_hash, self._peppered(plaintext))
        except VerifyMismatchError:
            return False
        except InvalidHashError as exc:
            raise CorruptCredentialError("malformed argon2 hash") from exc
        except VerificationError:
            return False

    @staticmethod
    def _verify_bcrypt(plaintext: str, encoded_hash: str) -> bool:
        try:
            return bcrypt.checkpw(plaintext.encode("utf-8"), encoded_hash.encode("utf-8"))
        except ValueError as exc:
            raise CorruptCredentialError("malformed bcrypt hash") from exc

    def _run(self, fn, *args):
        future = self._pool.submit(fn, *args)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeout as exc:
            future.cancel()
            logger.error("Password hashing exceeded %.1fs timeout", self._timeout)
            raise AuthBackendError("password hashing timed out") from exc
