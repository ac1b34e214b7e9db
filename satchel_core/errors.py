"""
Error taxonomy for Satchel.

Callers are expected to treat:
  - ``LockedError`` / ``UnauthorizedError`` as recoverable prompts
  - ``DecryptionError`` as "retry with a different credential"
  - ``ValidationError`` / ``IntegrityError`` as fatal to the request

"Not found" on reads is not an error: lookups return ``None``.
"""

from __future__ import annotations


class SatchelError(Exception):
    """Base class for every error raised by satchel_core."""


class ValidationError(SatchelError, ValueError):
    """Malformed input: mnemonic, envelope, record, PSBT or sign-input shape."""


class InvalidMnemonicError(ValidationError):
    """BIP-39 word count or checksum check failed."""


class UnauthorizedError(SatchelError):
    """A password is required and was not supplied."""


class ConflictError(SatchelError):
    """Mode mismatch or an overlapping mutating call."""


class DecryptionError(SatchelError):
    """Wrong password or corrupted ciphertext (deliberately indistinguishable)."""

    DEFAULT_MESSAGE = "Decryption failed: data may be corrupted or password is incorrect"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.DEFAULT_MESSAGE)


class LockedError(SatchelError):
    """Operation attempted while key material is not loaded."""


class IntegrityError(SatchelError):
    """Backup MAC verification failed."""


class IncompatibleInputError(SatchelError):
    """A PSBT input cannot be signed safely with the resolved key."""


class ConfigurationError(SatchelError):
    """Persisted state is inconsistent (e.g. missing salt on a password store)."""


class WalletNotFoundError(SatchelError, LookupError):
    """No wallet payload exists in the store."""


class DegradedSecurityWarning(UserWarning):
    """The passwordless master key had to be persisted as raw bytes."""
