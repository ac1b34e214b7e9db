"""
Persistence of the passwordless master key.

A stored key is one of two shapes:

  - ``OpaqueKey``      a handle into the OS keyring; the key bytes never
                       touch the SQLite file
  - ``RawKeyEnvelope`` the key bytes themselves, kept in the meta table
                       when no keyring backend is usable (degraded mode)

Both serialise to small JSON dicts so they can live in the meta partition.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Protocol, Union

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from satchel_core.crypto_utils import KEY_LENGTH
from satchel_core.errors import ConfigurationError, SatchelError, ValidationError

logger = logging.getLogger("satchel_key_vault")

KEY_ENVELOPE_VERSION = 1
KEYRING_SERVICE = "satchel"


class KeyVaultUnavailable(SatchelError):
    """The vault cannot hold opaque keys on this platform."""


@dataclass(frozen=True)
class RawKeyEnvelope:
    key_bytes: bytes
    version: int = KEY_ENVELOPE_VERSION
    format: str = "raw"

    def __repr__(self) -> str:
        return f"RawKeyEnvelope(version={self.version}, key_bytes=<redacted>)"


@dataclass(frozen=True)
class OpaqueKey:
    service: str
    key_id: str
    version: int = KEY_ENVELOPE_VERSION
    format: str = "keyring"


StoredKey = Union[OpaqueKey, RawKeyEnvelope]


def encode_stored_key(stored: StoredKey) -> dict:
    if isinstance(stored, OpaqueKey):
        return {
            "version": stored.version,
            "format": stored.format,
            "service": stored.service,
            "keyId": stored.key_id,
        }
    return {
        "version": stored.version,
        "format": stored.format,
        "keyBytes": base64.b64encode(stored.key_bytes).decode("ascii"),
    }


def decode_stored_key(value: object) -> tuple[StoredKey, bool]:
    """
    Parse a persisted key entry.

    Returns ``(stored_key, is_legacy)``; a legacy entry is a bare base64
    string of raw key bytes and should be re-persisted as an envelope.
    """
    if isinstance(value, str):
        try:
            raw = base64.b64decode(value, validate=True)
        except ValueError:
            raise ValidationError("Stored key is not valid base64") from None
        return RawKeyEnvelope(key_bytes=_check_length(raw)), True

    if not isinstance(value, dict):
        raise ValidationError("Stored key entry has an unknown shape")

    version = value.get("version", KEY_ENVELOPE_VERSION)
    if version != KEY_ENVELOPE_VERSION:
        raise ValidationError(f"Unsupported key envelope version: {version}")

    fmt = value.get("format")
    if fmt == "keyring":
        service, key_id = value.get("service"), value.get("keyId")
        if not service or not key_id:
            raise ValidationError("Keyring handle is missing service or keyId")
        return OpaqueKey(service=service, key_id=key_id), False
    if fmt == "raw":
        try:
            raw = base64.b64decode(value.get("keyBytes", ""), validate=True)
        except ValueError:
            raise ValidationError("Key envelope bytes are not valid base64") from None
        return RawKeyEnvelope(key_bytes=_check_length(raw)), False
    raise ValidationError(f"Unsupported key envelope format: {fmt!r}")


def _check_length(raw: bytes) -> bytes:
    if len(raw) != KEY_LENGTH:
        raise ValidationError(f"Stored key must be {KEY_LENGTH} bytes, got {len(raw)}")
    return raw


class KeyVault(Protocol):
    def store(self, key_id: str, raw: bytes) -> OpaqueKey: ...

    def load(self, handle: OpaqueKey) -> bytes: ...

    def delete(self, handle: OpaqueKey) -> None: ...


class KeyringVault:
    """Opaque key storage in the OS keyring (Keychain, Secret Service, ...)."""

    def __init__(self, service: str = KEYRING_SERVICE):
        self.service = service

    def store(self, key_id: str, raw: bytes) -> OpaqueKey:
        try:
            keyring.set_password(self.service, key_id, base64.b64encode(raw).decode("ascii"))
        except KeyringError as exc:
            raise KeyVaultUnavailable(f"Keyring backend refused the key: {exc}") from exc
        return OpaqueKey(service=self.service, key_id=key_id)

    def load(self, handle: OpaqueKey) -> bytes:
        try:
            encoded = keyring.get_password(handle.service, handle.key_id)
        except KeyringError as exc:
            raise ConfigurationError(f"Keyring backend unavailable: {exc}") from exc
        if encoded is None:
            raise ConfigurationError(
                "Missing encryption key for passwordless wallet; storage may be corrupted."
            )
        return _check_length(base64.b64decode(encoded))

    def delete(self, handle: OpaqueKey) -> None:
        try:
            keyring.delete_password(handle.service, handle.key_id)
        except PasswordDeleteError:
            pass
        except KeyringError as exc:
            logger.warning(f"Could not delete keyring entry {handle.key_id}: {exc}")


class MemoryKeyVault:
    """Process-local vault; keys vanish with the process."""

    def __init__(self, service: str = "satchel-memory"):
        self.service = service
        self._keys: dict[str, bytes] = {}

    def store(self, key_id: str, raw: bytes) -> OpaqueKey:
        self._keys[key_id] = bytes(raw)
        return OpaqueKey(service=self.service, key_id=key_id)

    def load(self, handle: OpaqueKey) -> bytes:
        try:
            return self._keys[handle.key_id]
        except KeyError:
            raise ConfigurationError(
                "Missing encryption key for passwordless wallet; storage may be corrupted."
            ) from None

    def delete(self, handle: OpaqueKey) -> None:
        self._keys.pop(handle.key_id, None)

    def __contains__(self, key_id: str) -> bool:
        return key_id in self._keys
