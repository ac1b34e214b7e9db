"""
Portable, MAC-protected wallet backups.

A backup is base64(JSON) of:

    {
      "version": 1,
      "cipher": "AES-GCM",
      "kdf": {"name": "PBKDF2", "hash": "SHA-256", "iterations": N, "salt": b64},
      "iv": b64,
      "ciphertext": b64,            # GCM tag appended
      "createdAt": ms,
      "network": "mainnet" | "testnet",
      "mac": b64,
      "macAlgo": "HMAC-SHA256"
    }

The MAC covers every field except ``mac`` itself (sorted-key compact JSON)
and is checked before decryption, so tampering with a cleartext field such
as ``network`` is rejected as an ``IntegrityError``.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass

from satchel_core import crypto_utils
from satchel_core.crypto_utils import PBKDF2_ITERATIONS, SALT_LENGTH, SymmetricKey
from satchel_core.derivation import NETWORKS
from satchel_core.errors import IntegrityError, ValidationError
from satchel_core.storage import is_production_like

logger = logging.getLogger("satchel_backup")

BACKUP_VERSION = 1
CIPHER = "AES-GCM"
KDF_NAME = "PBKDF2"
KDF_HASH = "SHA-256"
MAC_ALGO = "HMAC-SHA256"
MAC_KEY_INFO = b"satchel/backup/mac/v1"
MAX_ITERATIONS = 100 * PBKDF2_ITERATIONS

_REQUIRED_FIELDS = ("version", "cipher", "kdf", "iv", "ciphertext", "createdAt", "network", "mac", "macAlgo")


@dataclass
class BackupContents:
    """What ``import_backup`` recovers from an envelope."""
    secret: bytes
    network: str
    created_at: int
    iterations: int


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: object, what: str) -> bytes:
    if not isinstance(value, str):
        raise ValidationError(f"Invalid backup: {what} must be a base64 string")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError(f"Invalid backup: {what} is not valid base64") from None


def _mac_key(key: SymmetricKey) -> bytes:
    """Separate MAC key so the AES key never doubles as an HMAC key."""
    return crypto_utils.hmac_sha256(key, MAC_KEY_INFO)


def canonical_mac_input(envelope: dict) -> bytes:
    """Sorted-key compact JSON of every envelope field except ``mac``."""
    body = {k: v for k, v in envelope.items() if k != "mac"}
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")


def effective_iterations(requested: int | None, production: bool | None = None) -> int:
    """Iterations actually used for a backup; clamped up on production-like runtimes."""
    iterations = requested if requested and requested > 0 else PBKDF2_ITERATIONS
    if is_production_like(production) and iterations < PBKDF2_ITERATIONS:
        return PBKDF2_ITERATIONS
    return iterations


# ===================================================================
#  Export
# ===================================================================

def export_backup(
    password: str,
    secret: bytes,
    iterations: int | None,
    network: str,
    *,
    production: bool | None = None,
    created_at: int | None = None,
) -> str:
    """Encrypt *secret* under *password* and return the serialized envelope."""
    if not password:
        raise ValidationError("Backup password is required")
    if network not in NETWORKS:
        raise ValidationError(f"Unknown network {network!r}")

    used = effective_iterations(iterations, production)
    if used > MAX_ITERATIONS:
        raise ValidationError(f"Backup iterations above {MAX_ITERATIONS}")
    salt = crypto_utils.random_bytes(SALT_LENGTH)
    key = crypto_utils.derive_key(password, salt, used)
    try:
        iv, ciphertext = crypto_utils.encrypt(key, secret)
        envelope = {
            "version": BACKUP_VERSION,
            "cipher": CIPHER,
            "kdf": {"name": KDF_NAME, "hash": KDF_HASH, "iterations": used, "salt": _b64(salt)},
            "iv": _b64(iv),
            "ciphertext": _b64(ciphertext),
            "createdAt": created_at if created_at is not None else int(time.time() * 1000),
            "network": network,
            "macAlgo": MAC_ALGO,
        }
        envelope["mac"] = _b64(crypto_utils.hmac_sha256(_mac_key(key), canonical_mac_input(envelope)))
    finally:
        key.wipe()

    logger.info(f"Backup exported ({used} PBKDF2 iterations, {network})")
    return _b64(json.dumps(envelope).encode("utf-8"))


# ===================================================================
#  Import
# ===================================================================

def decode_envelope(backup: str) -> dict:
    """Parse and shape-check a serialized envelope (no crypto)."""
    if not isinstance(backup, str) or not backup.strip():
        raise ValidationError("Invalid backup: empty")
    try:
        envelope = json.loads(base64.b64decode(backup.strip(), validate=True))
    except (binascii.Error, ValueError):
        raise ValidationError("Invalid backup: not base64-encoded JSON") from None
    if not isinstance(envelope, dict):
        raise ValidationError("Invalid backup: envelope must be an object")

    missing = [f for f in _REQUIRED_FIELDS if f not in envelope]
    if missing == ["mac"]:
        raise IntegrityError("Backup integrity check failed: MAC missing")
    if missing:
        raise ValidationError(f"Invalid backup: missing {', '.join(missing)}")

    kdf = envelope["kdf"]
    if not isinstance(kdf, dict) or not {"name", "hash", "iterations", "salt"} <= kdf.keys():
        raise ValidationError("Invalid backup: malformed kdf parameters")
    iterations = kdf["iterations"]
    if not isinstance(iterations, int) or isinstance(iterations, bool) or iterations < 1:
        raise ValidationError("Invalid backup: kdf iterations must be a positive integer")
    if iterations > MAX_ITERATIONS:
        raise ValidationError(f"Invalid backup: kdf iterations above {MAX_ITERATIONS}")
    if not isinstance(envelope["createdAt"], int):
        raise ValidationError("Invalid backup: createdAt must be an integer")
    return envelope


def import_backup(backup: str, password: str) -> BackupContents:
    """
    Verify and decrypt a serialized envelope.

    Order: shape -> KDF and MAC algorithm -> MAC (``IntegrityError``) ->
    remaining fields -> decrypt (``DecryptionError``).  A wrong password
    fails the MAC check.
    """
    envelope = decode_envelope(backup)
    kdf = envelope["kdf"]

    # Only what the MAC itself depends on is checked before it.
    if kdf["name"] != KDF_NAME or kdf["hash"] != KDF_HASH:
        raise ValidationError(f"Unsupported backup KDF {kdf['name']}/{kdf['hash']}")
    if envelope["macAlgo"] != MAC_ALGO:
        raise ValidationError(f"Unsupported backup MAC algorithm {envelope['macAlgo']!r}")

    salt = _unb64(kdf["salt"], "kdf.salt")
    iv = _unb64(envelope["iv"], "iv")
    ciphertext = _unb64(envelope["ciphertext"], "ciphertext")
    mac = _unb64(envelope["mac"], "mac")

    key = crypto_utils.derive_key(password, salt, kdf["iterations"])
    try:
        if not crypto_utils.verify_hmac(_mac_key(key), canonical_mac_input(envelope), mac):
            logger.warning("Backup rejected: integrity check failed")
            raise IntegrityError("Backup integrity check failed: wrong password or tampered backup")
        if envelope["version"] != BACKUP_VERSION:
            raise ValidationError(f"Unsupported backup version {envelope['version']!r}")
        if envelope["cipher"] != CIPHER:
            raise ValidationError(f"Unsupported backup cipher {envelope['cipher']!r}")
        if envelope["network"] not in NETWORKS:
            raise ValidationError(f"Invalid backup network {envelope['network']!r}")
        secret = crypto_utils.decrypt(key, iv, ciphertext)
    finally:
        key.wipe()

    return BackupContents(
        secret=secret,
        network=envelope["network"],
        created_at=envelope["createdAt"],
        iterations=kdf["iterations"],
    )
