"""
Cryptographic primitives shared by the store, the key manager and backups.

  - PBKDF2-HMAC-SHA256 key derivation (600 000 iterations by default)
  - AES-256-GCM with a fresh 96-bit nonce per call, tag appended
  - HMAC-SHA256 with constant-time verification
  - Bitcoin hash helpers (sha256d, hash160, BIP-340 tagged hashes)

Decryption failures collapse into a single ``DecryptionError`` so that a
wrong password and a corrupted record look the same to the caller.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

from Crypto.Cipher import AES
from Crypto.Hash import RIPEMD160

from satchel_core.errors import DecryptionError, ValidationError

PBKDF2_ITERATIONS = 600_000
PBKDF2_HASH = "sha256"
SALT_LENGTH = 16
KEY_LENGTH = 32        # AES-256
IV_LENGTH = 12         # 96-bit GCM nonce
TAG_LENGTH = 16


class SymmetricKey:
    """
    AES-256 key held in a private mutable buffer.

    The raw bytes are only handed to the cipher; ``repr`` never shows them
    and ``wipe()`` overwrites the buffer in place.
    """

    __slots__ = ("_material",)

    def __init__(self, material: bytes | bytearray):
        if len(material) != KEY_LENGTH:
            raise ValidationError(f"AES key must be {KEY_LENGTH} bytes, got {len(material)}")
        self._material = bytearray(material)

    @classmethod
    def generate(cls) -> SymmetricKey:
        return cls(secrets.token_bytes(KEY_LENGTH))

    @property
    def wiped(self) -> bool:
        return not any(self._material)

    def _bytes(self) -> bytes:
        if self.wiped:
            raise ValidationError("Key material has been wiped")
        return bytes(self._material)

    def export_raw(self) -> bytes:
        """Raw key bytes, for the passwordless envelope and vault only."""
        return self._bytes()

    def wipe(self) -> None:
        wipe(self._material)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SymmetricKey):
            return NotImplemented
        return hmac.compare_digest(bytes(self._material), bytes(other._material))

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return "SymmetricKey(<redacted>)"


# ===================================================================
#  Random / wiping
# ===================================================================

def random_bytes(length: int) -> bytes:
    return secrets.token_bytes(length)


def wipe(buf: bytearray | memoryview | None) -> None:
    """Best-effort zeroization of a mutable buffer."""
    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0


# ===================================================================
#  Key derivation
# ===================================================================

def derive_key(password: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> SymmetricKey:
    """PBKDF2-HMAC-SHA256(password, salt, iterations) -> AES-256 key."""
    if not isinstance(password, str):
        raise ValidationError("Password must be a string")
    if iterations < 1:
        raise ValidationError(f"PBKDF2 iterations must be positive, got {iterations}")
    if not salt:
        raise ValidationError("PBKDF2 salt is empty")
    raw = hashlib.pbkdf2_hmac(
        PBKDF2_HASH, password.encode("utf-8"), bytes(salt), iterations, dklen=KEY_LENGTH,
    )
    return SymmetricKey(raw)


# ===================================================================
#  AES-256-GCM
# ===================================================================

def encrypt(key: SymmetricKey, plaintext: bytes) -> tuple[bytes, bytes]:
    """Encrypt *plaintext*. Returns ``(iv, ciphertext || tag)``."""
    iv = secrets.token_bytes(IV_LENGTH)
    cipher = AES.new(key._bytes(), AES.MODE_GCM, nonce=iv)
    ciphertext, tag = cipher.encrypt_and_digest(bytes(plaintext))
    return iv, ciphertext + tag


def decrypt(key: SymmetricKey, iv: bytes, ciphertext: bytes) -> bytes:
    """Decrypt and authenticate. Raises ``DecryptionError`` on any tag failure."""
    if iv is None or len(iv) != IV_LENGTH:
        raise ValidationError("Invalid encrypted payload: IV missing or wrong length")
    if not ciphertext:
        raise ValidationError("Invalid encrypted payload: ciphertext missing")
    if len(ciphertext) < TAG_LENGTH:
        raise DecryptionError()
    body, tag = ciphertext[:-TAG_LENGTH], ciphertext[-TAG_LENGTH:]
    cipher = AES.new(key._bytes(), AES.MODE_GCM, nonce=bytes(iv))
    try:
        return cipher.decrypt_and_verify(body, tag)
    except ValueError:
        raise DecryptionError() from None


# ===================================================================
#  HMAC
# ===================================================================

def hmac_sha256(key: SymmetricKey | bytes, payload: bytes) -> bytes:
    raw = key._bytes() if isinstance(key, SymmetricKey) else bytes(key)
    return hmac.new(raw, payload, hashlib.sha256).digest()


def timing_safe_equal(a: bytes, b: bytes) -> bool:
    return hmac.compare_digest(bytes(a), bytes(b))


def verify_hmac(key: SymmetricKey | bytes, payload: bytes, mac: bytes) -> bool:
    return timing_safe_equal(hmac_sha256(key, payload), mac)


# ===================================================================
#  Hashes
# ===================================================================

def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256d(data: bytes) -> bytes:
    return sha256(sha256(data))


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))."""
    return RIPEMD160.new(sha256(data)).digest()


def tagged_hash(tag: str, data: bytes) -> bytes:
    """BIP-340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || data)."""
    tag_digest = sha256(tag.encode("utf-8"))
    return sha256(tag_digest + tag_digest + data)
