"""
SQLite-backed encrypted key-value store for wallet secrets.

Every value in the ``data`` partition is an AES-256-GCM record keyed by a
logical name (``mnemonic``, ``passphrase``, ``config``).  The ``meta``
partition holds the PBKDF2 salt, the passwordless key entry, the storage
metadata row and a key-check record.

Two key modes:
  - password      key = PBKDF2(password, salt, iterations)
  - passwordless  random master key kept in the OS keyring, or as a raw
                  envelope in ``meta`` when no keyring backend works

Password lifecycle calls (``set_password``, ``change_password``,
``remove_password``) decrypt and re-encrypt everything in memory first and
then commit salt, key entry, records and metadata in a single
``BEGIN IMMEDIATE`` transaction.  The in-memory key is only swapped after
the commit succeeds.

Usage:
    store = SecureStore("data/satchel.db")
    store.init("correct horse")
    store.set("mnemonic", b"abandon abandon ...")
    store.get("mnemonic")
    store.change_password("correct horse", "battery staple")
"""

from __future__ import annotations

import base64
import functools
import json
import logging
import os
import sqlite3
import threading
import time
import uuid
import warnings
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

from satchel_core import crypto_utils
from satchel_core.crypto_utils import PBKDF2_ITERATIONS, SALT_LENGTH, SymmetricKey
from satchel_core.errors import (
    ConfigurationError,
    ConflictError,
    DecryptionError,
    DegradedSecurityWarning,
    LockedError,
    UnauthorizedError,
    ValidationError,
    WalletNotFoundError,
)
from satchel_core.key_vault import (
    KeyringVault,
    KeyVault,
    KeyVaultUnavailable,
    OpaqueKey,
    RawKeyEnvelope,
    StoredKey,
    decode_stored_key,
    encode_stored_key,
)

logger = logging.getLogger("satchel_storage")

DEFAULT_DB_PATH = "data/satchel.db"

STORAGE_VERSION = 1
ENCRYPTED_RECORD_VERSION = 1

DATA_TABLE = "data"
META_TABLE = "meta"

META_SALT = "salt"
META_ENCRYPTION_KEY = "encryption-key"
META_METADATA = "metadata"
META_KEY_CHECK = "key-check"

DATA_MNEMONIC = "mnemonic"
DATA_PASSPHRASE = "passphrase"
DATA_CONFIG = "config"

KEY_CHECK_PLAINTEXT = b"satchel/key-check/v1"

ENV_ITERATIONS = "SATCHEL_PBKDF2_ITERATIONS"
ENV_RUNTIME = "SATCHEL_ENV"


# ===================================================================
#  Runtime policy
# ===================================================================

def runtime_env() -> str:
    return os.environ.get(ENV_RUNTIME, "").strip().lower()


def is_production_like(flag: bool | None = None) -> bool:
    """An explicit flag wins; otherwise ``SATCHEL_ENV=production``."""
    if flag is not None:
        return flag
    return runtime_env() == "production"


def env_iteration_override() -> int | None:
    """
    PBKDF2 iteration override from the environment.

    ``SATCHEL_ENV=test`` defaults the override to a single iteration so test
    suites stay fast.  Values below the default are ignored in production.
    """
    raw = os.environ.get(ENV_ITERATIONS)
    if raw is None and runtime_env() == "test":
        raw = "1"
    if not raw:
        return None
    try:
        parsed = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {ENV_ITERATIONS}={raw!r}")
        return None
    if parsed <= 0:
        return None
    if runtime_env() == "production" and parsed < PBKDF2_ITERATIONS:
        return None
    return parsed


def _now_ms() -> int:
    return int(time.time() * 1000)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(value: Any, what: str) -> bytes:
    if not isinstance(value, str):
        raise ValidationError(f"Invalid encrypted payload: {what} missing")
    try:
        return base64.b64decode(value, validate=True)
    except ValueError:
        raise ValidationError(f"Invalid encrypted payload: {what} is not base64") from None


# ===================================================================
#  Persisted shapes
# ===================================================================

@dataclass
class EncryptedRecord:
    iv: bytes
    ciphertext: bytes
    version: int = ENCRYPTED_RECORD_VERSION

    def to_json(self) -> str:
        return json.dumps({
            "version": self.version,
            "iv": _b64(self.iv),
            "ciphertext": _b64(self.ciphertext),
        })

    @classmethod
    def from_json(cls, raw: str) -> EncryptedRecord:
        try:
            obj = json.loads(raw)
        except ValueError:
            raise ValidationError("Invalid encrypted payload: not JSON") from None
        if not isinstance(obj, dict):
            raise ValidationError("Invalid encrypted payload: not an object")
        version = obj.get("version", ENCRYPTED_RECORD_VERSION)
        if version != ENCRYPTED_RECORD_VERSION:
            raise ValidationError(f"Unsupported encrypted payload version: {version}")
        return cls(
            iv=_unb64(obj.get("iv"), "IV"),
            ciphertext=_unb64(obj.get("ciphertext"), "ciphertext"),
            version=version,
        )


@dataclass
class StorageMetadata:
    version: int = STORAGE_VERSION
    has_password: bool = False
    has_backup: bool = False
    last_backup_at: int | None = None
    pbkdf2_iterations: int | None = None
    created_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "hasPassword": self.has_password,
            "hasBackup": self.has_backup,
            "lastBackupAt": self.last_backup_at,
            "pbkdf2Iterations": self.pbkdf2_iterations,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> StorageMetadata:
        now = _now_ms()
        return cls(
            version=d.get("version", STORAGE_VERSION),
            has_password=bool(d.get("hasPassword", False)),
            has_backup=bool(d.get("hasBackup", False)),
            last_backup_at=d.get("lastBackupAt"),
            pbkdf2_iterations=d.get("pbkdf2Iterations"),
            created_at=d.get("createdAt", now),
            updated_at=d.get("updatedAt", now),
        )


class StoreState(Enum):
    UNINITIALIZED = "uninitialized"
    PASSWORDLESS = "passwordless"
    PASSWORD = "password"
    CLOSED = "closed"


# ===================================================================
#  SQLite backend
# ===================================================================

class SQLiteBackend:
    """Two-partition key/value table pair with explicit transactions."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit; multi-row writes go through transaction().
        self._conn = sqlite3.connect(db_path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=FULL")
        self._create_tables()
        self._ensure_schema_version()
        logger.debug(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        for table in (DATA_TABLE, META_TABLE):
            c.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    key   TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise ConfigurationError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade Satchel."
            )

    # ── rows ─────────────────────────────────────────────────────

    def get(self, table: str, key: str) -> str | None:
        row = self._conn.execute(
            f"SELECT value FROM {table} WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def put(self, table: str, key: str, value: str) -> None:
        self._conn.execute(
            f"INSERT OR REPLACE INTO {table} (key, value) VALUES (?, ?)",
            (key, value),
        )

    def delete(self, table: str, key: str) -> None:
        self._conn.execute(f"DELETE FROM {table} WHERE key = ?", (key,))

    def keys(self, table: str) -> list[str]:
        rows = self._conn.execute(f"SELECT key FROM {table} ORDER BY key").fetchall()
        return [r["key"] for r in rows]

    def clear(self, table: str) -> None:
        self._conn.execute(f"DELETE FROM {table}")

    @contextmanager
    def transaction(self) -> Iterator[SQLiteBackend]:
        """All writes inside the block commit together or not at all."""
        c = self._conn
        c.execute("BEGIN IMMEDIATE")
        try:
            yield self
            c.execute("COMMIT")
        except BaseException:
            c.execute("ROLLBACK")
            raise

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


# ===================================================================
#  SecureStore
# ===================================================================

def _exclusive(method):
    """Fail fast when a mutating call overlaps another one on the same store."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if not self._guard.acquire(blocking=False):
            raise ConflictError(
                f"{method.__name__}() overlaps another mutating call on this store"
            )
        try:
            return method(self, *args, **kwargs)
        finally:
            self._guard.release()

    return wrapper


class SecureStore:
    """Encrypted key -> bytes map with a managed master key."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        *,
        pbkdf2_iterations: int | None = None,
        production: bool | None = None,
        key_vault: KeyVault | None = None,
    ):
        self.db_path = db_path
        self.pbkdf2_iterations = pbkdf2_iterations
        self.production = production
        self.key_vault: KeyVault = key_vault if key_vault is not None else KeyringVault()
        self.degraded_security = False
        self.state = StoreState.UNINITIALIZED
        self._backend: SQLiteBackend | None = None
        self._key: SymmetricKey | None = None
        self._guard = threading.Lock()

    # ── backend plumbing ─────────────────────────────────────────

    def _db(self) -> SQLiteBackend:
        if self._backend is None:
            self._backend = SQLiteBackend(self.db_path)
        return self._backend

    def _load_metadata(self) -> StorageMetadata | None:
        raw = self._db().get(META_TABLE, META_METADATA)
        if raw is None:
            return None
        return StorageMetadata.from_dict(json.loads(raw))

    def _next_metadata(self, existing: StorageMetadata | None, **updates: Any) -> StorageMetadata:
        now = _now_ms()
        meta = StorageMetadata(
            version=existing.version if existing else STORAGE_VERSION,
            has_password=existing.has_password if existing else False,
            has_backup=existing.has_backup if existing else False,
            last_backup_at=existing.last_backup_at if existing else None,
            pbkdf2_iterations=existing.pbkdf2_iterations if existing else None,
            created_at=existing.created_at if existing else now,
            updated_at=max(now, existing.updated_at) if existing else now,
        )
        for name, value in updates.items():
            setattr(meta, name, value)
        return meta

    @staticmethod
    def _put_metadata(db: SQLiteBackend, meta: StorageMetadata) -> None:
        db.put(META_TABLE, META_METADATA, json.dumps(meta.to_dict()))

    def _load_salt(self) -> bytes | None:
        raw = self._db().get(META_TABLE, META_SALT)
        if raw is None:
            return None
        return base64.b64decode(json.loads(raw))

    def _require_salt(self) -> bytes:
        salt = self._load_salt()
        if not salt:
            raise ConfigurationError("Missing salt for password-protected storage")
        return salt

    def _has_payload(self) -> bool:
        return self._db().get(DATA_TABLE, DATA_MNEMONIC) is not None

    def _require_key(self) -> SymmetricKey:
        if self._key is None:
            raise LockedError("Storage not initialized")
        return self._key

    # ── record crypto ────────────────────────────────────────────

    def _encrypt_record(self, key: SymmetricKey, plaintext: bytes) -> EncryptedRecord:
        iv, ciphertext = crypto_utils.encrypt(key, plaintext)
        return EncryptedRecord(iv=iv, ciphertext=ciphertext)

    def _decrypt_record(self, key: SymmetricKey, record: EncryptedRecord) -> bytes:
        return crypto_utils.decrypt(key, record.iv, record.ciphertext)

    def _key_check_matches(self, key: SymmetricKey) -> bool | None:
        """True/False against the stored key-check, None when there is none."""
        raw = self._db().get(META_TABLE, META_KEY_CHECK)
        if raw is None:
            return None
        try:
            plaintext = self._decrypt_record(key, EncryptedRecord.from_json(raw))
        except DecryptionError:
            return False
        return crypto_utils.timing_safe_equal(plaintext, KEY_CHECK_PLAINTEXT)

    def _decrypt_all(self, key: SymmetricKey) -> dict[str, bytearray]:
        db = self._db()
        result: dict[str, bytearray] = {}
        try:
            for name in db.keys(DATA_TABLE):
                raw = db.get(DATA_TABLE, name)
                if raw is None:
                    continue
                result[name] = bytearray(self._decrypt_record(key, EncryptedRecord.from_json(raw)))
        except BaseException:
            self._wipe_all(result)
            raise
        return result

    def _encrypt_all(self, key: SymmetricKey, plaintexts: dict[str, bytearray]) -> dict[str, EncryptedRecord]:
        return {name: self._encrypt_record(key, bytes(value)) for name, value in plaintexts.items()}

    @staticmethod
    def _wipe_all(plaintexts: dict[str, bytearray]) -> None:
        for value in plaintexts.values():
            crypto_utils.wipe(value)
        plaintexts.clear()

    # ── iteration policy ─────────────────────────────────────────

    def is_production_like(self) -> bool:
        return is_production_like(self.production)

    def resolve_iterations(self, metadata: StorageMetadata | None = None) -> int:
        """
        PBKDF2 cost for the current store.

        A count recorded in metadata is always honoured.  Otherwise the
        per-session override wins, then the environment override, then the
        default; production-like runtimes never go below the default.
        """
        if metadata is not None and metadata.pbkdf2_iterations is not None:
            return metadata.pbkdf2_iterations

        candidate = self.pbkdf2_iterations
        if candidate is None:
            candidate = env_iteration_override()
        if candidate is None:
            candidate = PBKDF2_ITERATIONS

        if self.is_production_like() and candidate < PBKDF2_ITERATIONS:
            return PBKDF2_ITERATIONS
        return candidate

    def normalize_iterations_for_new_key(self, base: int, metadata: StorageMetadata | None) -> int:
        """Floor for a freshly issued password key: never below what is already in use."""
        if metadata is None or metadata.pbkdf2_iterations is None:
            return max(base, PBKDF2_ITERATIONS) if self.is_production_like() else base
        floor = PBKDF2_ITERATIONS if self.is_production_like() else metadata.pbkdf2_iterations
        return max(base, floor)

    # ── passwordless key handling ────────────────────────────────

    def _issue_passwordless_key(self) -> tuple[SymmetricKey, StoredKey]:
        """Generate a master key and its stored form; nothing is persisted yet."""
        key = SymmetricKey.generate()
        try:
            handle = self.key_vault.store(f"master-key-{uuid.uuid4().hex}", key.export_raw())
            return key, handle
        except KeyVaultUnavailable as exc:
            logger.debug(f"Keyring unavailable for a new passwordless key: {exc}")
            return key, RawKeyEnvelope(key_bytes=key.export_raw())

    def _adopt_issued_key(self, stored: StoredKey) -> None:
        """Record the security level of a freshly committed passwordless key."""
        if isinstance(stored, OpaqueKey):
            self.degraded_security = False
            return
        logger.warning(
            "Passwordless key cannot be stored in the keyring; "
            "falling back to a raw key envelope in the database"
        )
        warnings.warn(
            "Passwordless master key is stored as raw bytes in the database. "
            "Anyone who can read the database file can decrypt the wallet; "
            "set a password to protect it.",
            DegradedSecurityWarning,
            stacklevel=4,
        )
        self.degraded_security = True

    def _discard_handle(self, stored: StoredKey | None) -> None:
        if isinstance(stored, OpaqueKey):
            self.key_vault.delete(stored)

    def _load_stored_key(self) -> tuple[StoredKey, bool] | None:
        raw = self._db().get(META_TABLE, META_ENCRYPTION_KEY)
        if raw is None:
            return None
        return decode_stored_key(json.loads(raw))

    def _materialize(self, stored: StoredKey) -> SymmetricKey:
        if isinstance(stored, OpaqueKey):
            return SymmetricKey(self.key_vault.load(stored))
        self.degraded_security = True
        return SymmetricKey(stored.key_bytes)

    def _migrate_raw_key(self, key: SymmetricKey, is_legacy: bool) -> None:
        """Move a raw envelope into the keyring when possible; best-effort."""
        db = self._db()
        try:
            handle = self.key_vault.store(f"master-key-{uuid.uuid4().hex}", key.export_raw())
        except KeyVaultUnavailable as exc:
            logger.debug(f"Raw key envelope kept, keyring unavailable: {exc}")
            if is_legacy:
                db.put(META_TABLE, META_ENCRYPTION_KEY,
                       json.dumps(encode_stored_key(RawKeyEnvelope(key_bytes=key.export_raw()))))
            return
        try:
            db.put(META_TABLE, META_ENCRYPTION_KEY, json.dumps(encode_stored_key(handle)))
        except sqlite3.Error as exc:
            logger.warning(f"Could not persist migrated keyring handle: {exc}")
            self.key_vault.delete(handle)
            return
        self.degraded_security = False
        logger.info("Migrated passwordless key from raw envelope to keyring")

    # ── lifecycle ────────────────────────────────────────────────

    @_exclusive
    def init(self, password: str | None = None, *, read_only: bool = False) -> None:
        """
        Open the store and load the master key.

        With a password the key is derived from the stored (or a new) salt.
        Without one the passwordless key is loaded, or created on first use.
        ``read_only`` never writes anything and fails with
        ``WalletNotFoundError`` on an empty store.
        """
        metadata = self._load_metadata()
        has_payload = self._has_payload()

        if read_only and metadata is None and not has_payload:
            raise WalletNotFoundError("No wallet found. Create or restore a wallet first.")

        if password:
            self._init_with_password(password, metadata, has_payload, read_only)
        else:
            self._init_passwordless(metadata, has_payload, read_only)
        logger.info(
            f"Storage unlocked ({self.state.value}{', read-only' if read_only else ''}): {self.db_path}"
        )

    def _init_with_password(
        self, password: str, metadata: StorageMetadata | None, has_payload: bool, read_only: bool,
    ) -> None:
        if has_payload and metadata is not None and not metadata.has_password:
            raise ConflictError("Wallet created without password. Unlock, then call set_password().")

        new_salt = False
        if metadata is not None and metadata.has_password:
            salt = self._require_salt()
        else:
            salt = self._load_salt()
            if not salt:
                salt, new_salt = crypto_utils.random_bytes(SALT_LENGTH), True

        iterations = self.resolve_iterations(metadata)
        key = crypto_utils.derive_key(password, salt, iterations)
        self._accept_key(key, has_payload)

        stale = None
        if not read_only:
            if not has_payload:
                stale = self._load_stored_key()
            with self._db().transaction() as tx:
                if new_salt:
                    tx.put(META_TABLE, META_SALT, json.dumps(_b64(salt)))
                self._put_metadata(tx, self._next_metadata(
                    metadata, has_password=True, pbkdf2_iterations=iterations,
                ))
                if not has_payload:
                    tx.delete(META_TABLE, META_ENCRYPTION_KEY)
                    tx.put(META_TABLE, META_KEY_CHECK, self._encrypt_record(key, KEY_CHECK_PLAINTEXT).to_json())

        self._key = key
        self.state = StoreState.PASSWORD
        if stale is not None:
            self._discard_handle(stale[0])

    def _init_passwordless(
        self, metadata: StorageMetadata | None, has_payload: bool, read_only: bool,
    ) -> None:
        if metadata is not None and metadata.has_password and has_payload:
            raise UnauthorizedError("Password required to unlock storage")

        loaded = self._load_stored_key()
        created: StoredKey | None = None
        is_legacy = False
        if loaded is not None:
            stored, is_legacy = loaded
            key = self._materialize(stored)
        elif has_payload:
            # Never rotate the key under existing ciphertext.
            raise ConfigurationError(
                "Missing encryption key for passwordless wallet; storage may be corrupted."
            )
        elif read_only:
            raise WalletNotFoundError("No wallet found. Create or restore a wallet first.")
        else:
            key, created = self._issue_passwordless_key()
            stored = created

        try:
            self._accept_key(key, has_payload)
            if not read_only:
                with self._db().transaction() as tx:
                    if metadata is not None and metadata.has_password:
                        # Stale password metadata without a wallet: drop the unused salt.
                        tx.delete(META_TABLE, META_SALT)
                    if created is not None:
                        tx.put(META_TABLE, META_ENCRYPTION_KEY, json.dumps(encode_stored_key(created)))
                    self._put_metadata(tx, self._next_metadata(
                        metadata, has_password=False, pbkdf2_iterations=None,
                    ))
                    if not has_payload:
                        tx.put(META_TABLE, META_KEY_CHECK, self._encrypt_record(key, KEY_CHECK_PLAINTEXT).to_json())
        except BaseException:
            self._discard_handle(created)
            key.wipe()
            raise

        if created is not None:
            self._adopt_issued_key(created)
        self._key = key
        self.state = StoreState.PASSWORDLESS

        if not read_only and isinstance(stored, RawKeyEnvelope) and created is None:
            self._migrate_raw_key(key, is_legacy)

    def _accept_key(self, key: SymmetricKey, has_payload: bool) -> None:
        """Verify *key* against the key-check record of an existing wallet."""
        if has_payload and self._key_check_matches(key) is False:
            key.wipe()
            raise DecryptionError()

    def exists(self) -> bool:
        """True only when the wallet payload (mnemonic) is present."""
        return self._has_payload()

    def is_unlocked(self) -> bool:
        return self._key is not None

    # ── records ──────────────────────────────────────────────────

    def get(self, key: str) -> bytes | None:
        """Decrypt the value stored under *key*, or None when absent."""
        master = self._require_key()
        raw = self._db().get(DATA_TABLE, key)
        if raw is None:
            return None
        return self._decrypt_record(master, EncryptedRecord.from_json(raw))

    @_exclusive
    def set(self, key: str, value: bytes) -> None:
        master = self._require_key()
        record = self._encrypt_record(master, bytes(value))
        metadata = self._load_metadata()
        with self._db().transaction() as tx:
            tx.put(DATA_TABLE, key, record.to_json())
            self._put_metadata(tx, self._next_metadata(metadata))

    @_exclusive
    def delete(self, key: str) -> None:
        metadata = self._load_metadata()
        with self._db().transaction() as tx:
            tx.delete(DATA_TABLE, key)
            self._put_metadata(tx, self._next_metadata(metadata))

    # ── metadata accessors ───────────────────────────────────────

    def get_metadata(self) -> StorageMetadata | None:
        return self._load_metadata()

    def has_password(self) -> bool:
        metadata = self._load_metadata()
        return metadata.has_password if metadata else False

    def has_backup(self) -> bool:
        metadata = self._load_metadata()
        return metadata.has_backup if metadata else False

    def get_pbkdf2_iterations(self) -> int | None:
        metadata = self._load_metadata()
        return metadata.pbkdf2_iterations if metadata else None

    @_exclusive
    def mark_backup_completed(self, timestamp: int | None = None) -> None:
        metadata = self._load_metadata()
        self._put_metadata(self._db(), self._next_metadata(
            metadata, has_backup=True,
            last_backup_at=timestamp if timestamp is not None else _now_ms(),
        ))

    # ── password lifecycle ───────────────────────────────────────

    @_exclusive
    def set_password(self, password: str) -> None:
        """Move a passwordless store to a password-derived key."""
        old_key = self._require_key()
        if self.state is StoreState.PASSWORD:
            raise ConflictError("Storage already has a password")
        if not password:
            raise ValidationError("Password must not be empty")

        metadata = self._load_metadata()
        previous = self._load_stored_key()
        salt = crypto_utils.random_bytes(SALT_LENGTH)
        iterations = self.normalize_iterations_for_new_key(self.resolve_iterations(metadata), metadata)

        plaintexts = self._decrypt_all(old_key)
        new_key = None
        try:
            new_key = crypto_utils.derive_key(password, salt, iterations)
            records = self._encrypt_all(new_key, plaintexts)
            check = self._encrypt_record(new_key, KEY_CHECK_PLAINTEXT)

            with self._db().transaction() as tx:
                tx.clear(DATA_TABLE)
                for name, record in records.items():
                    tx.put(DATA_TABLE, name, record.to_json())
                tx.put(META_TABLE, META_SALT, json.dumps(_b64(salt)))
                tx.delete(META_TABLE, META_ENCRYPTION_KEY)
                tx.put(META_TABLE, META_KEY_CHECK, check.to_json())
                self._put_metadata(tx, self._next_metadata(
                    metadata, has_password=True, pbkdf2_iterations=iterations,
                ))
        except BaseException:
            if new_key is not None:
                new_key.wipe()
            raise
        finally:
            self._wipe_all(plaintexts)

        old_key.wipe()
        self._key = new_key
        self.state = StoreState.PASSWORD
        self.degraded_security = False
        if previous is not None:
            self._discard_handle(previous[0])
        logger.info(f"Password set ({iterations} PBKDF2 iterations)")

    def _unlock_with(self, password: str, metadata: StorageMetadata | None) -> tuple[SymmetricKey, dict[str, bytearray]]:
        """Derive the current key from *password* and decrypt every record with it."""
        salt = self._require_salt()
        key = crypto_utils.derive_key(password, salt, self.resolve_iterations(metadata))
        try:
            if self._key_check_matches(key) is False:
                raise DecryptionError("Invalid password")
            try:
                plaintexts = self._decrypt_all(key)
            except DecryptionError:
                raise DecryptionError("Invalid password") from None
        except BaseException:
            key.wipe()
            raise
        return key, plaintexts

    def _require_password_mode(self) -> None:
        self._require_key()
        if self.state is not StoreState.PASSWORD:
            raise ConflictError("Storage does not have a password")

    @_exclusive
    def change_password(self, old_password: str, new_password: str, *, iterations: int | None = None) -> None:
        """
        Re-key under *new_password*.

        The new PBKDF2 cost is ``max(iterations, current)``; it is never
        lowered.
        """
        self._require_password_mode()
        if not new_password:
            raise ValidationError("Password must not be empty")

        metadata = self._load_metadata()
        current_iterations = self.resolve_iterations(metadata)
        old_key, plaintexts = self._unlock_with(old_password, metadata)

        candidate = max(iterations, current_iterations) if iterations else current_iterations
        new_iterations = self.normalize_iterations_for_new_key(candidate, metadata)
        new_salt = crypto_utils.random_bytes(SALT_LENGTH)

        new_key = None
        try:
            new_key = crypto_utils.derive_key(new_password, new_salt, new_iterations)
            records = self._encrypt_all(new_key, plaintexts)
            check = self._encrypt_record(new_key, KEY_CHECK_PLAINTEXT)

            with self._db().transaction() as tx:
                tx.clear(DATA_TABLE)
                for name, record in records.items():
                    tx.put(DATA_TABLE, name, record.to_json())
                tx.put(META_TABLE, META_SALT, json.dumps(_b64(new_salt)))
                tx.delete(META_TABLE, META_ENCRYPTION_KEY)
                tx.put(META_TABLE, META_KEY_CHECK, check.to_json())
                self._put_metadata(tx, self._next_metadata(
                    metadata, has_password=True, pbkdf2_iterations=new_iterations,
                ))
        except BaseException:
            if new_key is not None:
                new_key.wipe()
            raise
        finally:
            old_key.wipe()
            self._wipe_all(plaintexts)

        self._key.wipe()
        self._key = new_key
        logger.info(f"Password changed ({current_iterations} -> {new_iterations} PBKDF2 iterations)")

    @_exclusive
    def remove_password(self, current_password: str) -> None:
        """Return to passwordless mode under a freshly generated master key."""
        self._require_password_mode()

        metadata = self._load_metadata()
        old_key, plaintexts = self._unlock_with(current_password, metadata)

        new_key = None
        created: StoredKey | None = None
        try:
            new_key, created = self._issue_passwordless_key()
            records = self._encrypt_all(new_key, plaintexts)
            check = self._encrypt_record(new_key, KEY_CHECK_PLAINTEXT)

            with self._db().transaction() as tx:
                tx.clear(DATA_TABLE)
                for name, record in records.items():
                    tx.put(DATA_TABLE, name, record.to_json())
                tx.put(META_TABLE, META_ENCRYPTION_KEY, json.dumps(encode_stored_key(created)))
                tx.delete(META_TABLE, META_SALT)
                tx.put(META_TABLE, META_KEY_CHECK, check.to_json())
                self._put_metadata(tx, self._next_metadata(
                    metadata, has_password=False, has_backup=False,
                    last_backup_at=None, pbkdf2_iterations=None,
                ))
        except BaseException:
            self._discard_handle(created)
            if new_key is not None:
                new_key.wipe()
            raise
        finally:
            old_key.wipe()
            self._wipe_all(plaintexts)

        self._adopt_issued_key(created)
        self._key.wipe()
        self._key = new_key
        self.state = StoreState.PASSWORDLESS
        logger.info("Password removed; storage is passwordless")

    # ── teardown ─────────────────────────────────────────────────

    @_exclusive
    def clear(self) -> None:
        """Delete every record and key entry and forget the store identity."""
        db = self._db()
        try:
            loaded = self._load_stored_key()
        except ValidationError:
            loaded = None
        with db.transaction() as tx:
            tx.clear(DATA_TABLE)
            tx.clear(META_TABLE)
        if loaded is not None:
            self._discard_handle(loaded[0])
        self._drop_key()
        self.degraded_security = False
        self.state = StoreState.UNINITIALIZED
        logger.info(f"Storage cleared: {self.db_path}")

    def _drop_key(self) -> None:
        if self._key is not None:
            self._key.wipe()
            self._key = None

    def close(self) -> None:
        self._drop_key()
        if self._backend is not None:
            self._backend.close()
            self._backend = None
        self.state = StoreState.CLOSED

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
