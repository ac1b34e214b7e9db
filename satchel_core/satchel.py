"""
Satchel wallet orchestrator.

Wires a ``SecureStore`` (encrypted persistence) to an ``HDKeyManager``
(live keys) and adds the wallet-level lifecycle: create, restore, unlock,
lock, destroy, password management, backups, network selection and
change events.

The store holds three records:
  - ``mnemonic``    the BIP-39 phrase (its presence means "a wallet exists")
  - ``passphrase``  the optional BIP-39 passphrase
  - ``config``      JSON ``{"network": ..., "customPaths": {...}}``

Usage:
    wallet = Satchel.from_config(load_config("satchel.toml"))
    mnemonic = wallet.create("hunter2")["mnemonic"]
    wallet.get_addresses(["payment", "ordinals"])
    wallet.lock()
    wallet.unlock("hunter2")
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Iterable

from satchel_core import backup as backup_codec
from satchel_core.config import SatchelConfig
from satchel_core.derivation import ORDINALS, PAYMENT, check_network
from satchel_core.errors import (
    ConflictError,
    InvalidMnemonicError,
    LockedError,
    ValidationError,
    WalletNotFoundError,
)
from satchel_core.key_vault import KeyVault
from satchel_core.storage import DATA_CONFIG, DATA_MNEMONIC, DATA_PASSPHRASE, SecureStore
from satchel_core.wallet import AddressRecord, HDKeyManager, SignInput

logger = logging.getLogger("satchel")

EVENT_LOCK = "lock"
EVENT_UNLOCK = "unlock"
EVENT_NETWORK_CHANGED = "networkChanged"
EVENT_ACCOUNTS_CHANGED = "accountsChanged"
EVENTS = (EVENT_LOCK, EVENT_UNLOCK, EVENT_NETWORK_CHANGED, EVENT_ACCOUNTS_CHANGED)

Handler = Callable[..., Any]


class Satchel:
    """A single wallet backed by one store file."""

    def __init__(self, store: SecureStore | None = None, key_manager: HDKeyManager | None = None):
        self.store = store if store is not None else SecureStore()
        self.keys = key_manager if key_manager is not None else HDKeyManager()
        self._handlers: dict[str, list[Handler]] = {event: [] for event in EVENTS}

    @classmethod
    def from_config(cls, cfg: SatchelConfig, *, key_vault: KeyVault | None = None) -> Satchel:
        store = SecureStore(
            cfg.storage.path,
            pbkdf2_iterations=cfg.kdf.iterations,
            production=cfg.kdf.production,
            key_vault=key_vault,
        )
        keys = HDKeyManager(cfg.wallet.network)
        keys.set_address_lookup_config(cfg.wallet.receive_window, cfg.wallet.change_window)
        return cls(store, keys)

    # ── events ───────────────────────────────────────────────────

    def on(self, event: str, handler: Handler) -> None:
        if event not in self._handlers:
            raise ValidationError(f"Unknown event {event!r}; expected one of {', '.join(EVENTS)}")
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def _emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers[event]):
            try:
                handler(*args)
            except Exception:
                logger.warning(f"Handler for {event!r} raised", exc_info=True)

    # ── lifecycle ────────────────────────────────────────────────

    def exists(self) -> bool:
        return self.store.exists()

    def is_unlocked(self) -> bool:
        return self.keys.is_initialized() and self.store.is_unlocked()

    def create(self, password: str | None = None, strength: int = 128, *, overwrite: bool = False) -> dict:
        """Generate a new mnemonic, persist it and unlock.  Returns ``{"mnemonic": ...}``."""
        mnemonic = HDKeyManager.generate_mnemonic(strength)
        self._establish(mnemonic, password, None, None, overwrite)
        logger.info(f"Wallet created ({'password' if password else 'passwordless'})")
        return {"mnemonic": mnemonic}

    def restore(
        self,
        mnemonic: str,
        password: str | None = None,
        passphrase: str | None = None,
        custom_paths: dict[str, str] | None = None,
        *,
        overwrite: bool = False,
    ) -> None:
        self._establish(mnemonic, password, passphrase, custom_paths, overwrite)
        logger.info("Wallet restored from mnemonic")

    def _establish(
        self,
        mnemonic: str,
        password: str | None,
        passphrase: str | None,
        custom_paths: dict[str, str] | None,
        overwrite: bool,
    ) -> None:
        """Unlock *mnemonic* in the key manager and write it to a fresh store."""
        if not HDKeyManager.validate_mnemonic(mnemonic):
            raise InvalidMnemonicError("Invalid mnemonic")
        paths = HDKeyManager.check_custom_paths(custom_paths)
        if self.store.exists():
            if not overwrite:
                raise ConflictError("A wallet already exists; destroy it or pass overwrite=True")
            self.destroy()

        keys = self.keys
        keys.set_custom_paths(paths)
        keys.from_mnemonic(mnemonic, passphrase)
        try:
            if self.store.is_unlocked():
                self.store.close()
            self.store.init(password)
            if passphrase:
                self.store.set(DATA_PASSPHRASE, passphrase.encode("utf-8"))
            self.store.set(DATA_CONFIG, self._config_record())
            # Written last: its presence is what makes the wallet exist.
            self.store.set(DATA_MNEMONIC, keys.export_mnemonic().encode("utf-8"))
        except BaseException:
            keys.lock()
            raise
        self._emit(EVENT_UNLOCK)
        self._emit(EVENT_ACCOUNTS_CHANGED, self._account_dicts())

    def unlock(self, password: str | None = None) -> None:
        """Open the existing wallet.  ``WalletNotFoundError`` when there is none."""
        self.store.init(password, read_only=True)
        try:
            mnemonic = self.store.get(DATA_MNEMONIC)
            if mnemonic is None:
                raise WalletNotFoundError("No wallet found. Create or restore a wallet first.")
            passphrase = self.store.get(DATA_PASSPHRASE)
            config = self._load_config_record()
            self.keys.set_network(config.get("network", self.keys.get_network()))
            self.keys.set_custom_paths(config.get("customPaths"))
            self.keys.from_mnemonic(
                mnemonic.decode("utf-8"),
                passphrase.decode("utf-8") if passphrase else None,
            )
        except BaseException:
            self.store.close()
            raise
        logger.info("Wallet unlocked")
        self._emit(EVENT_UNLOCK)

    def lock(self) -> None:
        self.keys.lock()
        self.store.close()
        self._emit(EVENT_LOCK)

    def destroy(self) -> None:
        """Delete every persisted record and lock."""
        self.store.clear()
        self.keys.lock()
        self.keys.set_custom_paths(None)
        self.store.close()
        logger.info("Wallet destroyed")
        self._emit(EVENT_LOCK)

    def _require_unlocked(self) -> None:
        if not self.is_unlocked():
            raise LockedError("Wallet is locked")

    # ── config record ────────────────────────────────────────────

    def _config_record(self) -> bytes:
        return json.dumps({
            "network": self.keys.get_network(),
            "customPaths": self.keys.get_custom_paths(),
        }).encode("utf-8")

    def _load_config_record(self) -> dict:
        raw = self.store.get(DATA_CONFIG)
        if raw is None:
            return {}
        try:
            config = json.loads(raw)
        except ValueError:
            raise ValidationError("Stored wallet config is not valid JSON") from None
        if not isinstance(config, dict):
            raise ValidationError("Stored wallet config must be an object")
        return config

    # ── passwords ────────────────────────────────────────────────

    def set_password(self, password: str) -> None:
        self._require_unlocked()
        self.store.set_password(password)

    def change_password(self, old_password: str, new_password: str, *, iterations: int | None = None) -> None:
        self._require_unlocked()
        self.store.change_password(old_password, new_password, iterations=iterations)

    def remove_password(self, current_password: str) -> None:
        self._require_unlocked()
        self.store.remove_password(current_password)

    def has_password(self) -> bool:
        return self.store.has_password()

    def has_backup(self) -> bool:
        return self.store.has_backup()

    # ── network ──────────────────────────────────────────────────

    def get_network(self) -> str:
        return self.keys.get_network()

    def set_network(self, network: str) -> None:
        check_network(network)
        if network == self.keys.get_network():
            return
        self.keys.set_network(network)
        if self.is_unlocked():
            self.store.set(DATA_CONFIG, self._config_record())
        self._emit(EVENT_NETWORK_CHANGED, network)
        if self.is_unlocked():
            self._emit(EVENT_ACCOUNTS_CHANGED, self._account_dicts())

    def set_address_lookup_config(self, receive_window: int | None = None,
                                  change_window: int | None = None) -> None:
        self.keys.set_address_lookup_config(receive_window, change_window)

    # ── keys ─────────────────────────────────────────────────────

    def get_addresses(self, purposes: Iterable[str]) -> list[AddressRecord]:
        return self.keys.get_addresses(purposes)

    def _account_dicts(self) -> list[dict]:
        return [r.to_dict() for r in self.keys.get_addresses([PAYMENT, ORDINALS])]

    def sign_message(self, message: str, address: str, protocol: str | None = None) -> str:
        return self.keys.sign_message(message, address, protocol)

    def sign_psbt(self, psbt_base64: str, inputs: Iterable[SignInput | dict], *, broadcast: bool = False) -> str:
        """Sign and return the PSBT.  Nothing is ever broadcast."""
        if broadcast:
            logger.warning("sign_psbt: broadcast was requested but is not supported; returning the PSBT")
        return self.keys.sign_psbt(psbt_base64, inputs)

    def export_mnemonic(self) -> str:
        return self.keys.export_mnemonic()

    # ── backups ──────────────────────────────────────────────────

    def export_backup(self, backup_password: str) -> str:
        """Serialized backup of the mnemonic, passphrase and custom paths."""
        self._require_unlocked()
        payload = json.dumps({
            "mnemonic": self.keys.export_mnemonic(),
            "passphrase": self.keys.export_passphrase() or None,
            "customPaths": self.keys.get_custom_paths(),
        }).encode("utf-8")
        iterations = self.store.get_pbkdf2_iterations() or self.store.resolve_iterations()
        envelope = backup_codec.export_backup(
            backup_password, payload, iterations, self.keys.get_network(),
            production=self.store.production,
        )
        self.store.mark_backup_completed()
        return envelope

    def import_backup(
        self,
        backup: str,
        backup_password: str,
        wallet_password: str | None = None,
        *,
        overwrite: bool = False,
    ) -> None:
        """Verify *backup* and restore it as this wallet."""
        contents = backup_codec.import_backup(backup, backup_password)
        try:
            payload = json.loads(contents.secret)
        except ValueError:
            raise ValidationError("Backup payload is not valid JSON") from None
        if not isinstance(payload, dict) or not isinstance(payload.get("mnemonic"), str):
            raise ValidationError("Backup payload does not contain a mnemonic")

        if self.store.exists() and not overwrite:
            raise ConflictError("A wallet already exists; pass overwrite=True to replace it")

        self.keys.set_network(contents.network)
        self._establish(
            payload["mnemonic"],
            wallet_password,
            payload.get("passphrase"),
            payload.get("customPaths"),
            overwrite,
        )
        self.store.mark_backup_completed()
        logger.info(f"Wallet imported from backup ({contents.network})")
