"""
Password lifecycle tests for SecureStore.

Covers:
  - set_password: passwordless -> password
  - change_password: re-keying, iteration floor, wrong old password
  - remove_password: password -> passwordless, backup flag reset
  - Atomicity: a failure while re-encrypting leaves the old credential
    working and the persisted state untouched
"""

from __future__ import annotations

import pytest

from satchel_core.errors import ConflictError, DecryptionError, UnauthorizedError, ValidationError
from satchel_core.storage import DATA_MNEMONIC, StoreState

MNEMONIC = b"abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"


def _fail_encryption(monkeypatch, store, after=0):
    """Make the store's record encryption fail after *after* successful calls."""
    real = store._encrypt_record
    calls = {"n": 0}

    def flaky(key, plaintext):
        calls["n"] += 1
        if calls["n"] > after:
            raise RuntimeError("simulated crypto failure")
        return real(key, plaintext)

    monkeypatch.setattr(store, "_encrypt_record", flaky)


@pytest.fixture
def passwordless(open_store):
    s = open_store()
    s.init()
    s.set(DATA_MNEMONIC, MNEMONIC)
    s.set("config", b'{"network": "mainnet"}')
    return s


@pytest.fixture
def protected(open_store):
    s = open_store()
    s.init("old-pw")
    s.set(DATA_MNEMONIC, MNEMONIC)
    s.set("config", b'{"network": "mainnet"}')
    return s


# ═══════════════════════════════════════════════════════════════════
#  set_password
# ═══════════════════════════════════════════════════════════════════

class TestSetPassword:
    def test_switches_mode(self, passwordless, open_store):
        passwordless.set_password("new-pw")
        assert passwordless.state is StoreState.PASSWORD
        assert passwordless.has_password() is True
        assert passwordless.get(DATA_MNEMONIC) == MNEMONIC
        passwordless.close()

        reopened = open_store()
        reopened.init("new-pw")
        assert reopened.get(DATA_MNEMONIC) == MNEMONIC
        assert reopened.get("config") == b'{"network": "mainnet"}'

    def test_passwordless_unlock_refused_afterwards(self, passwordless, open_store):
        passwordless.set_password("new-pw")
        passwordless.close()
        with pytest.raises(UnauthorizedError):
            open_store().init()

    def test_keyring_handle_discarded(self, passwordless, key_vault):
        assert len(key_vault._keys) == 1
        passwordless.set_password("new-pw")
        assert len(key_vault._keys) == 0

    def test_already_protected(self, protected):
        with pytest.raises(ConflictError):
            protected.set_password("other")

    def test_empty_password(self, passwordless):
        with pytest.raises(ValidationError):
            passwordless.set_password("")

    def test_failure_keeps_passwordless(self, passwordless, open_store, monkeypatch, key_vault):
        _fail_encryption(monkeypatch, passwordless, after=1)
        with pytest.raises(RuntimeError):
            passwordless.set_password("new-pw")

        assert passwordless.state is StoreState.PASSWORDLESS
        assert passwordless.has_password() is False
        assert passwordless.get(DATA_MNEMONIC) == MNEMONIC
        assert len(key_vault._keys) == 1
        passwordless.close()

        reopened = open_store()
        reopened.init()
        assert reopened.get(DATA_MNEMONIC) == MNEMONIC


# ═══════════════════════════════════════════════════════════════════
#  change_password
# ═══════════════════════════════════════════════════════════════════

class TestChangePassword:
    def test_rekeys(self, protected, open_store):
        protected.change_password("old-pw", "new-pw")
        assert protected.get(DATA_MNEMONIC) == MNEMONIC
        protected.close()

        with pytest.raises(DecryptionError):
            open_store().init("old-pw")
        fresh = open_store()
        fresh.init("new-pw")
        assert fresh.get("config") == b'{"network": "mainnet"}'

    def test_wrong_old_password(self, protected):
        with pytest.raises(DecryptionError, match="Invalid password"):
            protected.change_password("nope", "new-pw")
        assert protected.get(DATA_MNEMONIC) == MNEMONIC

    def test_empty_new_password(self, protected):
        with pytest.raises(ValidationError):
            protected.change_password("old-pw", "")

    def test_requires_password_mode(self, passwordless):
        with pytest.raises(ConflictError):
            passwordless.change_password("a", "b")

    def test_iterations_never_lowered(self, open_store):
        s = open_store(pbkdf2_iterations=4)
        s.init("pw")
        s.set(DATA_MNEMONIC, MNEMONIC)

        s.change_password("pw", "pw2", iterations=2)
        assert s.get_pbkdf2_iterations() == 4

        s.change_password("pw2", "pw3", iterations=8)
        assert s.get_pbkdf2_iterations() == 8
        s.close()

        reopened = open_store()
        reopened.init("pw3")
        assert reopened.get(DATA_MNEMONIC) == MNEMONIC

    def test_salt_rotates(self, protected):
        before = protected._load_salt()
        protected.change_password("old-pw", "new-pw")
        assert protected._load_salt() != before

    def test_failure_keeps_old_password(self, protected, open_store, monkeypatch):
        _fail_encryption(monkeypatch, protected, after=1)
        with pytest.raises(RuntimeError):
            protected.change_password("old-pw", "new-pw")

        # In-memory key is untouched
        assert protected.get(DATA_MNEMONIC) == MNEMONIC
        protected.close()

        with pytest.raises(DecryptionError):
            open_store().init("new-pw")
        reopened = open_store()
        reopened.init("old-pw")
        assert reopened.get(DATA_MNEMONIC) == MNEMONIC
        assert reopened.get("config") == b'{"network": "mainnet"}'


# ═══════════════════════════════════════════════════════════════════
#  remove_password
# ═══════════════════════════════════════════════════════════════════

class TestRemovePassword:
    def test_returns_to_passwordless(self, protected, open_store):
        protected.remove_password("old-pw")
        assert protected.state is StoreState.PASSWORDLESS
        assert protected.has_password() is False
        assert protected.get_pbkdf2_iterations() is None
        protected.close()

        reopened = open_store()
        reopened.init()
        assert reopened.get(DATA_MNEMONIC) == MNEMONIC

    def test_resets_backup_flag(self, protected):
        protected.mark_backup_completed(123)
        protected.remove_password("old-pw")
        meta = protected.get_metadata()
        assert meta.has_backup is False
        assert meta.last_backup_at is None

    def test_wrong_password(self, protected):
        with pytest.raises(DecryptionError):
            protected.remove_password("nope")
        assert protected.has_password() is True

    def test_requires_password_mode(self, passwordless):
        with pytest.raises(ConflictError):
            passwordless.remove_password("x")

    def test_failure_keeps_password(self, protected, open_store, monkeypatch, key_vault):
        _fail_encryption(monkeypatch, protected, after=1)
        with pytest.raises(RuntimeError):
            protected.remove_password("old-pw")

        assert protected.state is StoreState.PASSWORD
        assert protected.has_password() is True
        # The keyring entry issued for the aborted key is gone again
        assert len(key_vault._keys) == 0
        protected.close()

        with pytest.raises(UnauthorizedError):
            open_store().init()
        reopened = open_store()
        reopened.init("old-pw")
        assert reopened.get(DATA_MNEMONIC) == MNEMONIC

    def test_password_roundtrip(self, passwordless, open_store):
        passwordless.set_password("pw")
        passwordless.change_password("pw", "pw2")
        passwordless.remove_password("pw2")
        passwordless.close()

        reopened = open_store()
        reopened.init()
        assert reopened.get(DATA_MNEMONIC) == MNEMONIC
        assert reopened.has_password() is False
