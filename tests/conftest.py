"""
Shared pytest fixtures for the Satchel test suite.
"""

import pytest

from satchel_core.key_vault import MemoryKeyVault
from satchel_core.satchel import Satchel
from satchel_core.storage import SecureStore
from satchel_core.wallet import HDKeyManager

# BIP-39 test mnemonic used by the BIP-44/49/84/86 reference vectors
ABANDON = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)


@pytest.fixture(autouse=True)
def _fast_kdf(monkeypatch):
    """Single-iteration PBKDF2 unless a test opts into something else."""
    monkeypatch.setenv("SATCHEL_ENV", "test")
    monkeypatch.delenv("SATCHEL_PBKDF2_ITERATIONS", raising=False)


@pytest.fixture
def key_vault():
    """Process-local vault standing in for the OS keyring."""
    return MemoryKeyVault()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "satchel.db")


@pytest.fixture
def open_store(db_path, key_vault):
    """Factory for SecureStore instances over the same database file."""
    opened = []

    def _open(**kwargs):
        kwargs.setdefault("key_vault", key_vault)
        s = SecureStore(db_path, **kwargs)
        opened.append(s)
        return s

    yield _open
    for s in opened:
        s.close()


@pytest.fixture
def store(open_store):
    """Fresh, not yet initialised SecureStore in a temp directory."""
    return open_store()


@pytest.fixture
def keys():
    """Key manager unlocked with the reference mnemonic on mainnet."""
    km = HDKeyManager()
    km.from_mnemonic(ABANDON)
    yield km
    km.lock()


@pytest.fixture
def satchel(open_store):
    """Wallet orchestrator over a fresh store."""
    wallet = Satchel(open_store(), HDKeyManager())
    yield wallet
    wallet.lock()
