"""
Tests for key_vault.py — persisted shapes of the passwordless master key.

Covers:
  - OpaqueKey / RawKeyEnvelope encode and decode
  - Legacy bare base64 key entries
  - Rejection of malformed entries
  - MemoryKeyVault store / load / delete
  - KeyringVault against a patched keyring module
"""

import base64
import unittest
from unittest import mock

from keyring.errors import KeyringError, PasswordDeleteError

from satchel_core import key_vault
from satchel_core.errors import ConfigurationError, ValidationError
from satchel_core.key_vault import (
    KeyringVault,
    KeyVaultUnavailable,
    MemoryKeyVault,
    OpaqueKey,
    RawKeyEnvelope,
    decode_stored_key,
    encode_stored_key,
)

RAW = bytes(range(32))


class TestStoredKeyCodec(unittest.TestCase):

    def test_opaque_roundtrip(self):
        handle = OpaqueKey(service="satchel", key_id="master-key-1")
        encoded = encode_stored_key(handle)
        self.assertEqual(encoded, {"version": 1, "format": "keyring", "service": "satchel", "keyId": "master-key-1"})
        self.assertEqual(decode_stored_key(encoded), (handle, False))

    def test_raw_roundtrip(self):
        envelope = RawKeyEnvelope(key_bytes=RAW)
        encoded = encode_stored_key(envelope)
        self.assertEqual(encoded["format"], "raw")
        self.assertEqual(base64.b64decode(encoded["keyBytes"]), RAW)
        self.assertEqual(decode_stored_key(encoded), (envelope, False))

    def test_legacy_string(self):
        stored, legacy = decode_stored_key(base64.b64encode(RAW).decode())
        self.assertTrue(legacy)
        self.assertEqual(stored, RawKeyEnvelope(key_bytes=RAW))

    def test_legacy_wrong_length(self):
        with self.assertRaises(ValidationError):
            decode_stored_key(base64.b64encode(b"short").decode())

    def test_legacy_not_base64(self):
        with self.assertRaises(ValidationError):
            decode_stored_key("not base64!!")

    def test_unknown_version(self):
        with self.assertRaises(ValidationError):
            decode_stored_key({"version": 2, "format": "raw", "keyBytes": base64.b64encode(RAW).decode()})

    def test_unknown_format(self):
        with self.assertRaises(ValidationError):
            decode_stored_key({"version": 1, "format": "hsm"})

    def test_keyring_missing_id(self):
        with self.assertRaises(ValidationError):
            decode_stored_key({"version": 1, "format": "keyring", "service": "satchel"})

    def test_wrong_shape(self):
        with self.assertRaises(ValidationError):
            decode_stored_key(42)

    def test_raw_repr_redacted(self):
        self.assertNotIn(RAW.hex(), repr(RawKeyEnvelope(key_bytes=RAW)))
        self.assertIn("redacted", repr(RawKeyEnvelope(key_bytes=RAW)))


class TestMemoryKeyVault(unittest.TestCase):

    def test_store_load_delete(self):
        vault = MemoryKeyVault()
        handle = vault.store("k1", RAW)
        self.assertIn("k1", vault)
        self.assertEqual(vault.load(handle), RAW)
        vault.delete(handle)
        self.assertNotIn("k1", vault)

    def test_load_missing(self):
        with self.assertRaises(ConfigurationError):
            MemoryKeyVault().load(OpaqueKey(service="satchel-memory", key_id="gone"))

    def test_delete_missing_is_noop(self):
        MemoryKeyVault().delete(OpaqueKey(service="satchel-memory", key_id="gone"))


class TestKeyringVault(unittest.TestCase):

    def setUp(self):
        self.secrets = {}
        patcher = mock.patch.multiple(
            key_vault.keyring,
            set_password=mock.DEFAULT,
            get_password=mock.DEFAULT,
            delete_password=mock.DEFAULT,
        )
        self.mocks = patcher.start()
        self.addCleanup(patcher.stop)
        self.mocks["set_password"].side_effect = lambda s, k, v: self.secrets.__setitem__((s, k), v)
        self.mocks["get_password"].side_effect = lambda s, k: self.secrets.get((s, k))

    def test_store_and_load(self):
        vault = KeyringVault("satchel-test")
        handle = vault.store("k1", RAW)
        self.assertEqual(handle, OpaqueKey(service="satchel-test", key_id="k1"))
        self.assertEqual(vault.load(handle), RAW)

    def test_backend_failure_is_unavailable(self):
        self.mocks["set_password"].side_effect = KeyringError("no backend")
        with self.assertRaises(KeyVaultUnavailable):
            KeyringVault().store("k1", RAW)

    def test_missing_entry(self):
        with self.assertRaises(ConfigurationError):
            KeyringVault().load(OpaqueKey(service="satchel", key_id="gone"))

    def test_load_backend_failure(self):
        self.mocks["get_password"].side_effect = KeyringError("locked")
        with self.assertRaises(ConfigurationError):
            KeyringVault().load(OpaqueKey(service="satchel", key_id="k1"))

    def test_delete_missing_entry_is_quiet(self):
        self.mocks["delete_password"].side_effect = PasswordDeleteError("gone")
        KeyringVault().delete(OpaqueKey(service="satchel", key_id="gone"))

    def test_delete_calls_backend(self):
        KeyringVault().delete(OpaqueKey(service="satchel", key_id="k1"))
        self.mocks["delete_password"].assert_called_once_with("satchel", "k1")


if __name__ == "__main__":
    unittest.main()
