"""
Tests for HD key management (wallet.py).

Covers:
  - BIP-32 derivation against the published test vector 1
  - BIP-39 generation, validation, restore and passphrases
  - BIP-44/49/84/86 reference addresses for the "abandon ... about" mnemonic
  - Network switching, purposes and custom paths
  - Reverse address lookup and its clamped scan windows
  - Message signing through the key manager
  - lock() wiping
"""

from __future__ import annotations

import re
import unittest

import pytest

from satchel_core.address import address_to_script
from satchel_core.derivation import (
    LEGACY,
    NATIVE_SEGWIT,
    NESTED_SEGWIT,
    ORDINALS,
    PAYMENT,
    STACKS,
    TAPROOT,
    TESTNET,
)
from satchel_core.errors import InvalidMnemonicError, LockedError, ValidationError
from satchel_core.signing import (
    create_message_hash,
    recover_public_key,
    verify_message_bip322_simple,
)
from satchel_core.wallet import MAX_LOOKUP_WINDOW, AddressRecord, HDKeyManager, HDNode, SignInput

ABANDON = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)

BIP84_FIRST = "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
BIP84_FIRST_PUB = "0330d54fd0dd420a6e5f8d3624f5f3482cae350f79d5f0753bf5beef9c2d91af3c"
BIP86_FIRST = "bc1p5cyxnuxmeuwuvkwfem96lqzszd02n6xdcjrs20cac6yqjjwudpxqkedrcr"
BIP49_FIRST = "37VucYSaXLCAsxYyAPfbSi9eh4iEcbShgf"
BIP44_FIRST = "1LqBGSKuX5yYUonjxT5qGfpUsXKYYWeabA"


# ═══════════════════════════════════════════════════════════════════
#  BIP-32
# ═══════════════════════════════════════════════════════════════════

class TestHDNode(unittest.TestCase):
    """BIP-32 test vector 1."""

    def setUp(self):
        self.master = HDNode.from_seed(bytes.fromhex("000102030405060708090a0b0c0d0e0f"))

    def test_master(self):
        self.assertEqual(
            self.master.public_key.hex(),
            "0339a36013301597daef41fbe593a02cc513d0b55527ec2df1050e2e8ff49c85c2",
        )
        self.assertEqual(
            bytes(self.master.chain_code).hex(),
            "873dff81c02f525623fd1fe5167eac3a55a049de3d314bb42ee227ffed37d508",
        )
        self.assertEqual(self.master.fingerprint.hex(), "3442193e")

    def test_hardened_child(self):
        child = self.master.derive_path("m/0'")
        self.assertEqual(
            child.public_key.hex(),
            "035a784662a4a20a65bf6aab9ae98a6c068a81c52e4b032c0fb5400c706cfccc56",
        )
        self.assertEqual(child.depth, 1)
        self.assertEqual(child.parent_fingerprint.hex(), "3442193e")

    def test_normal_child(self):
        child = self.master.derive_path("m/0'/1")
        self.assertEqual(
            child.public_key.hex(),
            "03501e454bf00751f24b1b489aa925215d66af2234e3891c3b21a52bedb3cd711c",
        )

    def test_h_notation(self):
        self.assertEqual(
            self.master.derive_path("m/0h/1").public_key,
            self.master.derive_path("m/0'/1").public_key,
        )

    def test_root_path(self):
        self.assertIs(self.master.derive_path("m"), self.master)

    def test_path_must_start_with_m(self):
        with self.assertRaises(ValidationError):
            self.master.derive_path("84'/0'/0'")

    def test_bad_component(self):
        with self.assertRaises(ValidationError):
            self.master.derive_path("m/abc")

    def test_component_out_of_range(self):
        with self.assertRaises(ValidationError):
            self.master.derive_path("m/2147483648")

    def test_wipe(self):
        self.master.wipe()
        self.assertFalse(any(self.master.private_key))
        self.assertFalse(any(self.master.chain_code))


# ═══════════════════════════════════════════════════════════════════
#  BIP-39
# ═══════════════════════════════════════════════════════════════════

class TestMnemonic:
    def test_generate_12_words(self):
        phrase = HDKeyManager.generate_mnemonic(128)
        assert len(phrase.split()) == 12
        assert HDKeyManager.validate_mnemonic(phrase)

    def test_generate_24_words(self):
        assert len(HDKeyManager.generate_mnemonic(256).split()) == 24

    def test_generate_is_random(self):
        assert HDKeyManager.generate_mnemonic() != HDKeyManager.generate_mnemonic()

    def test_bad_strength(self):
        with pytest.raises(ValidationError):
            HDKeyManager.generate_mnemonic(100)

    def test_validate(self):
        assert HDKeyManager.validate_mnemonic(ABANDON)
        assert not HDKeyManager.validate_mnemonic(" ".join(["abandon"] * 12))
        assert not HDKeyManager.validate_mnemonic("abandon about")
        assert not HDKeyManager.validate_mnemonic("notaword " * 11 + "about")
        assert not HDKeyManager.validate_mnemonic(None)

    def test_from_invalid_mnemonic(self):
        km = HDKeyManager()
        with pytest.raises(InvalidMnemonicError, match="Invalid mnemonic"):
            km.from_mnemonic(" ".join(["abandon"] * 12))
        assert not km.is_initialized()

    def test_whitespace_is_normalized(self):
        km = HDKeyManager()
        km.from_mnemonic("  " + ABANDON.replace(" ", "   ") + "\n")
        assert km.export_mnemonic() == ABANDON
        assert km.derive_address().address == BIP84_FIRST

    def test_passphrase_changes_keys(self, keys):
        other = HDKeyManager()
        other.from_mnemonic(ABANDON, "TREZOR")
        assert other.derive_address().address != keys.derive_address().address
        assert other.export_passphrase() == "TREZOR"
        assert keys.export_passphrase() == ""


# ═══════════════════════════════════════════════════════════════════
#  Reference addresses
# ═══════════════════════════════════════════════════════════════════

class TestReferenceAddresses:
    def test_bip84(self, keys):
        record = keys.derive_address(NATIVE_SEGWIT, 0, 0, 0)
        assert record.address == BIP84_FIRST
        assert record.public_key == BIP84_FIRST_PUB
        assert record.path == "m/84'/0'/0'/0/0"
        assert record.type == "p2wpkh"

    def test_bip84_next_and_change(self, keys):
        assert keys.derive_address(NATIVE_SEGWIT, 0, 0, 1).address == "bc1qnjg0jd8228aq7egyzacy8cys3knf9xvrerkf9g"
        assert keys.derive_address(NATIVE_SEGWIT, 0, 1, 0).address == "bc1q8c6fshw2dlwun7ekn9qwf37cu2rn755upcp6el"

    def test_bip86(self, keys):
        record = keys.derive_address(TAPROOT)
        assert record.address == BIP86_FIRST
        assert record.type == "p2tr"
        assert record.public_key[2:] == "cc8a4bc64d897bddc5fbc2f670f7a8ba0b386779106cf1223c6fc5d7cd6fc115"

    def test_bip49(self, keys):
        assert keys.derive_address(NESTED_SEGWIT).address == BIP49_FIRST

    def test_bip44(self, keys):
        assert keys.derive_address(LEGACY).address == BIP44_FIRST

    def test_derive_at_path(self, keys):
        assert keys.derive_address_at_path("m/86'/0'/0'/0/0").address == BIP86_FIRST

    def test_unsupported_path(self, keys):
        with pytest.raises(ValidationError):
            keys.derive_address_at_path("m/0'/0'")
        with pytest.raises(ValidationError):
            keys.derive_address_at_path("m/45'/0'/0'/0/0")

    def test_bad_change(self, keys):
        with pytest.raises(ValidationError):
            keys.derive_address(NATIVE_SEGWIT, 0, 2, 0)

    def test_locked_manager(self):
        with pytest.raises(LockedError, match="Wallet is locked"):
            HDKeyManager().derive_address()


# ═══════════════════════════════════════════════════════════════════
#  Network, purposes and custom paths
# ═══════════════════════════════════════════════════════════════════

class TestNetworkAndPurposes:
    def test_testnet_prefixes(self, keys):
        keys.set_network(TESTNET)
        assert keys.get_network() == TESTNET
        assert re.match(r"^tb1q", keys.derive_address(NATIVE_SEGWIT).address)
        assert re.match(r"^tb1p", keys.derive_address(TAPROOT).address)
        assert re.match(r"^[mn]", keys.derive_address(LEGACY).address)
        assert re.match(r"^2", keys.derive_address(NESTED_SEGWIT).address)
        assert keys.derive_address().path == "m/84'/1'/0'/0/0"

    def test_mainnet_prefix(self, keys):
        assert re.match(r"^bc1q", keys.derive_address(NATIVE_SEGWIT).address)

    def test_unknown_network(self, keys):
        with pytest.raises(ValidationError):
            keys.set_network("regtest")
        with pytest.raises(ValidationError):
            HDKeyManager("signet")

    def test_get_addresses_by_purpose(self, keys):
        payment, ordinals, stacks = keys.get_addresses([PAYMENT, ORDINALS, STACKS])
        assert payment.address == BIP84_FIRST
        assert payment.purpose == PAYMENT
        assert ordinals.address == BIP86_FIRST
        assert ordinals.type == "p2tr"
        assert stacks.type == "p2wpkh"

    def test_unknown_purpose(self, keys):
        with pytest.raises(ValidationError):
            keys.get_addresses(["savings"])

    def test_record_to_dict(self, keys):
        d = keys.get_addresses([PAYMENT])[0].to_dict()
        assert d == {
            "address": BIP84_FIRST,
            "publicKey": BIP84_FIRST_PUB,
            "path": "m/84'/0'/0'/0/0",
            "addressType": "p2wpkh",
            "purpose": PAYMENT,
        }
        bare = AddressRecord("a", "b", "c", "p2wpkh").to_dict()
        assert "purpose" not in bare

    def test_custom_path(self, keys):
        keys.set_custom_paths({PAYMENT: "m/84'/0'/0'/0/5"})
        record = keys.get_addresses([PAYMENT])[0]
        assert record.path == "m/84'/0'/0'/0/5"
        assert record.address == keys.derive_address(NATIVE_SEGWIT, 0, 0, 5).address
        assert keys.get_custom_paths() == {PAYMENT: "m/84'/0'/0'/0/5"}

    def test_custom_path_validation(self):
        with pytest.raises(ValidationError):
            HDKeyManager.check_custom_paths({"savings": "m/84'/0'/0'/0/0"})
        with pytest.raises(ValidationError):
            HDKeyManager.check_custom_paths({PAYMENT: "m/84'/0'"})
        with pytest.raises(ValidationError):
            HDKeyManager.check_custom_paths({PAYMENT: 84})
        with pytest.raises(ValidationError):
            HDKeyManager.check_custom_paths(["m/84'/0'/0'/0/0"])
        assert HDKeyManager.check_custom_paths(None) == {}


# ═══════════════════════════════════════════════════════════════════
#  Reverse lookup
# ═══════════════════════════════════════════════════════════════════

@pytest.fixture
def reference():
    """A second manager on the same mnemonic, so lookups cannot hit the cache."""
    km = HDKeyManager()
    km.from_mnemonic(ABANDON)
    yield km
    km.lock()


class TestAddressLookup:
    def test_finds_first_addresses(self, keys):
        assert keys.find_address_path(BIP84_FIRST).path == "m/84'/0'/0'/0/0"
        assert keys.find_address_path(BIP86_FIRST).path == "m/86'/0'/0'/0/0"
        assert keys.find_address_path(BIP44_FIRST).path == "m/44'/0'/0'/0/0"

    def test_finds_change_address(self, keys, reference):
        target = reference.derive_address(NATIVE_SEGWIT, 0, 1, 7).address
        assert keys.find_address_path(target).path == "m/84'/0'/0'/1/7"

    def test_outside_default_window(self, keys, reference):
        target = reference.derive_address(NATIVE_SEGWIT, 0, 0, 25).address
        assert keys.find_address_path(target) is None

    def test_window_clamped_to_maximum(self, keys, reference):
        keys.set_address_lookup_config(receive_window=10_000)
        assert keys.receive_window == MAX_LOOKUP_WINDOW

        inside = reference.derive_address(NATIVE_SEGWIT, 0, 0, 199).address
        assert keys.find_address_path(inside).path == "m/84'/0'/0'/0/199"

        beyond = reference.derive_address(NATIVE_SEGWIT, 0, 0, 250).address
        assert keys.find_address_path(beyond) is None

    def test_window_clamped_to_minimum(self, keys):
        keys.set_address_lookup_config(0, -5)
        assert keys.receive_window == 1
        assert keys.change_window == 1

    def test_window_must_be_int(self, keys):
        with pytest.raises(ValidationError):
            keys.set_address_lookup_config("20")

    def test_custom_path_found(self, keys, reference):
        path = "m/84'/0'/3'/0/0"
        target = reference.derive_address_at_path(path).address
        assert keys.find_address_path(target) is None
        keys.set_custom_paths({PAYMENT: path})
        assert keys.find_address_path(target).path == path

    def test_network_switch_invalidates_cache(self, keys):
        assert keys.find_address_path(BIP84_FIRST) is not None
        keys.set_network(TESTNET)
        assert keys.find_address_path(BIP84_FIRST) is None

    def test_foreign_address(self, keys):
        assert keys.find_address_path("bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq") is None


# ═══════════════════════════════════════════════════════════════════
#  Message signing via the key manager
# ═══════════════════════════════════════════════════════════════════

class TestMessageSigning:
    def test_ecdsa_for_segwit(self, keys):
        sig = keys.sign_message("hello", BIP84_FIRST)
        assert recover_public_key(create_message_hash("hello"), sig).hex() == BIP84_FIRST_PUB

    def test_ecdsa_for_legacy(self, keys):
        sig = keys.sign_message("hello", BIP44_FIRST)
        pub = keys.derive_address(LEGACY).public_key
        assert recover_public_key(create_message_hash("hello"), sig).hex() == pub

    def test_taproot_defaults_to_bip322(self, keys):
        sig = keys.sign_message("hello", BIP86_FIRST)
        assert verify_message_bip322_simple("hello", address_to_script(BIP86_FIRST), sig)

    def test_taproot_rejects_ecdsa(self, keys):
        with pytest.raises(ValidationError, match="Taproot addresses require bip322-simple signing"):
            keys.sign_message("hello", BIP86_FIRST, "ecdsa")

    def test_bip322_for_native_segwit(self, keys):
        sig = keys.sign_message("hello", BIP84_FIRST, "bip322-simple")
        assert verify_message_bip322_simple("hello", address_to_script(BIP84_FIRST), sig)

    def test_bip322_not_for_legacy(self, keys):
        with pytest.raises(ValidationError):
            keys.sign_message("hello", BIP44_FIRST, "bip322-simple")

    def test_unknown_protocol(self, keys):
        with pytest.raises(ValidationError):
            keys.sign_message("hello", BIP84_FIRST, "schnorr")

    def test_address_not_in_wallet(self, keys):
        with pytest.raises(ValidationError, match="Address not found"):
            keys.sign_message("hello", "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq")


# ═══════════════════════════════════════════════════════════════════
#  SignInput and lock()
# ═══════════════════════════════════════════════════════════════════

class TestSignInput:
    def test_from_dict(self):
        req = SignInput.from_dict({
            "index": 1,
            "address": BIP84_FIRST,
            "sighashTypes": [1],
            "finalize": True,
        })
        assert req.index == 1
        assert req.sighash_types == [1]
        assert req.finalize is True
        assert req.derivation_path is None

    def test_index_required(self):
        with pytest.raises(ValidationError):
            SignInput.from_dict({"address": BIP84_FIRST})
        with pytest.raises(ValidationError):
            SignInput.from_dict({"index": True})

    def test_sighash_types_shape(self):
        with pytest.raises(ValidationError):
            SignInput.from_dict({"index": 0, "sighashTypes": "all"})


class TestLock:
    def test_lock_wipes_secrets(self):
        km = HDKeyManager()
        km.from_mnemonic(ABANDON)
        km.derive_address()
        seed, mnemonic, root = km._seed, km._mnemonic, km._root
        km.lock()
        assert not any(seed)
        assert not any(mnemonic)
        assert not any(root.private_key)
        assert not km.is_initialized()
        assert km._nodes == {}

    def test_export_after_lock(self, keys):
        keys.lock()
        with pytest.raises(LockedError, match="Wallet is locked"):
            keys.export_mnemonic()
        with pytest.raises(LockedError):
            keys.find_address_path(BIP84_FIRST)

    def test_relock_is_harmless(self):
        km = HDKeyManager()
        km.lock()
        km.lock()
