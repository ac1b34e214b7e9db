"""
HD key management for Satchel.

An ``HDKeyManager`` holds the BIP-39 mnemonic and the BIP-32 master node
while unlocked and provides:
  - mnemonic generation and restore (BIP-39, via ``mnemonic``)
  - address derivation for legacy / nested segwit / native segwit / taproot
  - reverse lookup of an address to its derivation path (bounded scan)
  - message signing (Bitcoin Signed Message ECDSA, BIP-322 simple)
  - PSBT input signing (ECDSA and taproot key-path Schnorr) with guards
    that refuse to sign for a key that does not own the input

``lock()`` zeroes the seed and every cached node.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import struct
from dataclasses import dataclass, field
from typing import Any, Iterable

from ecdsa import SECP256k1
from mnemonic import Mnemonic

from satchel_core.address import (
    address_to_script,
    classify_script,
    encode_address,
    nested_redeem_script,
    p2pkh_script,
    script_for_pubkey,
)
from satchel_core.crypto_utils import hash160, wipe
from satchel_core.derivation import (
    MAINNET,
    NATIVE_SEGWIT,
    P2PKH,
    P2SH_P2WPKH,
    P2TR,
    P2WPKH,
    PATH_TYPE_ADDRESS_TYPE,
    PATH_TYPES,
    address_type_for_path,
    build_derivation_path,
    check_network,
    purpose_to_path_type,
)
from satchel_core.errors import (
    IncompatibleInputError,
    InvalidMnemonicError,
    LockedError,
    ValidationError,
)
from satchel_core.psbt import Psbt
from satchel_core.signing import (
    PROTOCOL_BIP322_SIMPLE,
    PROTOCOL_ECDSA,
    create_message_hash,
    ecdsa_sign_der,
    public_key,
    schnorr_sign,
    sign_message_bip322_simple,
    sign_message_ecdsa,
    taproot_tweak_private_key,
)
from satchel_core.transaction import (
    ECDSA_SIGHASH_TYPES,
    SIGHASH_ALL,
    SIGHASH_DEFAULT,
    TAPROOT_SIGHASH_TYPES,
)

logger = logging.getLogger("satchel_wallet")

MNEMONIC_STRENGTHS = (128, 160, 192, 224, 256)
DEFAULT_LOOKUP_WINDOW = 20
MAX_LOOKUP_WINDOW = 200

_BIP39 = Mnemonic("english")


# ===================================================================
#  HD Key Derivation (BIP-32)
# ===================================================================

class HDNode:
    """
    Hierarchical Deterministic key derivation node.

    Implements BIP-32 private derivation with HMAC-SHA512.
    Path notation: m/84'/0'/account'/change/index
    """

    HARDENED = 0x80000000

    def __init__(self, private_key: bytes, chain_code: bytes, depth: int = 0,
                 index: int = 0, parent_fingerprint: bytes = b"\x00" * 4):
        self.private_key = bytearray(private_key)
        self.chain_code = bytearray(chain_code)
        self.depth = depth
        self.index = index
        self.parent_fingerprint = parent_fingerprint
        self._public_key: bytes | None = None

    @classmethod
    def from_seed(cls, seed: bytes) -> HDNode:
        """Create master node from a BIP-39 seed."""
        I = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        cls._check_key(I[:32])
        return cls(private_key=I[:32], chain_code=I[32:])

    @staticmethod
    def _check_key(key: bytes) -> None:
        k = int.from_bytes(key, "big")
        if k == 0 or k >= SECP256k1.order:
            raise ValidationError("Derived key is outside the curve order")

    @property
    def public_key(self) -> bytes:
        """Compressed (33-byte) public key."""
        if self._public_key is None:
            self._public_key = public_key(bytes(self.private_key))
        return self._public_key

    @property
    def fingerprint(self) -> bytes:
        """First 4 bytes of Hash160 of public key."""
        return hash160(self.public_key)[:4]

    def derive_child(self, index: int) -> HDNode:
        """Derive a child node at the given index."""
        if not 0 <= index <= 0xFFFFFFFF:
            raise ValidationError(f"Child index {index} out of range")
        if index >= self.HARDENED:
            # Hardened: use private key
            data = b"\x00" + bytes(self.private_key) + struct.pack(">I", index)
        else:
            # Normal: use compressed public key
            data = self.public_key + struct.pack(">I", index)

        I = hmac.new(bytes(self.chain_code), data, hashlib.sha512).digest()
        self._check_key(I[:32])
        child_key_int = (int.from_bytes(I[:32], "big") +
                         int.from_bytes(self.private_key, "big")) % SECP256k1.order
        child_key = child_key_int.to_bytes(32, "big")
        self._check_key(child_key)

        return HDNode(
            private_key=child_key,
            chain_code=I[32:],
            depth=self.depth + 1,
            index=index,
            parent_fingerprint=self.fingerprint,
        )

    def derive_path(self, path: str) -> HDNode:
        """
        Derive from a BIP-32 path string like "m/84'/0'/0'/0/0".
        """
        if path == "m":
            return self
        if not path.startswith("m/"):
            raise ValidationError(f"Derivation path must start with 'm/': {path}")

        node = self
        for component in path[2:].split("/"):
            hardened = component.endswith("'") or component.endswith("h")
            digits = component[:-1] if hardened else component
            if not digits.isdigit():
                raise ValidationError(f"Invalid path component {component!r} in {path}")
            index = int(digits)
            if index >= self.HARDENED:
                raise ValidationError(f"Path component {component!r} out of range")
            node = node.derive_child(index + self.HARDENED if hardened else index)
        return node

    def wipe(self) -> None:
        wipe(self.private_key)
        wipe(self.chain_code)
        self._public_key = None


# ===================================================================
#  Records
# ===================================================================

@dataclass
class AddressRecord:
    address: str
    public_key: str            # hex, 33-byte compressed
    path: str
    address_type: str
    purpose: str | None = None

    @property
    def type(self) -> str:
        return self.address_type

    def to_dict(self) -> dict:
        d = {
            "address": self.address,
            "publicKey": self.public_key,
            "path": self.path,
            "addressType": self.address_type,
        }
        if self.purpose is not None:
            d["purpose"] = self.purpose
        return d


@dataclass
class SignInput:
    """Which PSBT input to sign and with which key."""
    index: int
    address: str | None = None
    derivation_path: str | None = None
    sighash_types: list[int] = field(default_factory=list)
    finalize: bool = False
    tap_merkle_root_hex: str | None = None
    tap_leaf_hash_hex: str | None = None

    @classmethod
    def from_dict(cls, d: dict) -> SignInput:
        if not isinstance(d, dict):
            raise ValidationError("Sign input must be an object")
        index = d.get("index")
        if not isinstance(index, int) or isinstance(index, bool):
            raise ValidationError("Sign input requires an integer 'index'")
        sighash_types = d.get("sighashTypes") or []
        if not isinstance(sighash_types, list) or not all(isinstance(s, int) for s in sighash_types):
            raise ValidationError("'sighashTypes' must be a list of integers")
        return cls(
            index=index,
            address=d.get("address"),
            derivation_path=d.get("derivationPath"),
            sighash_types=list(sighash_types),
            finalize=bool(d.get("finalize", False)),
            tap_merkle_root_hex=d.get("tapMerkleRootHex"),
            tap_leaf_hash_hex=d.get("tapLeafHashHex"),
        )


def _clamp_window(value: Any, name: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    return max(1, min(MAX_LOOKUP_WINDOW, value))


# ===================================================================
#  HDKeyManager
# ===================================================================

class HDKeyManager:
    """Mnemonic lifecycle, address derivation and signing."""

    def __init__(self, network: str = MAINNET):
        self._network = check_network(network)
        self._mnemonic: bytearray | None = None
        self._passphrase: bytearray | None = None
        self._seed: bytearray | None = None
        self._root: HDNode | None = None
        self._nodes: dict[str, HDNode] = {}
        self._address_cache: dict[str, str] = {}
        self._custom_paths: dict[str, str] = {}
        self.receive_window = DEFAULT_LOOKUP_WINDOW
        self.change_window = DEFAULT_LOOKUP_WINDOW

    # ── mnemonic lifecycle ───────────────────────────────────────

    @staticmethod
    def generate_mnemonic(strength: int = 128) -> str:
        """Generate a new BIP-39 mnemonic phrase (12 words at 128 bits, 24 at 256)."""
        if strength not in MNEMONIC_STRENGTHS:
            raise ValidationError(f"Strength must be one of {MNEMONIC_STRENGTHS}")
        return _BIP39.generate(strength=strength)

    @staticmethod
    def validate_mnemonic(phrase: str) -> bool:
        if not isinstance(phrase, str):
            return False
        words = phrase.split()
        if len(words) not in (12, 15, 18, 21, 24):
            return False
        try:
            return _BIP39.check(" ".join(words))
        except (ValueError, LookupError):
            return False

    def from_mnemonic(self, phrase: str, passphrase: str | None = None) -> None:
        """Validate *phrase* and load its master node.  Replaces any loaded wallet."""
        if not self.validate_mnemonic(phrase):
            raise InvalidMnemonicError("Invalid mnemonic")
        normalized = " ".join(phrase.split())
        self.lock()
        seed = bytearray(Mnemonic.to_seed(normalized, passphrase or ""))
        try:
            self._root = HDNode.from_seed(bytes(seed))
        except ValidationError:
            wipe(seed)
            raise
        self._seed = seed
        self._mnemonic = bytearray(normalized.encode("utf-8"))
        self._passphrase = bytearray((passphrase or "").encode("utf-8"))
        logger.info(f"Key manager unlocked ({self._network})")

    def is_initialized(self) -> bool:
        return self._root is not None

    def export_mnemonic(self) -> str:
        if self._mnemonic is None:
            raise LockedError("Wallet is locked")
        return self._mnemonic.decode("utf-8")

    def export_passphrase(self) -> str:
        if self._passphrase is None:
            raise LockedError("Wallet is locked")
        return self._passphrase.decode("utf-8")

    def lock(self) -> None:
        """Zero the seed, the mnemonic and every cached node."""
        was_unlocked = self._root is not None
        for node in self._nodes.values():
            node.wipe()
        self._nodes.clear()
        if self._root is not None:
            self._root.wipe()
            self._root = None
        for buf in (self._seed, self._mnemonic, self._passphrase):
            wipe(buf)
        self._seed = self._mnemonic = self._passphrase = None
        self._address_cache.clear()
        if was_unlocked:
            logger.info("Key manager locked")

    # ── configuration ────────────────────────────────────────────

    def set_network(self, network: str) -> None:
        check_network(network)
        if network != self._network:
            self._network = network
            self._address_cache.clear()
            logger.info(f"Network switched to {network}")

    def get_network(self) -> str:
        return self._network

    def set_address_lookup_config(self, receive_window: int | None = None,
                                  change_window: int | None = None) -> None:
        """Set the reverse-lookup scan windows, clamped to [1, MAX_LOOKUP_WINDOW]."""
        if receive_window is not None:
            self.receive_window = _clamp_window(receive_window, "receive_window")
        if change_window is not None:
            self.change_window = _clamp_window(change_window, "change_window")

    @staticmethod
    def check_custom_paths(paths: dict[str, str] | None) -> dict[str, str]:
        if paths is not None and not isinstance(paths, dict):
            raise ValidationError("Custom paths must map purpose to derivation path")
        custom: dict[str, str] = {}
        for purpose, path in (paths or {}).items():
            if not isinstance(path, str):
                raise ValidationError(f"Custom path for {purpose!r} must be a string")
            purpose_to_path_type(purpose)
            address_type_for_path(path)
            custom[purpose] = path
        return custom

    def set_custom_paths(self, paths: dict[str, str] | None) -> None:
        """Override the derivation path used for each purpose."""
        self._custom_paths = self.check_custom_paths(paths)
        self._address_cache.clear()

    def get_custom_paths(self) -> dict[str, str]:
        return dict(self._custom_paths)

    # ── derivation ───────────────────────────────────────────────

    def _require_root(self) -> HDNode:
        if self._root is None:
            raise LockedError("Wallet is locked")
        return self._root

    def _node(self, path: str) -> HDNode:
        """Node at *path*, reusing the deepest cached ancestor."""
        root = self._require_root()
        cached = self._nodes.get(path)
        if cached is not None:
            return cached
        parent_path, _, last = path.rpartition("/")
        if parent_path in ("", "m") or parent_path.count("/") < 3:
            node = root.derive_path(path)
        else:
            node = self._node(parent_path).derive_path("m/" + last)
        # Cache account and chain levels only; leaves are cheap to rebuild.
        if path.count("/") <= 4:
            self._nodes[path] = node
        return node

    def _record(self, path: str, address_type: str, purpose: str | None = None) -> AddressRecord:
        node = self._node(path)
        pub = node.public_key
        record = AddressRecord(
            address=encode_address(address_type, pub, self._network),
            public_key=pub.hex(),
            path=path,
            address_type=address_type,
            purpose=purpose,
        )
        self._address_cache[record.address] = path
        return record

    def derive_address(self, path_type: str = NATIVE_SEGWIT, account: int = 0,
                       change: int = 0, index: int = 0) -> AddressRecord:
        path = build_derivation_path(path_type, self._network, account, change, index)
        return self._record(path, PATH_TYPE_ADDRESS_TYPE[path_type])

    def derive_address_at_path(self, path: str) -> AddressRecord:
        return self._record(path, address_type_for_path(path))

    def get_addresses(self, purposes: Iterable[str]) -> list[AddressRecord]:
        """One address per purpose, at index 0 unless a custom path overrides it."""
        records = []
        for purpose in purposes:
            path = self._custom_paths.get(purpose)
            if path is None:
                path_type = purpose_to_path_type(purpose)
                path = build_derivation_path(path_type, self._network)
            records.append(self._record(path, address_type_for_path(path), purpose))
        return records

    def find_address_path(self, address: str) -> AddressRecord | None:
        """
        Map *address* back to the path that derives it.

        Checks addresses handed out since unlock, then scans index
        windows of every path type (receive, then change), then custom
        paths.  Returns None when nothing in range matches.
        """
        self._require_root()
        cached = self._address_cache.get(address)
        if cached is not None:
            return self.derive_address_at_path(cached)

        for path_type in PATH_TYPES:
            for change, window in ((0, self.receive_window), (1, self.change_window)):
                for index in range(window):
                    record = self.derive_address(path_type, 0, change, index)
                    if record.address == address:
                        return record

        for path in self._custom_paths.values():
            record = self.derive_address_at_path(path)
            if record.address == address:
                return record
        return None

    def _resolve_path(self, address: str) -> str:
        record = self.find_address_path(address)
        if record is None:
            raise ValidationError(f"Address not found in wallet: {address}")
        return record.path

    def _private_key(self, path: str) -> bytes:
        return bytes(self._node(path).private_key)

    # ── message signing ──────────────────────────────────────────

    def sign_message(self, message: str, address: str, protocol: str | None = None) -> str:
        """
        Sign *message* with the key behind *address*.

        Taproot addresses default to (and require) BIP-322 simple; other
        addresses default to Bitcoin Signed Message ECDSA.
        """
        path = self._resolve_path(address)
        address_type = address_type_for_path(path)

        if protocol is None:
            protocol = PROTOCOL_BIP322_SIMPLE if address_type == P2TR else PROTOCOL_ECDSA
        if protocol not in (PROTOCOL_ECDSA, PROTOCOL_BIP322_SIMPLE):
            raise ValidationError(f"Unsupported signing protocol {protocol!r}")
        if address_type == P2TR and protocol == PROTOCOL_ECDSA:
            raise ValidationError("Taproot addresses require bip322-simple signing")

        priv = self._private_key(path)
        if protocol == PROTOCOL_ECDSA:
            return sign_message_ecdsa(create_message_hash(message), priv)
        if address_type not in (P2TR, P2WPKH):
            raise ValidationError(f"bip322-simple is not supported for {address_type} addresses")
        script = address_to_script(address, self._network)
        return sign_message_bip322_simple(message, script, priv)

    # ── PSBT signing ─────────────────────────────────────────────

    def _signing_path(self, req: SignInput) -> str:
        if req.derivation_path:
            path = req.derivation_path
            if req.address:
                derived = self.derive_address_at_path(path)
                if derived.address != req.address:
                    raise IncompatibleInputError(
                        f"Input {req.index}: derivation path does not match provided address"
                    )
            else:
                address_type_for_path(path)
            return path
        if req.address:
            return self._resolve_path(req.address)
        raise ValidationError(f"Input {req.index}: an address or derivation path is required")

    def sign_psbt(self, psbt_base64: str, inputs: Iterable[SignInput | dict]) -> str:
        """
        Sign the requested inputs of a base64 PSBT and return it, base64.

        Inputs are validated against the PSBT before any key is used.
        """
        self._require_root()
        reqs = [s if isinstance(s, SignInput) else SignInput.from_dict(s) for s in inputs]
        psbt = Psbt.from_base64(psbt_base64)

        for req in reqs:
            if not 0 <= req.index < len(psbt.inputs):
                raise ValidationError(
                    f"Input index {req.index} out of range (PSBT has {len(psbt.inputs)} inputs)"
                )
            path = self._signing_path(req)
            address_type = address_type_for_path(path)
            if address_type == P2TR:
                self._sign_taproot_input(psbt, req, path)
            else:
                self._sign_ecdsa_input(psbt, req, path, address_type)
            if req.finalize:
                psbt.finalize_input(req.index)

        logger.info(f"Signed {len(reqs)} PSBT input(s)")
        return psbt.to_base64()

    @staticmethod
    def _single_sighash(req: SignInput, psbt_value: int | None, default: int, allowed: frozenset) -> int:
        if len(req.sighash_types) > 1:
            raise IncompatibleInputError(
                f"Input {req.index}: multiple sighash types requested; only one is supported per input"
            )
        hash_type = req.sighash_types[0] if req.sighash_types else psbt_value
        if hash_type is None:
            hash_type = default
        if hash_type not in allowed:
            raise IncompatibleInputError(f"Input {req.index}: unsupported sighash type 0x{hash_type:02x}")
        if psbt_value is not None and hash_type != psbt_value:
            raise IncompatibleInputError(
                f"Input {req.index}: requested sighash does not match the PSBT sighash field"
            )
        return hash_type

    def _sign_taproot_input(self, psbt: Psbt, req: SignInput, path: str) -> None:
        if req.tap_merkle_root_hex or req.tap_leaf_hash_hex:
            raise IncompatibleInputError(
                f"Input {req.index}: taproot script-path signing is not supported"
            )
        psbt_in = psbt.inputs[req.index]
        hash_type = self._single_sighash(req, psbt_in.sighash_type, SIGHASH_DEFAULT, TAPROOT_SIGHASH_TYPES)

        node = self._node(path)
        internal = node.public_key[1:]
        existing = psbt_in.tap_internal_key
        if existing is not None and existing != internal:
            raise IncompatibleInputError(
                f"Input {req.index}: tapInternalKey does not match the derived internal key"
            )

        merkle_root = psbt_in.tap_merkle_root
        prevouts = psbt.spent_outputs()
        expected = script_for_pubkey(P2TR, node.public_key, merkle_root)
        if prevouts[req.index].script_pubkey != expected:
            raise IncompatibleInputError(
                f"Input {req.index}: spent script does not match provided address"
            )

        digest = psbt.tx.taproot_sighash(req.index, prevouts, hash_type)
        tweaked = bytearray(taproot_tweak_private_key(bytes(node.private_key), merkle_root))
        try:
            sig = schnorr_sign(digest, bytes(tweaked))
        finally:
            wipe(tweaked)
        if hash_type != SIGHASH_DEFAULT:
            sig += bytes([hash_type])
        if existing is None:
            psbt_in.tap_internal_key = internal
        psbt_in.tap_key_sig = sig

    def _sign_ecdsa_input(self, psbt: Psbt, req: SignInput, path: str, address_type: str) -> None:
        psbt_in = psbt.inputs[req.index]
        hash_type = self._single_sighash(req, psbt_in.sighash_type, SIGHASH_ALL, ECDSA_SIGHASH_TYPES)

        node = self._node(path)
        pub = node.public_key
        spent = psbt.spent_output(req.index)
        expected = script_for_pubkey(address_type, pub)
        if spent.script_pubkey != expected:
            raise IncompatibleInputError(
                f"Input {req.index}: spent script does not match provided address"
            )

        kind = classify_script(spent.script_pubkey)
        script_code = p2pkh_script(hash160(pub))
        if kind == P2PKH:
            digest = psbt.tx.legacy_sighash(req.index, spent.script_pubkey, hash_type)
        elif kind in (P2WPKH, P2SH_P2WPKH):
            if psbt_in.witness_utxo is None:
                raise IncompatibleInputError(f"Input {req.index}: segwit inputs require a witness UTXO")
            if kind == P2SH_P2WPKH:
                redeem = nested_redeem_script(pub)
                if psbt_in.redeem_script not in (None, redeem):
                    raise IncompatibleInputError(
                        f"Input {req.index}: redeem script does not match the derived key"
                    )
                psbt_in.redeem_script = redeem
            digest = psbt.tx.segwit_v0_sighash(req.index, script_code, spent.value, hash_type)
        else:
            raise IncompatibleInputError(f"Input {req.index}: unsupported script type")

        sig = ecdsa_sign_der(digest, bytes(node.private_key)) + bytes([hash_type])
        psbt_in.add_partial_sig(pub, sig)

