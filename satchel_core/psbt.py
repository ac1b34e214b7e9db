"""
BIP174 partially signed transactions (version 0).

Each map keeps its raw key/value pairs in order, so fields this module does
not understand (proprietary, hardware-wallet, future BIPs) round-trip
byte-for-byte.  Typed accessors cover the fields the signer needs.

Usage:
    psbt = Psbt.from_base64(b64)
    psbt.inputs[0].witness_utxo
    psbt.inputs[0].tap_key_sig = sig
    psbt.finalize_input(0)
    tx = psbt.extract_transaction()
"""

from __future__ import annotations

import base64
import binascii
import struct

from satchel_core.address import classify_script
from satchel_core.derivation import P2PKH, P2SH_P2WPKH, P2TR, P2WPKH
from satchel_core.errors import ValidationError
from satchel_core.transaction import (
    ByteReader,
    Transaction,
    TxOut,
    compact_size,
    push_data,
    var_bytes,
)

PSBT_MAGIC = b"psbt\xff"

# Global
PSBT_GLOBAL_UNSIGNED_TX = 0x00

# Per-input
PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_TAP_KEY_SIG = 0x13
PSBT_IN_TAP_SCRIPT_SIG = 0x14
PSBT_IN_TAP_LEAF_SCRIPT = 0x15
PSBT_IN_TAP_BIP32_DERIVATION = 0x16
PSBT_IN_TAP_INTERNAL_KEY = 0x17
PSBT_IN_TAP_MERKLE_ROOT = 0x18

# Signing data dropped once an input is finalized
_FINALIZER_CLEARS = frozenset({
    PSBT_IN_PARTIAL_SIG,
    PSBT_IN_SIGHASH_TYPE,
    PSBT_IN_REDEEM_SCRIPT,
    PSBT_IN_WITNESS_SCRIPT,
    PSBT_IN_BIP32_DERIVATION,
    PSBT_IN_TAP_KEY_SIG,
    PSBT_IN_TAP_SCRIPT_SIG,
    PSBT_IN_TAP_LEAF_SCRIPT,
    PSBT_IN_TAP_BIP32_DERIVATION,
    PSBT_IN_TAP_INTERNAL_KEY,
    PSBT_IN_TAP_MERKLE_ROOT,
})


class PsbtMap:
    """Ordered key -> value map of one PSBT section."""

    def __init__(self, entries: dict[bytes, bytes] | None = None):
        self.entries: dict[bytes, bytes] = dict(entries or {})

    # ── raw access ───────────────────────────────────────────────

    def get(self, key_type: int, key_data: bytes = b"") -> bytes | None:
        return self.entries.get(bytes([key_type]) + key_data)

    def put(self, key_type: int, value: bytes, key_data: bytes = b"") -> None:
        self.entries[bytes([key_type]) + key_data] = bytes(value)

    def remove(self, key_type: int, key_data: bytes = b"") -> None:
        self.entries.pop(bytes([key_type]) + key_data, None)

    def with_type(self, key_type: int) -> dict[bytes, bytes]:
        """Entries of *key_type* keyed by their key data."""
        return {k[1:]: v for k, v in self.entries.items() if k and k[0] == key_type}

    # ── codec ────────────────────────────────────────────────────

    def serialize(self) -> bytes:
        out = b"".join(var_bytes(k) + var_bytes(v) for k, v in self.entries.items())
        return out + b"\x00"

    @classmethod
    def parse(cls, r: ByteReader) -> PsbtMap:
        entries: dict[bytes, bytes] = {}
        while True:
            key = r.read_var_bytes()
            if not key:
                return cls(entries)
            if key in entries:
                raise ValidationError(f"Invalid PSBT: duplicate key {key.hex()}")
            entries[key] = r.read_var_bytes()


class PsbtInput(PsbtMap):

    @property
    def non_witness_utxo(self) -> Transaction | None:
        raw = self.get(PSBT_IN_NON_WITNESS_UTXO)
        return Transaction.parse(raw) if raw is not None else None

    @property
    def witness_utxo(self) -> TxOut | None:
        raw = self.get(PSBT_IN_WITNESS_UTXO)
        return TxOut.parse(raw) if raw is not None else None

    @witness_utxo.setter
    def witness_utxo(self, txout: TxOut) -> None:
        self.put(PSBT_IN_WITNESS_UTXO, txout.serialize())

    @property
    def partial_sigs(self) -> dict[bytes, bytes]:
        return self.with_type(PSBT_IN_PARTIAL_SIG)

    def add_partial_sig(self, pubkey: bytes, signature: bytes) -> None:
        self.put(PSBT_IN_PARTIAL_SIG, signature, key_data=pubkey)

    @property
    def sighash_type(self) -> int | None:
        raw = self.get(PSBT_IN_SIGHASH_TYPE)
        if raw is None:
            return None
        if len(raw) != 4:
            raise ValidationError("Invalid PSBT: sighash type must be 4 bytes")
        return struct.unpack("<I", raw)[0]

    @sighash_type.setter
    def sighash_type(self, value: int) -> None:
        self.put(PSBT_IN_SIGHASH_TYPE, struct.pack("<I", value))

    @property
    def redeem_script(self) -> bytes | None:
        return self.get(PSBT_IN_REDEEM_SCRIPT)

    @redeem_script.setter
    def redeem_script(self, script: bytes) -> None:
        self.put(PSBT_IN_REDEEM_SCRIPT, script)

    @property
    def witness_script(self) -> bytes | None:
        return self.get(PSBT_IN_WITNESS_SCRIPT)

    @property
    def final_script_sig(self) -> bytes | None:
        return self.get(PSBT_IN_FINAL_SCRIPTSIG)

    @property
    def final_script_witness(self) -> list[bytes] | None:
        raw = self.get(PSBT_IN_FINAL_SCRIPTWITNESS)
        if raw is None:
            return None
        r = ByteReader(raw)
        return [r.read_var_bytes() for _ in range(r.read_compact_size())]

    @property
    def tap_key_sig(self) -> bytes | None:
        return self.get(PSBT_IN_TAP_KEY_SIG)

    @tap_key_sig.setter
    def tap_key_sig(self, signature: bytes) -> None:
        if len(signature) not in (64, 65):
            raise ValidationError("Taproot key signature must be 64 or 65 bytes")
        self.put(PSBT_IN_TAP_KEY_SIG, signature)

    @property
    def tap_internal_key(self) -> bytes | None:
        return self.get(PSBT_IN_TAP_INTERNAL_KEY)

    @tap_internal_key.setter
    def tap_internal_key(self, key: bytes) -> None:
        if len(key) != 32:
            raise ValidationError("Taproot internal key must be 32 bytes")
        self.put(PSBT_IN_TAP_INTERNAL_KEY, key)

    @property
    def tap_merkle_root(self) -> bytes | None:
        return self.get(PSBT_IN_TAP_MERKLE_ROOT)

    def is_finalized(self) -> bool:
        return self.final_script_sig is not None or self.final_script_witness is not None

    def set_final(self, script_sig: bytes | None, witness: list[bytes] | None) -> None:
        for key in [k for k in self.entries if k and k[0] in _FINALIZER_CLEARS]:
            del self.entries[key]
        if script_sig:
            self.put(PSBT_IN_FINAL_SCRIPTSIG, script_sig)
        if witness:
            self.put(PSBT_IN_FINAL_SCRIPTWITNESS,
                     compact_size(len(witness)) + b"".join(var_bytes(w) for w in witness))


class Psbt:
    """A parsed PSBT: global map, unsigned transaction, input and output maps."""

    def __init__(self, global_map: PsbtMap, inputs: list[PsbtInput], outputs: list[PsbtMap]):
        self.global_map = global_map
        self.inputs = inputs
        self.outputs = outputs
        raw_tx = global_map.get(PSBT_GLOBAL_UNSIGNED_TX)
        if raw_tx is None:
            raise ValidationError("Invalid PSBT: missing unsigned transaction")
        self.tx = Transaction.parse(raw_tx)
        if any(i.script_sig or i.witness for i in self.tx.inputs):
            raise ValidationError("Invalid PSBT: unsigned transaction carries signatures")
        if len(inputs) != len(self.tx.inputs) or len(outputs) != len(self.tx.outputs):
            raise ValidationError("Invalid PSBT: map count does not match transaction")

    # ── codec ────────────────────────────────────────────────────

    @classmethod
    def from_transaction(cls, tx: Transaction) -> Psbt:
        unsigned = Transaction(
            tx.version,
            [type(i)(i.prev_txid, i.prev_index, b"", i.sequence) for i in tx.inputs],
            list(tx.outputs),
            tx.locktime,
        )
        global_map = PsbtMap({bytes([PSBT_GLOBAL_UNSIGNED_TX]): unsigned.serialize(include_witness=False)})
        return cls(global_map, [PsbtInput() for _ in tx.inputs], [PsbtMap() for _ in tx.outputs])

    @classmethod
    def from_bytes(cls, data: bytes) -> Psbt:
        if data[:5] != PSBT_MAGIC:
            raise ValidationError("Invalid PSBT: bad magic")
        r = ByteReader(data)
        r.read(5)
        global_map = PsbtMap.parse(r)
        raw_tx = global_map.get(PSBT_GLOBAL_UNSIGNED_TX)
        if raw_tx is None:
            raise ValidationError("Invalid PSBT: missing unsigned transaction")
        tx = Transaction.parse(raw_tx)
        inputs = [PsbtInput(PsbtMap.parse(r).entries) for _ in tx.inputs]
        outputs = [PsbtMap.parse(r) for _ in tx.outputs]
        if not r.exhausted:
            raise ValidationError("Invalid PSBT: trailing bytes")
        return cls(global_map, inputs, outputs)

    @classmethod
    def from_base64(cls, b64: str) -> Psbt:
        try:
            raw = base64.b64decode(b64, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError("Invalid PSBT: not base64") from None
        return cls.from_bytes(raw)

    def serialize(self) -> bytes:
        return (
            PSBT_MAGIC
            + self.global_map.serialize()
            + b"".join(i.serialize() for i in self.inputs)
            + b"".join(o.serialize() for o in self.outputs)
        )

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    # ── spent outputs ────────────────────────────────────────────

    def spent_output(self, index: int) -> TxOut:
        """The output input *index* spends, from witness or non-witness UTXO data."""
        if not 0 <= index < len(self.inputs):
            raise ValidationError(f"Input index {index} out of range")
        psbt_in = self.inputs[index]
        txout = psbt_in.witness_utxo
        if txout is not None:
            return txout
        prev_tx = psbt_in.non_witness_utxo
        if prev_tx is None:
            raise ValidationError(f"Input {index} has no UTXO information")
        txin = self.tx.inputs[index]
        if prev_tx.txid_bytes() != txin.prev_txid:
            raise ValidationError(f"Input {index} non-witness UTXO does not match its outpoint")
        if txin.prev_index >= len(prev_tx.outputs):
            raise ValidationError(f"Input {index} spends a missing output")
        return prev_tx.outputs[txin.prev_index]

    def spent_outputs(self) -> list[TxOut]:
        return [self.spent_output(i) for i in range(len(self.inputs))]

    # ── finalizer / extractor ────────────────────────────────────

    def finalize_input(self, index: int) -> None:
        """Build final scriptSig/witness for a single-key input."""
        psbt_in = self.inputs[index]
        if psbt_in.is_finalized():
            return
        script = self.spent_output(index).script_pubkey
        kind = classify_script(script)

        if kind == P2TR:
            sig = psbt_in.tap_key_sig
            if sig is None:
                raise ValidationError(f"Input {index} has no taproot key signature")
            psbt_in.set_final(None, [sig])
            return

        sigs = psbt_in.partial_sigs
        if len(sigs) != 1:
            raise ValidationError(f"Input {index} needs exactly one partial signature to finalize")
        pubkey, sig = next(iter(sigs.items()))

        if kind == P2WPKH:
            psbt_in.set_final(None, [sig, pubkey])
        elif kind == P2SH_P2WPKH:
            redeem = psbt_in.redeem_script
            if redeem is None:
                raise ValidationError(f"Input {index} is missing its redeem script")
            psbt_in.set_final(push_data(redeem), [sig, pubkey])
        elif kind == P2PKH:
            psbt_in.set_final(push_data(sig) + push_data(pubkey), None)
        else:
            raise ValidationError(f"Input {index} has an unsupported script type")

    def finalize_all(self) -> None:
        for i in range(len(self.inputs)):
            self.finalize_input(i)

    def extract_transaction(self) -> Transaction:
        tx = Transaction.parse(self.tx.serialize(include_witness=False))
        for i, psbt_in in enumerate(self.inputs):
            if not psbt_in.is_finalized():
                raise ValidationError(f"Input {i} is not finalized")
            tx.inputs[i].script_sig = psbt_in.final_script_sig or b""
            tx.inputs[i].witness = psbt_in.final_script_witness or []
        return tx
