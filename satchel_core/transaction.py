"""
Bitcoin transaction codec and signature hashes.

Supports:
  - legacy and segwit (BIP144) serialization, parse and txid
  - legacy sighash (with the SIGHASH_SINGLE out-of-range quirk)
  - BIP143 segwit v0 sighash
  - BIP341 taproot key-path sighash (no annex)

Every sighash supports ALL / NONE / SINGLE with or without ANYONECANPAY;
taproot additionally accepts SIGHASH_DEFAULT.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from satchel_core.crypto_utils import sha256, sha256d, tagged_hash
from satchel_core.errors import ValidationError

SIGHASH_DEFAULT = 0x00
SIGHASH_ALL = 0x01
SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80

ECDSA_SIGHASH_TYPES = frozenset({0x01, 0x02, 0x03, 0x81, 0x82, 0x83})
TAPROOT_SIGHASH_TYPES = frozenset({0x00}) | ECDSA_SIGHASH_TYPES


# ===================================================================
#  Primitive encoders
# ===================================================================

def compact_size(n: int) -> bytes:
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def var_bytes(data: bytes) -> bytes:
    return compact_size(len(data)) + data


def push_data(data: bytes) -> bytes:
    """Minimal script push of *data* (up to 520 bytes)."""
    n = len(data)
    if n < 0x4C:
        return bytes([n]) + data
    if n <= 0xFF:
        return b"\x4c" + bytes([n]) + data
    return b"\x4d" + struct.pack("<H", n) + data


def serialize_witness(items: list[bytes]) -> bytes:
    return compact_size(len(items)) + b"".join(var_bytes(i) for i in items)


class ByteReader:
    """Cursor over a bytes buffer; every short read is a ValidationError."""

    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def read(self, n: int) -> bytes:
        if n < 0 or self.pos + n > len(self.data):
            raise ValidationError("Unexpected end of data")
        chunk = self.data[self.pos:self.pos + n]
        self.pos += n
        return chunk

    def read_u8(self) -> int:
        return self.read(1)[0]

    def read_u32(self) -> int:
        return struct.unpack("<I", self.read(4))[0]

    def read_i64(self) -> int:
        return struct.unpack("<q", self.read(8))[0]

    def read_compact_size(self) -> int:
        b0 = self.read_u8()
        if b0 < 0xFD:
            return b0
        if b0 == 0xFD:
            return struct.unpack("<H", self.read(2))[0]
        if b0 == 0xFE:
            return struct.unpack("<I", self.read(4))[0]
        return struct.unpack("<Q", self.read(8))[0]

    def read_var_bytes(self) -> bytes:
        return self.read(self.read_compact_size())

    def peek(self) -> int:
        if self.pos >= len(self.data):
            raise ValidationError("Unexpected end of data")
        return self.data[self.pos]

    @property
    def exhausted(self) -> bool:
        return self.pos >= len(self.data)


# ===================================================================
#  Transaction model
# ===================================================================

@dataclass
class TxIn:
    prev_txid: bytes           # internal byte order
    prev_index: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF
    witness: list[bytes] = field(default_factory=list)

    def outpoint(self) -> bytes:
        return self.prev_txid + struct.pack("<I", self.prev_index)


@dataclass
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack("<q", self.value) + var_bytes(self.script_pubkey)

    @classmethod
    def parse(cls, data: bytes) -> TxOut:
        r = ByteReader(data)
        out = cls(value=r.read_i64(), script_pubkey=r.read_var_bytes())
        if not r.exhausted:
            raise ValidationError("Trailing bytes after transaction output")
        return out


@dataclass
class Transaction:
    version: int = 2
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    locktime: int = 0

    # ── codec ────────────────────────────────────────────────────

    def has_witness(self) -> bool:
        return any(i.witness for i in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        segwit = include_witness and self.has_witness()
        raw = struct.pack("<i", self.version)
        if segwit:
            raw += b"\x00\x01"
        raw += compact_size(len(self.inputs))
        for txin in self.inputs:
            raw += txin.outpoint() + var_bytes(txin.script_sig) + struct.pack("<I", txin.sequence)
        raw += compact_size(len(self.outputs))
        for txout in self.outputs:
            raw += txout.serialize()
        if segwit:
            for txin in self.inputs:
                raw += serialize_witness(txin.witness)
        raw += struct.pack("<I", self.locktime)
        return raw

    @classmethod
    def parse(cls, data: bytes) -> Transaction:
        r = ByteReader(data)
        tx = cls(version=struct.unpack("<i", r.read(4))[0])
        segwit = False
        if r.peek() == 0x00:
            r.read(1)
            if r.read_u8() != 0x01:
                raise ValidationError("Invalid segwit flag")
            segwit = True
        for _ in range(r.read_compact_size()):
            prev_txid = r.read(32)
            prev_index = r.read_u32()
            script_sig = r.read_var_bytes()
            tx.inputs.append(TxIn(prev_txid, prev_index, script_sig, r.read_u32()))
        for _ in range(r.read_compact_size()):
            value = r.read_i64()
            tx.outputs.append(TxOut(value, r.read_var_bytes()))
        if segwit:
            for txin in tx.inputs:
                txin.witness = [r.read_var_bytes() for _ in range(r.read_compact_size())]
        tx.locktime = r.read_u32()
        if not r.exhausted:
            raise ValidationError("Trailing bytes after transaction")
        return tx

    def txid_bytes(self) -> bytes:
        """sha256d of the non-witness serialization, internal byte order."""
        return sha256d(self.serialize(include_witness=False))

    def txid(self) -> str:
        return self.txid_bytes()[::-1].hex()

    # ── sighashes ────────────────────────────────────────────────

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self.inputs):
            raise ValidationError(f"Input index {index} out of range")

    def legacy_sighash(self, index: int, script_code: bytes, hash_type: int = SIGHASH_ALL) -> bytes:
        self._check_index(index)
        base = hash_type & 0x1F
        if base == SIGHASH_SINGLE and index >= len(self.outputs):
            return (1).to_bytes(32, "little")

        inputs = []
        for i, txin in enumerate(self.inputs):
            if i == index:
                inputs.append(TxIn(txin.prev_txid, txin.prev_index, script_code, txin.sequence))
            elif base in (SIGHASH_NONE, SIGHASH_SINGLE):
                inputs.append(TxIn(txin.prev_txid, txin.prev_index, b"", 0))
            else:
                inputs.append(TxIn(txin.prev_txid, txin.prev_index, b"", txin.sequence))
        if hash_type & SIGHASH_ANYONECANPAY:
            inputs = [inputs[index]]

        if base == SIGHASH_NONE:
            outputs: list[TxOut] = []
        elif base == SIGHASH_SINGLE:
            outputs = [TxOut(-1, b"") for _ in range(index)] + [self.outputs[index]]
        else:
            outputs = list(self.outputs)

        stripped = Transaction(self.version, inputs, outputs, self.locktime)
        return sha256d(stripped.serialize(include_witness=False) + struct.pack("<I", hash_type))

    def segwit_v0_sighash(self, index: int, script_code: bytes, amount: int, hash_type: int = SIGHASH_ALL) -> bytes:
        """BIP143 digest; *script_code* is the bare script (no length prefix)."""
        self._check_index(index)
        base = hash_type & 0x1F
        anyone = bool(hash_type & SIGHASH_ANYONECANPAY)
        zero = b"\x00" * 32

        hash_prevouts = zero if anyone else sha256d(b"".join(i.outpoint() for i in self.inputs))
        if anyone or base in (SIGHASH_NONE, SIGHASH_SINGLE):
            hash_sequence = zero
        else:
            hash_sequence = sha256d(b"".join(struct.pack("<I", i.sequence) for i in self.inputs))
        if base not in (SIGHASH_NONE, SIGHASH_SINGLE):
            hash_outputs = sha256d(b"".join(o.serialize() for o in self.outputs))
        elif base == SIGHASH_SINGLE and index < len(self.outputs):
            hash_outputs = sha256d(self.outputs[index].serialize())
        else:
            hash_outputs = zero

        txin = self.inputs[index]
        preimage = (
            struct.pack("<i", self.version)
            + hash_prevouts
            + hash_sequence
            + txin.outpoint()
            + var_bytes(script_code)
            + struct.pack("<q", amount)
            + struct.pack("<I", txin.sequence)
            + hash_outputs
            + struct.pack("<I", self.locktime)
            + struct.pack("<I", hash_type)
        )
        return sha256d(preimage)

    def taproot_sighash(self, index: int, prevouts: list[TxOut], hash_type: int = SIGHASH_DEFAULT) -> bytes:
        """BIP341 key-path digest.  *prevouts* lists the spent output of every input."""
        self._check_index(index)
        if hash_type not in TAPROOT_SIGHASH_TYPES:
            raise ValidationError(f"Invalid taproot sighash type 0x{hash_type:02x}")
        if len(prevouts) != len(self.inputs):
            raise ValidationError("Taproot sighash needs the spent output of every input")
        base = hash_type & 0x03
        anyone = bool(hash_type & SIGHASH_ANYONECANPAY)

        msg = bytes([hash_type]) + struct.pack("<i", self.version) + struct.pack("<I", self.locktime)
        if not anyone:
            msg += sha256(b"".join(i.outpoint() for i in self.inputs))
            msg += sha256(b"".join(struct.pack("<q", p.value) for p in prevouts))
            msg += sha256(b"".join(var_bytes(p.script_pubkey) for p in prevouts))
            msg += sha256(b"".join(struct.pack("<I", i.sequence) for i in self.inputs))
        if base not in (SIGHASH_NONE, SIGHASH_SINGLE):
            msg += sha256(b"".join(o.serialize() for o in self.outputs))

        msg += b"\x00"  # spend_type: key path, no annex
        if anyone:
            txin, prevout = self.inputs[index], prevouts[index]
            msg += txin.outpoint() + prevout.serialize() + struct.pack("<I", txin.sequence)
        else:
            msg += struct.pack("<I", index)

        if base == SIGHASH_SINGLE:
            if index >= len(self.outputs):
                raise ValidationError("SIGHASH_SINGLE input has no matching output")
            msg += sha256(self.outputs[index].serialize())

        return tagged_hash("TapSighash", b"\x00" + msg)
