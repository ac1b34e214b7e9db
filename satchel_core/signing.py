"""
Message and key-path signing primitives.

  - Bitcoin Signed Message digest + recoverable compact ECDSA (65 bytes)
  - BIP340 Schnorr over x-only keys
  - BIP341/BIP86 taproot tweak for public and private keys
  - BIP322 "simple" message signatures for taproot and P2WPKH addresses
"""

from __future__ import annotations

import base64
import hashlib

import coincurve
from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.der import UnexpectedDER
from ecdsa.ellipticcurve import INFINITY, Point, PointJacobi
from ecdsa.keys import BadSignatureError
from ecdsa.util import (
    sigdecode_der,
    sigdecode_string,
    sigencode_der_canonize,
    sigencode_string_canonize,
)

from satchel_core.crypto_utils import hash160, sha256d, tagged_hash
from satchel_core.errors import ValidationError
from satchel_core.transaction import (
    SIGHASH_ALL,
    SIGHASH_DEFAULT,
    Transaction,
    TxIn,
    TxOut,
    compact_size,
    push_data,
)

_N = SECP256k1.order
_P = SECP256k1.curve.p()
_G = SECP256k1.generator

MESSAGE_MAGIC = b"\x18Bitcoin Signed Message:\n"
BIP322_TAG = "BIP0322-signed-message"

PROTOCOL_ECDSA = "ecdsa"
PROTOCOL_BIP322_SIMPLE = "bip322-simple"
PROTOCOLS = (PROTOCOL_ECDSA, PROTOCOL_BIP322_SIMPLE)


def _int(b: bytes) -> int:
    return int.from_bytes(b, "big")


def _bytes32(n: int) -> bytes:
    return n.to_bytes(32, "big")


def _to_bytes(message: str | bytes) -> bytes:
    return message.encode("utf-8") if isinstance(message, str) else bytes(message)


# ===================================================================
#  Keys
# ===================================================================

def public_key(private_key: bytes) -> bytes:
    """Compressed SEC1 public key for a 32-byte secret."""
    try:
        return coincurve.PrivateKey(bytes(private_key)).public_key.format(compressed=True)
    except ValueError as exc:
        raise ValidationError(f"Invalid private key: {exc}") from None


def xonly(pubkey: bytes) -> bytes:
    if len(pubkey) == 33:
        return pubkey[1:]
    if len(pubkey) == 32:
        return pubkey
    raise ValidationError(f"Expected a 32 or 33-byte public key, got {len(pubkey)}")


def lift_x(x_only: bytes) -> PointJacobi:
    """The curve point with x-coordinate *x_only* and even y (BIP340)."""
    x = _int(x_only)
    if x >= _P:
        raise ValidationError("x-only key is not a field element")
    y_sq = (pow(x, 3, _P) + 7) % _P
    y = pow(y_sq, (_P + 1) // 4, _P)
    if pow(y, 2, _P) != y_sq:
        raise ValidationError("x-only key is not on the curve")
    if y & 1:
        y = _P - y
    return PointJacobi.from_affine(Point(SECP256k1.curve, x, y, _N))


# ===================================================================
#  Taproot tweak (BIP341 / BIP86)
# ===================================================================

def taproot_tweak(internal_key: bytes, merkle_root: bytes | None = None) -> int:
    t = _int(tagged_hash("TapTweak", xonly(internal_key) + (merkle_root or b"")))
    if t >= _N:
        raise ValidationError("Taproot tweak exceeds curve order")
    return t


def taproot_output_key(internal_key: bytes, merkle_root: bytes | None = None) -> bytes:
    """x-only output key Q = lift_x(P) + tG."""
    q = lift_x(xonly(internal_key)) + _G * taproot_tweak(internal_key, merkle_root)
    if q == INFINITY:
        raise ValidationError("Taproot output key is the point at infinity")
    return _bytes32(q.x())


def taproot_tweak_private_key(private_key: bytes, merkle_root: bytes | None = None) -> bytes:
    """Secret for the tweaked output key; negated first when P has odd y."""
    d = _int(private_key)
    if not 0 < d < _N:
        raise ValidationError("Private key out of range")
    point = _G * d
    if point.y() & 1:
        d = _N - d
    t = taproot_tweak(_bytes32(point.x()), merkle_root)
    tweaked = (d + t) % _N
    if tweaked == 0:
        raise ValidationError("Tweaked private key is zero")
    return _bytes32(tweaked)


# ===================================================================
#  Schnorr (BIP340)
# ===================================================================

def schnorr_sign(digest: bytes, private_key: bytes) -> bytes:
    if len(digest) != 32:
        raise ValidationError(f"Schnorr signing needs a 32-byte digest, got {len(digest)}")
    return coincurve.PrivateKey(bytes(private_key)).sign_schnorr(digest)


def schnorr_verify(digest: bytes, signature: bytes, x_only: bytes) -> bool:
    if len(signature) != 64 or len(digest) != 32:
        return False
    try:
        return coincurve.PublicKeyXOnly(xonly(x_only)).verify(signature, digest)
    except ValueError:
        return False


# ===================================================================
#  ECDSA
# ===================================================================

def ecdsa_sign_der(digest: bytes, private_key: bytes) -> bytes:
    """Deterministic low-S DER signature (no sighash byte)."""
    sk = SigningKey.from_string(bytes(private_key), curve=SECP256k1)
    return sk.sign_digest_deterministic(digest, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize)


def create_message_hash(message: str | bytes) -> bytes:
    """sha256d of the Bitcoin Signed Message preimage."""
    data = _to_bytes(message)
    return sha256d(MESSAGE_MAGIC + compact_size(len(data)) + data)


def _recover_candidates(digest: bytes, compact: bytes) -> list[VerifyingKey]:
    return VerifyingKey.from_public_key_recovery_with_digest(
        compact, digest, SECP256k1, hashfunc=hashlib.sha256, sigdecode=sigdecode_string,
    )


def sign_message_ecdsa(digest: bytes, private_key: bytes) -> str:
    """
    Recoverable compact signature, base64.

    Layout: header ``27 + recid + 4`` (compressed key) followed by r || s.
    """
    sk = SigningKey.from_string(bytes(private_key), curve=SECP256k1)
    compact = sk.sign_digest_deterministic(
        digest, hashfunc=hashlib.sha256, sigencode=sigencode_string_canonize,
    )
    own = sk.get_verifying_key().to_string("compressed")
    for recid, candidate in enumerate(_recover_candidates(digest, compact)):
        if candidate.to_string("compressed") == own:
            return base64.b64encode(bytes([27 + recid + 4]) + compact).decode("ascii")
    raise ValidationError("Could not determine recovery id for signature")


def recover_public_key(digest: bytes, signature: str | bytes) -> bytes:
    """Compressed public key recovered from a 65-byte compact signature."""
    raw = base64.b64decode(signature) if isinstance(signature, str) else bytes(signature)
    if len(raw) != 65:
        raise ValidationError(f"Compact signature must be 65 bytes, got {len(raw)}")
    header = raw[0]
    if not 27 <= header <= 42:
        raise ValidationError(f"Invalid signature header byte {header}")
    recid = (header - 27) & 0x03
    candidates = _recover_candidates(digest, raw[1:])
    if recid >= len(candidates):
        raise ValidationError("Recovery id does not match signature")
    return candidates[recid].to_string("compressed")


def verify_message_ecdsa(digest: bytes, signature: str | bytes, pubkey: bytes) -> bool:
    try:
        return recover_public_key(digest, signature) == bytes(pubkey)
    except (ValidationError, BadSignatureError, ValueError):
        return False


# ===================================================================
#  BIP322 simple
# ===================================================================

def bip322_message_hash(message: str | bytes) -> bytes:
    return tagged_hash(BIP322_TAG, _to_bytes(message))


def bip322_to_spend(message: str | bytes, script_pubkey: bytes) -> Transaction:
    script_sig = b"\x00" + push_data(bip322_message_hash(message))
    return Transaction(
        version=0,
        inputs=[TxIn(b"\x00" * 32, 0xFFFFFFFF, script_sig, 0)],
        outputs=[TxOut(0, script_pubkey)],
        locktime=0,
    )


def bip322_to_sign(to_spend: Transaction) -> Transaction:
    return Transaction(
        version=0,
        inputs=[TxIn(to_spend.txid_bytes(), 0, b"", 0)],
        outputs=[TxOut(0, b"\x6a")],
        locktime=0,
    )


def _is_p2tr(script: bytes) -> bool:
    return len(script) == 34 and script[:2] == b"\x51\x20"


def _is_p2wpkh(script: bytes) -> bool:
    return len(script) == 22 and script[:2] == b"\x00\x14"


def sign_message_bip322_simple(message: str | bytes, script_pubkey: bytes, private_key: bytes) -> str:
    """
    Sign *message* for the output *script_pubkey* and return the fully
    signed ``to_sign`` transaction, base64.

    Taproot outputs get a SIGHASH_DEFAULT key-path Schnorr signature with
    the BIP86-tweaked key; P2WPKH outputs a SIGHASH_ALL ECDSA witness.
    """
    to_spend = bip322_to_spend(message, script_pubkey)
    to_sign = bip322_to_sign(to_spend)
    prevouts = [to_spend.outputs[0]]

    if _is_p2tr(script_pubkey):
        tweaked = taproot_tweak_private_key(private_key)
        digest = to_sign.taproot_sighash(0, prevouts, SIGHASH_DEFAULT)
        to_sign.inputs[0].witness = [schnorr_sign(digest, tweaked)]
    elif _is_p2wpkh(script_pubkey):
        pub = public_key(private_key)
        if script_pubkey[2:] != hash160(pub):
            raise ValidationError("Private key does not control the given script")
        script_code = b"\x76\xa9\x14" + script_pubkey[2:] + b"\x88\xac"
        digest = to_sign.segwit_v0_sighash(0, script_code, 0, SIGHASH_ALL)
        to_sign.inputs[0].witness = [ecdsa_sign_der(digest, private_key) + bytes([SIGHASH_ALL]), pub]
    else:
        raise ValidationError("bip322-simple supports taproot and native segwit outputs only")

    return base64.b64encode(to_sign.serialize()).decode("ascii")


def verify_message_bip322_simple(message: str | bytes, script_pubkey: bytes, signature: str) -> bool:
    """Check a taproot or P2WPKH signature produced by ``sign_message_bip322_simple``."""
    try:
        signed = Transaction.parse(base64.b64decode(signature))
    except (ValidationError, ValueError):
        return False

    to_spend = bip322_to_spend(message, script_pubkey)
    expected = bip322_to_sign(to_spend)
    if len(signed.inputs) != 1 or signed.inputs[0].outpoint() != expected.inputs[0].outpoint():
        return False
    if signed.outputs != expected.outputs or signed.version != 0 or signed.locktime != 0:
        return False
    witness = signed.inputs[0].witness

    if _is_p2tr(script_pubkey):
        if len(witness) != 1 or len(witness[0]) not in (64, 65):
            return False
        sig = witness[0]
        hash_type = sig[64] if len(sig) == 65 else SIGHASH_DEFAULT
        digest = signed.taproot_sighash(0, [to_spend.outputs[0]], hash_type)
        return schnorr_verify(digest, sig[:64], script_pubkey[2:])

    if _is_p2wpkh(script_pubkey):
        if len(witness) != 2 or hash160(witness[1]) != script_pubkey[2:]:
            return False
        script_code = b"\x76\xa9\x14" + script_pubkey[2:] + b"\x88\xac"
        der, hash_type = witness[0][:-1], witness[0][-1]
        digest = signed.segwit_v0_sighash(0, script_code, 0, hash_type)
        vk = VerifyingKey.from_string(witness[1], curve=SECP256k1)
        try:
            return vk.verify_digest(der, digest, sigdecode=sigdecode_der)
        except (BadSignatureError, UnexpectedDER, ValueError):
            return False

    return False
