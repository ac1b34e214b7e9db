"""
Bitcoin address encoding for the four supported output types.

  - p2pkh         base58check, version 0x00 / 0x6f
  - p2sh-p2wpkh   base58check of the 0x0014<hash160> redeem script, 0x05 / 0xc4
  - p2wpkh        bech32, witness v0
  - p2tr          bech32m, witness v1 over the tweaked output key
"""

from __future__ import annotations

import base58
from bip_utils.bech32 import Bech32ChecksumError, SegwitBech32Decoder, SegwitBech32Encoder

from satchel_core.crypto_utils import hash160
from satchel_core.derivation import (
    MAINNET,
    P2PKH,
    P2SH_P2WPKH,
    P2TR,
    P2WPKH,
    TESTNET,
    check_network,
)
from satchel_core.errors import ValidationError
from satchel_core.signing import taproot_output_key

_P2PKH_VERSION = {MAINNET: 0x00, TESTNET: 0x6F}
_P2SH_VERSION = {MAINNET: 0x05, TESTNET: 0xC4}
_HRP = {MAINNET: "bc", TESTNET: "tb"}


# ===================================================================
#  scriptPubKey templates
# ===================================================================

def p2pkh_script(pubkey_hash: bytes) -> bytes:
    return b"\x76\xa9\x14" + pubkey_hash + b"\x88\xac"


def p2sh_script(script_hash: bytes) -> bytes:
    return b"\xa9\x14" + script_hash + b"\x87"


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    return b"\x00\x14" + pubkey_hash


def p2tr_script(output_key: bytes) -> bytes:
    return b"\x51\x20" + output_key


def nested_redeem_script(pubkey: bytes) -> bytes:
    """Redeem script of a P2SH-wrapped P2WPKH output."""
    return p2wpkh_script(hash160(pubkey))


def classify_script(script: bytes) -> str | None:
    """Address type of a standard scriptPubKey, or None."""
    if len(script) == 25 and script[:3] == b"\x76\xa9\x14" and script[23:] == b"\x88\xac":
        return P2PKH
    if len(script) == 23 and script[:2] == b"\xa9\x14" and script[22:] == b"\x87":
        return P2SH_P2WPKH
    if len(script) == 22 and script[:2] == b"\x00\x14":
        return P2WPKH
    if len(script) == 34 and script[:2] == b"\x51\x20":
        return P2TR
    return None


# ===================================================================
#  Encoding
# ===================================================================

def _bech32(network: str, witver: int, program: bytes) -> str:
    # v0 carries the bech32 checksum, v1+ the bech32m one (BIP350)
    return SegwitBech32Encoder.Encode(_HRP[check_network(network)], witver, program)


def p2pkh_address(pubkey: bytes, network: str = MAINNET) -> str:
    payload = bytes([_P2PKH_VERSION[check_network(network)]]) + hash160(pubkey)
    return base58.b58encode_check(payload).decode("ascii")


def p2sh_p2wpkh_address(pubkey: bytes, network: str = MAINNET) -> str:
    payload = bytes([_P2SH_VERSION[check_network(network)]]) + hash160(nested_redeem_script(pubkey))
    return base58.b58encode_check(payload).decode("ascii")


def p2wpkh_address(pubkey: bytes, network: str = MAINNET) -> str:
    return _bech32(network, 0, hash160(pubkey))


def p2tr_address(internal_key: bytes, network: str = MAINNET, merkle_root: bytes | None = None) -> str:
    """*internal_key* is x-only (32 bytes) or compressed (33 bytes)."""
    xonly = internal_key[1:] if len(internal_key) == 33 else internal_key
    return _bech32(network, 1, taproot_output_key(xonly, merkle_root))


def encode_address(address_type: str, pubkey: bytes, network: str = MAINNET) -> str:
    if address_type == P2PKH:
        return p2pkh_address(pubkey, network)
    if address_type == P2SH_P2WPKH:
        return p2sh_p2wpkh_address(pubkey, network)
    if address_type == P2WPKH:
        return p2wpkh_address(pubkey, network)
    if address_type == P2TR:
        return p2tr_address(pubkey, network)
    raise ValidationError(f"Unsupported address type {address_type!r}")


def script_for_pubkey(address_type: str, pubkey: bytes, merkle_root: bytes | None = None) -> bytes:
    """The scriptPubKey a compressed *pubkey* locks to under *address_type*."""
    if address_type == P2PKH:
        return p2pkh_script(hash160(pubkey))
    if address_type == P2SH_P2WPKH:
        return p2sh_script(hash160(nested_redeem_script(pubkey)))
    if address_type == P2WPKH:
        return p2wpkh_script(hash160(pubkey))
    if address_type == P2TR:
        return p2tr_script(taproot_output_key(pubkey[1:], merkle_root))
    raise ValidationError(f"Unsupported address type {address_type!r}")


# ===================================================================
#  Decoding
# ===================================================================

def address_to_script(address: str, network: str = MAINNET) -> bytes:
    """Decode *address* on *network* into its scriptPubKey."""
    check_network(network)
    hrp = _HRP[network]
    if address.lower().startswith(hrp + "1"):
        try:
            witver, program = SegwitBech32Decoder.Decode(hrp, address)
        except (Bech32ChecksumError, ValueError):
            raise ValidationError(f"Invalid bech32 address: {address}") from None
        if witver == 0 and len(program) == 20:
            return p2wpkh_script(program)
        if witver == 0 and len(program) == 32:
            return b"\x00\x20" + program
        if witver == 1 and len(program) == 32:
            return p2tr_script(program)
        raise ValidationError(f"Unsupported witness program v{witver}/{len(program)} bytes")

    try:
        payload = base58.b58decode_check(address)
    except ValueError:
        raise ValidationError(f"Invalid address: {address}") from None
    if len(payload) != 21:
        raise ValidationError(f"Invalid base58 address length: {address}")
    version, body = payload[0], payload[1:]
    if version == _P2PKH_VERSION[network]:
        return p2pkh_script(body)
    if version == _P2SH_VERSION[network]:
        return p2sh_script(body)
    raise ValidationError(f"Address {address} does not belong to {network}")
