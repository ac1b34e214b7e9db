"""
BIP44/49/84/86 derivation path templates.

Paths have the shape ``m/<purpose>'/<coin>'/<account>'/<change>/<index>``
with coin type 0 on mainnet and 1 on testnet.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from satchel_core.errors import ValidationError

MAINNET = "mainnet"
TESTNET = "testnet"
NETWORKS = (MAINNET, TESTNET)

# Path types
LEGACY = "legacy"
NESTED_SEGWIT = "nestedSegwit"
NATIVE_SEGWIT = "nativeSegwit"
TAPROOT = "taproot"
PATH_TYPES = (LEGACY, NESTED_SEGWIT, NATIVE_SEGWIT, TAPROOT)

# Address types
P2PKH = "p2pkh"
P2SH_P2WPKH = "p2sh-p2wpkh"
P2WPKH = "p2wpkh"
P2TR = "p2tr"

# Purposes requested by callers
PAYMENT = "payment"
ORDINALS = "ordinals"
STACKS = "stacks"
PURPOSES = (PAYMENT, ORDINALS, STACKS)

PATH_TYPE_PURPOSE = {
    LEGACY: 44,
    NESTED_SEGWIT: 49,
    NATIVE_SEGWIT: 84,
    TAPROOT: 86,
}
PURPOSE_PATH_TYPE = {number: path_type for path_type, number in PATH_TYPE_PURPOSE.items()}

PATH_TYPE_ADDRESS_TYPE = {
    LEGACY: P2PKH,
    NESTED_SEGWIT: P2SH_P2WPKH,
    NATIVE_SEGWIT: P2WPKH,
    TAPROOT: P2TR,
}
ADDRESS_TYPE_PATH_TYPE = {addr: path_type for path_type, addr in PATH_TYPE_ADDRESS_TYPE.items()}

PURPOSE_ADDRESS_TYPE = {
    PAYMENT: P2WPKH,     # lower fees
    ORDINALS: P2TR,      # inscriptions need taproot
    STACKS: P2WPKH,
}

_PATH_RE = re.compile(r"^m/(\d+)'/(\d+)'/(\d+)'/(\d+)/(\d+)$")


@dataclass(frozen=True)
class ParsedPath:
    purpose: int
    coin_type: int
    account: int
    change: int
    index: int

    @property
    def path_type(self) -> str | None:
        return PURPOSE_PATH_TYPE.get(self.purpose)


def check_network(network: str) -> str:
    if network not in NETWORKS:
        raise ValidationError(f"Unknown network {network!r}; expected 'mainnet' or 'testnet'")
    return network


def coin_type(network: str) -> int:
    return 0 if check_network(network) == MAINNET else 1


def base_path(path_type: str, network: str, account: int = 0) -> str:
    """Account-level path, e.g. ``m/84'/0'/0'``."""
    if path_type not in PATH_TYPE_PURPOSE:
        raise ValidationError(f"Unknown path type {path_type!r}")
    return f"m/{PATH_TYPE_PURPOSE[path_type]}'/{coin_type(network)}'/{account}'"


def build_derivation_path(
    path_type: str,
    network: str,
    account: int = 0,
    change: int = 0,
    index: int = 0,
) -> str:
    if change not in (0, 1):
        raise ValidationError(f"change must be 0 or 1, got {change}")
    if account < 0 or index < 0:
        raise ValidationError("account and index must be non-negative")
    if account >= 0x80000000 or index >= 0x80000000:
        raise ValidationError("account and index must be below 2^31")
    return f"{base_path(path_type, network, account)}/{change}/{index}"


def parse_derivation_path(path: str) -> ParsedPath | None:
    """Parse a five-level BIP44-style path; None when the shape does not match."""
    match = _PATH_RE.match(path or "")
    if not match:
        return None
    return ParsedPath(*(int(g) for g in match.groups()))


def address_type_for_path(path: str) -> str:
    """Address type implied by the purpose level of *path*."""
    parsed = parse_derivation_path(path)
    if parsed is None or parsed.path_type is None:
        raise ValidationError(f"Unsupported derivation path: {path}")
    return PATH_TYPE_ADDRESS_TYPE[parsed.path_type]


def purpose_to_path_type(purpose: str) -> str:
    if purpose not in PURPOSE_ADDRESS_TYPE:
        raise ValidationError(f"Unknown address purpose {purpose!r}")
    return ADDRESS_TYPE_PATH_TYPE[PURPOSE_ADDRESS_TYPE[purpose]]
