"""
Satchel - encrypted local key-store and HD Bitcoin signing core.

Key features:
- SQLite-backed AES-256-GCM key-value store, password or passwordless
- Atomic password set / change / remove with rollback on failure
- BIP39 mnemonics and BIP32 derivation for legacy, nested segwit,
  native segwit and taproot addresses
- Bitcoin message signing (ECDSA) and BIP322-simple
- PSBT signing with key-ownership guards
- MAC-protected portable backups
"""

__version__ = "0.1.0"
__all__ = [
    "crypto_utils",
    "storage",
    "key_vault",
    "derivation",
    "address",
    "transaction",
    "signing",
    "psbt",
    "wallet",
    "backup",
    "satchel",
    "config",
    "logging_config",
    "errors",
]
