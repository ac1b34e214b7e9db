"""
TOML-based configuration for Satchel.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from satchel_core.config import load_config
    cfg = load_config("satchel.toml")
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[import,no-redef]

from satchel_core.derivation import MAINNET, check_network
from satchel_core.errors import ConfigurationError, ValidationError
from satchel_core.storage import DEFAULT_DB_PATH
from satchel_core.wallet import DEFAULT_LOOKUP_WINDOW


@dataclass
class StorageConfig:
    """Persistence settings."""
    path: str = DEFAULT_DB_PATH


@dataclass
class KdfConfig:
    """
    PBKDF2 settings for new password keys and backups.

    ``iterations`` is only a per-session override: once a store records an
    iteration count in its metadata, that count wins.  ``production`` forces
    the production floor regardless of ``SATCHEL_ENV``.
    """
    iterations: int | None = None
    production: bool | None = None


@dataclass
class WalletConfig:
    """Key manager settings."""
    network: str = MAINNET
    receive_window: int = DEFAULT_LOOKUP_WINDOW
    change_window: int = DEFAULT_LOOKUP_WINDOW


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class SatchelConfig:
    """Top-level configuration container."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    kdf: KdfConfig = field(default_factory=KdfConfig)
    wallet: WalletConfig = field(default_factory=WalletConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def load_config(path: str | None = None) -> SatchelConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        SATCHEL_DB_PATH            -> storage.path
        SATCHEL_PBKDF2_ITERATIONS  -> kdf.iterations
        SATCHEL_ENV=production     -> kdf.production
        SATCHEL_NETWORK            -> wallet.network
        SATCHEL_LOG_LEVEL          -> logging.level
        SATCHEL_LOG_FMT            -> logging.format
    """
    cfg = SatchelConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            try:
                with open(p, "rb") as f:
                    data = tomllib.load(f)
            except tomllib.TOMLDecodeError as exc:
                raise ConfigurationError(f"Invalid config file {path}: {exc}") from exc
            for section_name, section_dc in [
                ("storage", cfg.storage),
                ("kdf", cfg.kdf),
                ("wallet", cfg.wallet),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("SATCHEL_DB_PATH"):
        cfg.storage.path = v
    if (n := _env_int("SATCHEL_PBKDF2_ITERATIONS")) is not None:
        cfg.kdf.iterations = n
    if os.environ.get("SATCHEL_ENV", "").strip().lower() == "production":
        cfg.kdf.production = True
    if v := os.environ.get("SATCHEL_NETWORK"):
        cfg.wallet.network = v
    if v := os.environ.get("SATCHEL_LOG_LEVEL"):
        cfg.logging.level = v
    if v := os.environ.get("SATCHEL_LOG_FMT"):
        cfg.logging.format = v

    try:
        check_network(cfg.wallet.network)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
    if cfg.logging.format not in ("human", "json"):
        raise ConfigurationError(f"logging.format must be 'human' or 'json', got {cfg.logging.format!r}")
    if cfg.kdf.iterations is not None and cfg.kdf.iterations < 1:
        raise ConfigurationError("kdf.iterations must be positive")

    return cfg
