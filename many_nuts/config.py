"""Settings loaded from the environment (and a ``.env`` file), plus logging setup."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from .types import InvalidInputError

DEFAULT_DATA_DIR = "~/.many_nuts"
DEFAULT_TIMEOUT = 30.0
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _split_list(value: str | None) -> list[str]:
    """Comma separated list, stripped, empties and duplicates removed."""
    if not value:
        return []
    items = (item.strip() for item in value.split(","))
    return list(dict.fromkeys(item for item in items if item))


@dataclass
class WalletConfig:
    mints: list[str] = field(default_factory=list)
    relays: list[str] = field(default_factory=list)
    seed_hex: str | None = None
    mnemonic: str | None = None
    nsec: str | None = None
    data_dir: Path = field(default_factory=lambda: Path(DEFAULT_DATA_DIR).expanduser())
    unit: str = "sat"
    timeout: float = DEFAULT_TIMEOUT
    tor_proxy: str | None = None
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> WalletConfig:
        """Build settings from the process environment.

        Variables already set in the environment take priority over ``.env``.

        Raises:
            InvalidInputError: If a variable holds an invalid value
        """
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))

        timeout_raw = os.getenv("MINT_TIMEOUT")
        try:
            timeout = float(timeout_raw) if timeout_raw else DEFAULT_TIMEOUT
        except ValueError as e:
            raise InvalidInputError(f"MINT_TIMEOUT must be a number, got {timeout_raw!r}") from e
        if timeout <= 0:
            raise InvalidInputError("MINT_TIMEOUT must be positive")

        log_level = (os.getenv("MANY_NUTS_LOG_LEVEL") or "WARNING").upper()
        if not isinstance(logging.getLevelName(log_level), int):
            raise InvalidInputError(f"Unknown log level {log_level!r}")

        relays = _split_list(os.getenv("NOSTR_RELAYS"))
        for relay in relays:
            if not relay.startswith(("ws://", "wss://")):
                raise InvalidInputError(f"Relay URL must use ws:// or wss://: {relay}")

        return cls(
            mints=_split_list(os.getenv("CASHU_MINTS")),
            relays=relays,
            seed_hex=os.getenv("WALLET_SEED") or None,
            mnemonic=os.getenv("WALLET_MNEMONIC") or None,
            nsec=os.getenv("NSEC") or None,
            data_dir=Path(os.getenv("MANY_NUTS_DATA_DIR") or DEFAULT_DATA_DIR).expanduser(),
            unit=os.getenv("MANY_NUTS_UNIT") or "sat",
            timeout=timeout,
            tor_proxy=os.getenv("TOR_PROXY") or None,
            log_level=log_level,
        )

    @property
    def store_path(self) -> Path:
        return self.data_dir / "wallet.json"


def get_mints_from_env() -> list[str]:
    """Mint URLs from ``CASHU_MINTS`` (environment or ``.env``)."""
    load_dotenv(find_dotenv(usecwd=True))
    return _split_list(os.getenv("CASHU_MINTS"))


def configure_logging(level: int | str = logging.INFO) -> None:
    """Install a console handler on the root logger.

    Only applications call this; library modules just create loggers.
    """
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    root_logger.setLevel(level)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    root_logger.addHandler(console_handler)
