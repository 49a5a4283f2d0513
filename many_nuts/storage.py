"""Wallet persistence: the abstract store plus memory and JSON-file backends."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .types import InvalidInputError, MintRecord, Proof, Transaction, WalletKey

logger = logging.getLogger(__name__)


def _key(wallet_key: WalletKey) -> str:
    return f"{wallet_key.mint_url}|{wallet_key.unit}"


class WalletStore(ABC):
    """Source of truth for everything the wallet owns.

    The registry and wallet instances are caches rebuilt from this store.
    """

    # ───────────────────────── Mint records ─────────────────────────────────

    @abstractmethod
    async def load_mint_records(self) -> list[MintRecord]: ...

    @abstractmethod
    async def get_mint_record(self, mint_url: str) -> MintRecord | None: ...

    @abstractmethod
    async def save_mint_record(self, record: MintRecord) -> None: ...

    @abstractmethod
    async def delete_mint_record(self, mint_url: str) -> None: ...

    # ───────────────────────── Proofs ─────────────────────────────────

    @abstractmethod
    async def load_proofs(self, wallet_key: WalletKey) -> list[Proof]: ...

    @abstractmethod
    async def save_proofs(self, wallet_key: WalletKey, proofs: list[Proof]) -> None:
        """Replace the stored proof set of a wallet."""

    # ───────────────────────── Ledger ─────────────────────────────────

    @abstractmethod
    async def append_transaction(self, wallet_key: WalletKey, tx: Transaction) -> None: ...

    @abstractmethod
    async def load_transactions(self, wallet_key: WalletKey) -> list[Transaction]: ...

    # ───────────────────────── Quotes & counters ─────────────────────────────────

    @abstractmethod
    async def save_quote(self, wallet_key: WalletKey, quote: dict[str, Any]) -> None: ...

    @abstractmethod
    async def load_quotes(self, wallet_key: WalletKey) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def get_counter(self, wallet_key: WalletKey, keyset_id: str) -> int: ...

    @abstractmethod
    async def set_counter(self, wallet_key: WalletKey, keyset_id: str, value: int) -> None: ...

    # ───────────────────────── Misc ─────────────────────────────────

    @abstractmethod
    async def get_meta(self, name: str) -> Any: ...

    @abstractmethod
    async def set_meta(self, name: str, value: Any) -> None: ...

    @abstractmethod
    async def delete_wallet(self, wallet_key: WalletKey) -> None:
        """Drop proofs and quotes of a wallet. Ledger and counters are kept."""

    async def aclose(self) -> None:
        return None


def _empty_document() -> dict[str, Any]:
    return {
        "version": 1,
        "mints": {},
        "proofs": {},
        "transactions": {},
        "quotes": {},
        "counters": {},
        "meta": {},
    }


class MemoryStore(WalletStore):
    """Dict-backed store. Everything lives in one JSON-compatible document."""

    def __init__(self, document: dict[str, Any] | None = None) -> None:
        self._doc = document if document is not None else _empty_document()

    async def _commit(self) -> None:
        """Hook called after every mutation."""

    async def load_mint_records(self) -> list[MintRecord]:
        return [MintRecord.from_dict(copy.deepcopy(r)) for r in self._doc["mints"].values()]

    async def get_mint_record(self, mint_url: str) -> MintRecord | None:
        data = self._doc["mints"].get(mint_url)
        return MintRecord.from_dict(copy.deepcopy(data)) if data is not None else None

    async def save_mint_record(self, record: MintRecord) -> None:
        self._doc["mints"][record.mint_url] = copy.deepcopy(record.to_dict())
        await self._commit()

    async def delete_mint_record(self, mint_url: str) -> None:
        if self._doc["mints"].pop(mint_url, None) is not None:
            await self._commit()

    async def load_proofs(self, wallet_key: WalletKey) -> list[Proof]:
        return copy.deepcopy(self._doc["proofs"].get(_key(wallet_key), []))

    async def save_proofs(self, wallet_key: WalletKey, proofs: list[Proof]) -> None:
        self._doc["proofs"][_key(wallet_key)] = copy.deepcopy(list(proofs))
        await self._commit()

    async def append_transaction(self, wallet_key: WalletKey, tx: Transaction) -> None:
        self._doc["transactions"].setdefault(_key(wallet_key), []).append(tx.to_dict())
        await self._commit()

    async def load_transactions(self, wallet_key: WalletKey) -> list[Transaction]:
        return [Transaction.from_dict(t) for t in self._doc["transactions"].get(_key(wallet_key), [])]

    async def save_quote(self, wallet_key: WalletKey, quote: dict[str, Any]) -> None:
        self._doc["quotes"].setdefault(_key(wallet_key), {})[quote["id"]] = copy.deepcopy(quote)
        await self._commit()

    async def load_quotes(self, wallet_key: WalletKey) -> list[dict[str, Any]]:
        return copy.deepcopy(list(self._doc["quotes"].get(_key(wallet_key), {}).values()))

    async def get_counter(self, wallet_key: WalletKey, keyset_id: str) -> int:
        return int(self._doc["counters"].get(_key(wallet_key), {}).get(keyset_id, 0))

    async def set_counter(self, wallet_key: WalletKey, keyset_id: str, value: int) -> None:
        self._doc["counters"].setdefault(_key(wallet_key), {})[keyset_id] = value
        await self._commit()

    async def get_meta(self, name: str) -> Any:
        return copy.deepcopy(self._doc["meta"].get(name))

    async def set_meta(self, name: str, value: Any) -> None:
        self._doc["meta"][name] = copy.deepcopy(value)
        await self._commit()

    async def delete_wallet(self, wallet_key: WalletKey) -> None:
        self._doc["proofs"].pop(_key(wallet_key), None)
        self._doc["quotes"].pop(_key(wallet_key), None)
        await self._commit()


class JsonFileStore(MemoryStore):
    """Store persisted as one JSON file, rewritten atomically on every change."""

    FILENAME = "wallet.json"

    def __init__(self, path: str | Path) -> None:
        path = Path(path).expanduser()
        if path.is_dir() or not path.suffix:
            path = path / self.FILENAME
        self.path = path
        self._write_lock = asyncio.Lock()
        super().__init__(self._read())

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return _empty_document()
        try:
            document = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise InvalidInputError(f"Cannot read wallet file {self.path}: {e}") from e
        base = _empty_document()
        base.update(document)
        return base

    def _write(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".wallet-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    async def _commit(self) -> None:
        payload = json.dumps(self._doc, indent=2, sort_keys=True)
        async with self._write_lock:
            await asyncio.to_thread(self._write, payload)
        logger.debug("Wrote wallet state to %s", self.path)
