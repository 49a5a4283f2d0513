"""Registry of known mints and the wallet instances opened at them."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Callable

from .locks import AsyncRWLock
from .mint import Mint, MintCapabilities, normalize_mint_url
from .seed import SeedManager
from .storage import WalletStore
from .transport import AuthProvider, Transport, TransportSelector
from .types import (
    InvalidInputError,
    MintRecord,
    NotFoundError,
    StateError,
    WalletError,
    WalletKey,
)
from .wallet import MintWallet

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str], Transport]


class MintRegistry:
    """Known mints, keyed by ``WalletKey``.

    Adding a mint probes it outside the lock and only then commits the
    record and the wallet instance together. Until that commit the mint is
    invisible to lookups, and a failed commit leaves nothing behind.
    """

    def __init__(
        self,
        store: WalletStore,
        seed: SeedManager,
        *,
        transport_factory: TransportFactory | None = None,
        auth: AuthProvider | None = None,
    ) -> None:
        self.store = store
        self.seed = seed
        self.transport_factory = transport_factory or TransportSelector()
        self.auth = auth
        self._lock = AsyncRWLock()
        self._wallets: dict[WalletKey, MintWallet] = {}
        self._records: dict[str, MintRecord] = {}
        self._clients: dict[str, Mint] = {}
        self._pending: dict[WalletKey, asyncio.Event] = {}

    # ───────────────────────── Construction ─────────────────────────────────

    def _client(self, mint_url: str) -> Mint:
        client = self._clients.get(mint_url)
        if client is None:
            client = Mint(mint_url, transport=self.transport_factory(mint_url), auth=self.auth)
        return client

    def _build(self, key: WalletKey, client: Mint, capabilities: MintCapabilities) -> MintWallet:
        return MintWallet(
            key,
            mint=client,
            store=self.store,
            material=self.seed.wallet_material(key),
            capabilities=capabilities,
        )

    async def load(self) -> list[WalletKey]:
        """Rebuild wallet instances from persisted mint records.

        Mints whose keysets can't be reloaded are skipped with a warning;
        their proofs stay in the store for the next start.
        """
        loaded: list[WalletKey] = []
        for record in await self.store.load_mint_records():
            client = self._client(record.mint_url)
            try:
                keysets = await client.load_keysets()
            except WalletError as e:
                logger.warning("Skipping mint %s: keyset reload failed (%s)", record.mint_url, e)
                if record.mint_url not in self._clients:
                    await client.aclose()
                continue

            capabilities = MintCapabilities.from_info(record.mint_info)
            wallets: dict[WalletKey, MintWallet] = {}
            for unit in record.units:
                key = WalletKey(record.mint_url, unit)
                wallet = self._build(key, client, capabilities)
                try:
                    wallet.set_keysets(keysets)
                except WalletError as e:
                    logger.warning("Skipping %s: %s", key, e)
                    continue
                await wallet.load()
                wallets[key] = wallet

            async with self._lock.write():
                self._clients[record.mint_url] = client
                self._records[record.mint_url] = record
                self._wallets.update(wallets)
            loaded.extend(wallets)
        return loaded

    # ───────────────────────── Add / remove ─────────────────────────────────

    async def add_mint(self, mint_url: str, unit: str = "sat") -> MintWallet:
        """Probe a mint and register a wallet for ``unit`` at it.

        Raises:
            InvalidInputError: If the URL is malformed or the unit unsupported
            StateError: If the wallet is already registered or being added
            NetworkError: If the mint can't be reached
        """
        url = normalize_mint_url(mint_url)
        key = WalletKey(url, unit)
        async with self._lock.write():
            if key in self._wallets or key in self._pending:
                raise StateError(f"{key} is already registered")
            done = self._pending[key] = asyncio.Event()

        try:
            client = self._client(url)
            fresh_client = url not in self._clients
            try:
                wallet, record = await self._probe(key, client)
                await self._commit(key, wallet, record, client)
            except BaseException:
                if fresh_client:
                    await client.aclose()
                raise
        finally:
            async with self._lock.write():
                self._pending.pop(key, None)
            done.set()

        logger.info("Registered mint %s", key)
        return wallet

    async def _probe(self, key: WalletKey, client: Mint) -> tuple[MintWallet, MintRecord]:
        info = dict(await client.get_info())
        keysets = await client.load_keysets()
        supported_units = sorted({ks.unit for ks in keysets.values()})
        if key.unit not in supported_units:
            raise InvalidInputError(f"{key.mint_url} does not support unit {key.unit}")

        wallet = self._build(key, client, MintCapabilities.from_info(info))
        wallet.set_keysets(keysets)
        await wallet.load()

        record = MintRecord(
            mint_url=key.mint_url,
            mint_info=info,
            supported_units=supported_units,
            units=[key.unit],
            keysets=[ks.to_dict() for ks in keysets.values()],
        )
        return wallet, record

    async def _commit(
        self, key: WalletKey, wallet: MintWallet, record: MintRecord, client: Mint
    ) -> None:
        async with self._lock.write():
            previous = await self.store.get_mint_record(key.mint_url)
            if previous is not None:
                units = list(previous.units)
                if key.unit not in units:
                    units.append(key.unit)
                record = replace(record, units=units)
            try:
                await self.store.save_mint_record(record)
                stored = await self.store.get_mint_record(key.mint_url)
                if stored is None or key.unit not in stored.units:
                    raise StateError(f"Mint record for {key} did not persist")
            except BaseException:
                if previous is None:
                    await self.store.delete_mint_record(key.mint_url)
                else:
                    await self.store.save_mint_record(previous)
                raise
            self._records[key.mint_url] = record
            self._clients[key.mint_url] = client
            self._wallets[key] = wallet

    async def ensure_wallet(self, mint_url: str, unit: str = "sat") -> MintWallet:
        """Return the wallet for (mint, unit), registering the mint if needed.

        Tolerates another task adding the same mint concurrently.
        """
        url = normalize_mint_url(mint_url)
        key = WalletKey(url, unit)
        for _ in range(3):
            async with self._lock.read():
                wallet = self._wallets.get(key)
                pending = self._pending.get(key)
            if wallet is not None:
                return wallet
            if pending is not None:
                await pending.wait()
                continue
            try:
                return await self.add_mint(url, unit)
            except StateError:
                continue
        return await self.get(url, unit)

    async def remove_mint(self, mint_url: str) -> list[WalletKey]:
        """Forget a mint and every wallet unit opened at it."""
        url = normalize_mint_url(mint_url)
        async with self._lock.write():
            keys = [key for key in self._wallets if key.mint_url == url]
            if not keys and url not in self._records:
                raise NotFoundError(f"Mint {url} is not registered")
            for key in keys:
                balance = self._wallets[key].balance()
                if balance:
                    logger.warning("Removing %s drops a balance of %d %s", key, balance, key.unit)
                await self.store.delete_wallet(key)
            await self.store.delete_mint_record(url)
            for key in keys:
                del self._wallets[key]
            self._records.pop(url, None)
            client = self._clients.pop(url, None)
        if client is not None:
            await client.aclose()
        logger.info("Removed mint %s", url)
        return keys

    # ───────────────────────── Lookups ─────────────────────────────────

    async def list_mints(self) -> list[WalletKey]:
        async with self._lock.read():
            return sorted(self._wallets)

    async def has_mint(self, mint_url: str) -> bool:
        url = normalize_mint_url(mint_url)
        async with self._lock.read():
            return any(key.mint_url == url for key in self._wallets)

    async def get(self, mint_url: str, unit: str = "sat") -> MintWallet:
        key = WalletKey(normalize_mint_url(mint_url), unit)
        async with self._lock.read():
            wallet = self._wallets.get(key)
        if wallet is None:
            raise NotFoundError(f"No wallet for {key}")
        return wallet

    async def wallets(self) -> list[MintWallet]:
        async with self._lock.read():
            return [self._wallets[key] for key in sorted(self._wallets)]

    async def get_record(self, mint_url: str) -> MintRecord:
        url = normalize_mint_url(mint_url)
        async with self._lock.read():
            record = self._records.get(url)
        if record is None:
            raise NotFoundError(f"Mint {url} is not registered")
        return record

    async def aclose(self) -> None:
        async with self._lock.write():
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            await client.aclose()
