"""Multi-mint wallet: one caller-owned object fronting every mint wallet."""

from __future__ import annotations

import logging
import time
from typing import Any, Iterable

from coincurve import PrivateKey

from .backup import BackupCodec, BackupTransport, TokenRecord, WalletRecord
from .invoice import Invoice, decode_invoice
from .mint import MintCapabilities
from .quotes import MeltQuote, MintQuote
from .registry import MintRegistry, TransportFactory
from .seed import SeedManager
from .storage import MemoryStore, WalletStore
from .token import TokenVersion, decode_token
from .transport import AuthProvider
from .types import (
    EventDict,
    EventKind,
    InsufficientBalanceError,
    InvalidInputError,
    NetworkError,
    PaymentResult,
    StateError,
    Transaction,
    WalletError,
    WalletKey,
    validate_amount,
)
from .wallet import MintWallet, SendOptions

logger = logging.getLogger(__name__)

BACKUP_EVENTS_META = "backup_token_events"
BACKUP_CLOCK_META = "backup_created_at"


class MultiMintWallet:
    """Entry point of the library.

    Routes every operation to the wallet of a (mint, unit) pair, aggregates
    balances and history, and publishes or restores encrypted backups.

    Example:
        async with await MultiMintWallet.from_mnemonic(words) as wallet:
            await wallet.add_mint("https://mint.example.com")
            token = await wallet.send("https://mint.example.com", 100)
    """

    def __init__(
        self,
        seed: SeedManager,
        *,
        store: WalletStore | None = None,
        transport_factory: TransportFactory | None = None,
        auth: AuthProvider | None = None,
        backup_transport: BackupTransport | None = None,
        nostr_privkey: PrivateKey | None = None,
        default_unit: str = "sat",
    ) -> None:
        self.seed = seed
        self.store = store or MemoryStore()
        self.registry = MintRegistry(
            self.store, seed, transport_factory=transport_factory, auth=auth
        )
        self.backup_transport = backup_transport
        self.identity = nostr_privkey or seed.identity_key()
        self.codec = BackupCodec(self.identity)
        self.default_unit = default_unit

    @classmethod
    async def create(
        cls,
        seed: bytes | SeedManager,
        *,
        mint_urls: Iterable[str] = (),
        **kwargs: Any,
    ) -> MultiMintWallet:
        """Build the wallet, reload persisted mints and register ``mint_urls``."""
        manager = seed if isinstance(seed, SeedManager) else SeedManager(seed)
        wallet = cls(manager, **kwargs)
        await wallet.registry.load()
        for url in mint_urls:
            if not await wallet.has_mint(url):
                await wallet.registry.ensure_wallet(url, wallet.default_unit)
        return wallet

    @classmethod
    async def from_mnemonic(
        cls, mnemonic: str, passphrase: str = "", **kwargs: Any
    ) -> MultiMintWallet:
        return await cls.create(SeedManager.from_mnemonic(mnemonic, passphrase), **kwargs)

    @classmethod
    async def from_seed_hex(cls, seed_hex: str, **kwargs: Any) -> MultiMintWallet:
        return await cls.create(SeedManager.from_hex(seed_hex), **kwargs)

    async def aclose(self) -> None:
        await self.registry.aclose()
        await self.store.aclose()
        closer = getattr(self.backup_transport, "aclose", None)
        if closer is not None:
            await closer()

    # ───────────────────────── Async context manager ──────────────────────────

    async def __aenter__(self) -> MultiMintWallet:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ───────────────────────── Mint management ─────────────────────────────────

    async def add_mint(self, mint_url: str, unit: str | None = None) -> WalletKey:
        wallet = await self.registry.add_mint(mint_url, unit or self.default_unit)
        return wallet.key

    async def remove_mint(self, mint_url: str) -> list[WalletKey]:
        return await self.registry.remove_mint(mint_url)

    async def list_mints(self) -> list[WalletKey]:
        return await self.registry.list_mints()

    async def has_mint(self, mint_url: str) -> bool:
        return await self.registry.has_mint(mint_url)

    async def get_mint_info(self, mint_url: str) -> MintCapabilities:
        record = await self.registry.get_record(mint_url)
        return MintCapabilities.from_info(record.mint_info)

    async def get_wallet(self, mint_url: str, unit: str | None = None) -> MintWallet:
        return await self.registry.get(mint_url, unit or self.default_unit)

    # ───────────────────────── Balances & history ─────────────────────────────────

    async def get_balance(self, mint_url: str, unit: str | None = None) -> int:
        return (await self.get_wallet(mint_url, unit)).balance()

    async def get_all_balances(self) -> dict[WalletKey, int]:
        return {wallet.key: wallet.balance() for wallet in await self.registry.wallets()}

    async def get_total_balance(self, unit: str | None = None) -> int:
        unit = unit or self.default_unit
        balances = await self.get_all_balances()
        return sum(amount for key, amount in balances.items() if key.unit == unit)

    async def get_all_transactions(self) -> list[Transaction]:
        """Ledger entries of every wallet, oldest first.

        A wallet whose history can't be read is skipped with a warning.
        """
        transactions: list[Transaction] = []
        for wallet in await self.registry.wallets():
            try:
                transactions.extend(await wallet.list_transactions())
            except (WalletError, OSError) as e:
                logger.warning("Skipping history of %s: %s", wallet.key, e)
        return sorted(transactions, key=lambda tx: tx.timestamp)

    async def check_proofs_state(self) -> int:
        """Drop spent proofs across all wallets. Returns the amount dropped."""
        dropped = 0
        for wallet in await self.registry.wallets():
            try:
                dropped += await wallet.check_proofs_state()
            except NetworkError as e:
                logger.warning("Could not check proofs at %s: %s", wallet.key, e)
        return dropped

    async def restore_from_seed(self, batch_size: int = 25, gap_limit: int = 2) -> int:
        """Recover seed-derived proofs at every registered mint."""
        restored = 0
        for wallet in await self.registry.wallets():
            restored += await wallet.restore(batch_size=batch_size, gap_limit=gap_limit)
        return restored

    # ─────────────────────────────── Ecash ─────────────────────────────────────

    async def send(
        self,
        mint_url: str,
        amount: int,
        memo: str | None = None,
        unit: str | None = None,
        *,
        options: SendOptions | None = None,
        version: TokenVersion = 4,
    ) -> str:
        """Create a token worth ``amount`` from one mint's balance."""
        wallet = await self.get_wallet(mint_url, unit)
        token = await wallet.send(amount, memo=memo, options=options)
        return token.serialize(version)

    async def receive(self, token_str: str) -> int:
        """Redeem a token, registering its mint first if it's unknown."""
        token = decode_token(token_str)
        wallet = await self.registry.ensure_wallet(token.mint_url, token.unit)
        return await wallet.receive(token)

    # ───────────────────────── Lightning ─────────────────────────────────

    def decode_invoice(self, invoice: str) -> Invoice:
        return decode_invoice(invoice)

    async def create_mint_quote(
        self, mint_url: str, amount: int, unit: str | None = None
    ) -> MintQuote:
        return await (await self.get_wallet(mint_url, unit)).create_mint_quote(amount)

    async def check_mint_quote(
        self, mint_url: str, quote_id: str, unit: str | None = None
    ) -> MintQuote:
        return await (await self.get_wallet(mint_url, unit)).check_mint_quote(quote_id)

    async def redeem_mint_quote(
        self, mint_url: str, quote_id: str, unit: str | None = None
    ) -> int:
        return await (await self.get_wallet(mint_url, unit)).redeem_mint_quote(quote_id)

    async def create_melt_quote(
        self, mint_url: str, invoice: str, unit: str | None = None
    ) -> MeltQuote:
        return await (await self.get_wallet(mint_url, unit)).create_melt_quote(invoice)

    async def check_melt_quote(
        self, mint_url: str, quote_id: str, unit: str | None = None
    ) -> MeltQuote:
        return await (await self.get_wallet(mint_url, unit)).check_melt_quote(quote_id)

    async def pay_invoice(
        self,
        mint_url: str | None,
        invoice: str,
        max_fee: int | None = None,
        unit: str | None = None,
    ) -> PaymentResult:
        """Pay a BOLT-11 invoice through a melt at ``mint_url``.

        Without a mint URL the wallet with the largest balance is used.

        Raises:
            InvalidInputError: If the mint's fee reserve exceeds ``max_fee``
        """
        if max_fee is not None:
            validate_amount(max_fee, allow_zero=True)
        self.decode_invoice(invoice)
        if mint_url is None:
            wallet = await self._richest_wallet(unit or self.default_unit)
        else:
            wallet = await self.get_wallet(mint_url, unit)
        quote = await wallet.create_melt_quote(invoice)
        if max_fee is not None and quote.fee_reserve > max_fee:
            raise InvalidInputError(
                f"Fee reserve {quote.fee_reserve} exceeds the maximum fee of {max_fee}"
            )
        return await wallet.melt(quote.id)

    async def _richest_wallet(self, unit: str) -> MintWallet:
        wallets = [w for w in await self.registry.wallets() if w.unit == unit]
        if not wallets:
            raise InsufficientBalanceError(f"No wallet holds {unit}")
        return max(wallets, key=lambda w: w.proofs.available_balance())

    # ───────────────────────── Backup ─────────────────────────────────

    def _backup_transport(self) -> BackupTransport:
        if self.backup_transport is None:
            raise StateError("No backup transport configured")
        return self.backup_transport

    async def backup(self) -> list[str]:
        """Publish the wallet record and the token records of every wallet.

        Large proof sets are split over several token records. Every event is
        encoded before the first one is published. Each new token record
        tombstones the records published last time.
        Record timestamps strictly increase from one backup to the next.
        Returns the ids of the new token records.
        """
        transport = self._backup_transport()
        wallets = await self.registry.wallets()
        mints = sorted({w.mint_url for w in wallets})
        wallet_record = WalletRecord(
            privkey=self.seed.wallet_record_key().secret.hex(), mints=mints
        )
        last = await self.store.get_meta(BACKUP_CLOCK_META) or 0
        created_at = max(int(time.time()), last + 1)
        wallet_event = self.codec.encode_wallet(wallet_record, created_at=created_at)

        previous: list[str] = await self.store.get_meta(BACKUP_EVENTS_META) or []
        token_events: list[EventDict] = []
        for wallet in wallets:
            record = TokenRecord(
                mint=wallet.mint_url,
                unit=wallet.unit,
                proofs=list(wallet.proofs.unspent()),
                deleted=list(previous),
            )
            token_events.extend(self.codec.encode_tokens(record, created_at=created_at))
        deletion = None
        if previous and token_events:
            deletion = self.codec.encode_deletion(previous, EventKind.Token)

        await transport.publish(wallet_event)
        published: list[str] = []
        for event in token_events:
            await transport.publish(event)
            published.append(event["id"])

        if deletion is not None:
            await transport.publish(deletion)
        await self.store.set_meta(BACKUP_EVENTS_META, published)
        await self.store.set_meta(BACKUP_CLOCK_META, created_at)
        logger.info(
            "Backed up %d wallet(s) in %d token record(s)", len(wallets), len(published)
        )
        return published

    async def restore_from_backup(self) -> int:
        """Fetch backups, reconcile them and import the surviving proofs.

        Mints that can't be registered are skipped with a warning. Returns
        the amount imported.
        """
        transport = self._backup_transport()
        events = await transport.fetch(self.codec.pubkey, [EventKind.Wallet, EventKind.Token])
        wallet_record = self.codec.latest_wallet(events)
        records = self.codec.token_records(events)
        proofs_by_key = self.codec.reconcile(records)

        keys = set(proofs_by_key)
        if wallet_record is not None:
            keys.update(WalletKey(url, self.default_unit) for url in wallet_record.mints)

        imported = 0
        for key in sorted(keys):
            try:
                wallet = await self.registry.ensure_wallet(key.mint_url, key.unit)
            except WalletError as e:
                logger.warning("Skipping backup of %s: %s", key, e)
                continue
            before = wallet.balance()
            await wallet.import_proofs(proofs_by_key.get(key, []))
            try:
                await wallet.check_proofs_state()
            except NetworkError as e:
                logger.warning("Could not check restored proofs at %s: %s", key, e)
            imported += max(wallet.balance() - before, 0)

        await self.store.set_meta(BACKUP_EVENTS_META, self.codec.surviving_ids(records))
        newest = max((r.created_at for r in records), default=0)
        if newest > (await self.store.get_meta(BACKUP_CLOCK_META) or 0):
            await self.store.set_meta(BACKUP_CLOCK_META, newest)
        logger.info("Restored %d from backup", imported)
        return imported
