"""Tests for mint registration: probing, committing and concurrent adds."""

import asyncio

import pytest

from many_nuts.registry import MintRegistry
from many_nuts.storage import MemoryStore
from many_nuts.types import (
    InvalidInputError,
    MintRecord,
    NetworkError,
    NotFoundError,
    StateError,
    WalletKey,
)


class FailingSaveStore(MemoryStore):
    async def save_mint_record(self, record) -> None:
        raise OSError("disk full")


class ForgetfulStore(MemoryStore):
    """Accepts mint records but never returns them."""

    async def get_mint_record(self, mint_url: str):
        return None


@pytest.fixture
def registry(network, seed_a) -> MintRegistry:
    return MintRegistry(MemoryStore(), seed_a, transport_factory=network)


class TestAddMint:
    @pytest.mark.asyncio
    async def test_add_and_lookup(self, registry, fake_mint) -> None:
        wallet = await registry.add_mint(fake_mint.url + "/")
        assert wallet.key == WalletKey(fake_mint.url, "sat")
        assert await registry.has_mint(fake_mint.url)
        assert await registry.get(fake_mint.url) is wallet
        assert await registry.list_mints() == [wallet.key]

        record = await registry.get_record(fake_mint.url)
        assert record.units == ["sat"]
        assert record.supported_units == ["sat"]
        assert record.mint_info["name"] == "Fake Mint"
        assert await registry.store.get_mint_record(fake_mint.url) == record

    @pytest.mark.asyncio
    async def test_duplicate_add(self, registry, fake_mint) -> None:
        await registry.add_mint(fake_mint.url)
        with pytest.raises(StateError):
            await registry.add_mint(fake_mint.url)

    @pytest.mark.asyncio
    async def test_unsupported_unit(self, registry, fake_mint) -> None:
        with pytest.raises(InvalidInputError):
            await registry.add_mint(fake_mint.url, "usd")
        assert not await registry.has_mint(fake_mint.url)
        assert await registry.store.get_mint_record(fake_mint.url) is None

    @pytest.mark.asyncio
    async def test_invalid_url(self, registry) -> None:
        with pytest.raises(InvalidInputError):
            await registry.add_mint("not a url")

    @pytest.mark.asyncio
    async def test_unreachable_mint_can_be_retried(self, registry, fake_mint) -> None:
        fake_mint.fail_next("/v1/info", NetworkError("timed out"))
        with pytest.raises(NetworkError):
            await registry.add_mint(fake_mint.url)
        assert not await registry.has_mint(fake_mint.url)

        wallet = await registry.add_mint(fake_mint.url)
        assert wallet.key.mint_url == fake_mint.url

    @pytest.mark.asyncio
    async def test_failed_save_leaves_nothing_behind(self, network, seed_a, fake_mint) -> None:
        registry = MintRegistry(FailingSaveStore(), seed_a, transport_factory=network)
        with pytest.raises(OSError):
            await registry.add_mint(fake_mint.url)
        assert await registry.list_mints() == []
        assert await registry.store.get_mint_record(fake_mint.url) is None
        assert fake_mint.closed

    @pytest.mark.asyncio
    async def test_record_must_read_back(self, network, seed_a, fake_mint) -> None:
        registry = MintRegistry(ForgetfulStore(), seed_a, transport_factory=network)
        with pytest.raises(StateError):
            await registry.add_mint(fake_mint.url)
        assert not await registry.has_mint(fake_mint.url)
        assert await registry.store.load_mint_records() == []

    @pytest.mark.asyncio
    async def test_units_merge_with_stored_record(self, registry, fake_mint) -> None:
        await registry.store.save_mint_record(
            MintRecord(
                mint_url=fake_mint.url,
                mint_info={},
                supported_units=["sat", "usd"],
                units=["usd"],
            )
        )
        await registry.add_mint(fake_mint.url)

        stored = await registry.store.get_mint_record(fake_mint.url)
        assert stored.units == ["usd", "sat"]
        assert (await registry.get_record(fake_mint.url)).units == ["usd", "sat"]


class TestConcurrentAdds:
    """Several tasks registering the same mint at once."""

    @pytest.mark.asyncio
    async def test_concurrent_add_mint(self, registry, fake_mint) -> None:
        results = await asyncio.gather(
            registry.add_mint(fake_mint.url),
            registry.add_mint(fake_mint.url),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], StateError)
        assert len(await registry.list_mints()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_ensure_wallet(self, registry, fake_mint) -> None:
        wallets = await asyncio.gather(
            *(registry.ensure_wallet(fake_mint.url) for _ in range(5))
        )
        assert all(w is wallets[0] for w in wallets)
        assert len(await registry.list_mints()) == 1


class TestRemoveAndReload:
    @pytest.mark.asyncio
    async def test_remove_mint(self, registry, fake_mint) -> None:
        await registry.add_mint(fake_mint.url)
        assert await registry.remove_mint(fake_mint.url) == [WalletKey(fake_mint.url, "sat")]
        assert not await registry.has_mint(fake_mint.url)
        with pytest.raises(NotFoundError):
            await registry.get(fake_mint.url)
        with pytest.raises(NotFoundError):
            await registry.remove_mint(fake_mint.url)

    @pytest.mark.asyncio
    async def test_load_rebuilds_wallets(
        self, network, seed_a, fake_mint, open_wallet, fund
    ) -> None:
        store = MemoryStore()
        wallet = await open_wallet(mints=[fake_mint.url], store=store)
        await fund(wallet, fake_mint, 300)

        registry = MintRegistry(store, seed_a, transport_factory=network)
        assert await registry.load() == [WalletKey(fake_mint.url, "sat")]
        assert (await registry.get(fake_mint.url)).balance() == 300

    @pytest.mark.asyncio
    async def test_load_skips_unreachable_mints(
        self, network, seed_a, fake_mint, open_wallet, fund
    ) -> None:
        store = MemoryStore()
        wallet = await open_wallet(mints=[fake_mint.url], store=store)
        await fund(wallet, fake_mint, 300)

        fake_mint.fail_next("/v1/keys", NetworkError("offline"))
        registry = MintRegistry(store, seed_a, transport_factory=network)
        assert await registry.load() == []
        assert await store.load_proofs(WalletKey(fake_mint.url, "sat"))
