"""Shared fixtures: an in-memory Cashu mint and an in-memory relay."""

from __future__ import annotations

import hashlib
import secrets
from types import SimpleNamespace
from typing import Any, Sequence
from unittest.mock import patch
from uuid import uuid4

import pytest
import pytest_asyncio
from coincurve import PrivateKey, PublicKey

from many_nuts.crypto import CURVE_ORDER, derive_keyset_id, hash_e, hash_to_curve
from many_nuts.orchestrator import MultiMintWallet
from many_nuts.seed import SeedManager
from many_nuts.storage import MemoryStore, WalletStore
from many_nuts.types import MintError, NetworkError, NotFoundError

SEED_A = bytes(range(64))
SEED_B = bytes(range(64, 128))


def _split(amount: int) -> list[int]:
    return [1 << i for i in range(amount.bit_length()) if amount >> i & 1]


class FakeMint:
    """Cashu mint speaking the /v1 API through the ``Transport`` interface.

    Signs outputs with real BDHKE, tracks spent secrets, and lets tests pay
    invoices, settle melts or inject failures.
    """

    def __init__(
        self,
        url: str = "https://mint-a.test",
        *,
        unit: str = "sat",
        input_fee_ppk: int = 0,
        fee_reserve: int = 0,
        lightning_fee: int = 0,
        dleq: bool = True,
        levels: int = 16,
    ) -> None:
        self.url = url
        self.unit = unit
        self.input_fee_ppk = input_fee_ppk
        self.fee_reserve = fee_reserve
        self.lightning_fee = lightning_fee
        self.dleq = dleq
        self.privkeys = {
            1 << i: PrivateKey(hashlib.sha256(f"{url}/{unit}/{i}".encode()).digest())
            for i in range(levels)
        }
        self.keys = {
            str(amount): pk.public_key.format(compressed=True).hex()
            for amount, pk in self.privkeys.items()
        }
        self.keyset_id = derive_keyset_id(self.keys)
        self.spent: set[str] = set()
        self.signed: dict[str, dict[str, Any]] = {}
        self.mint_quotes: dict[str, dict[str, Any]] = {}
        self.melt_quotes: dict[str, dict[str, Any]] = {}
        self.invoice_amounts: dict[str, int] = {}
        self.melt_behavior = "paid"
        self.failures: dict[str, Exception] = {}
        self.requests: list[tuple[str, str]] = []
        self.closed = False

    # ───────────────────────── Test controls ─────────────────────────────────

    def pay_mint_quote(self, quote_id: str) -> None:
        self.mint_quotes[quote_id]["state"] = "PAID"

    def register_invoice(self, request: str, amount: int) -> None:
        self.invoice_amounts[request] = amount

    def fail_next(self, path_prefix: str, error: Exception) -> None:
        self.failures[path_prefix] = error

    def settle_melt(self, quote_id: str, *, paid: bool = True) -> None:
        quote = self.melt_quotes[quote_id]
        if paid:
            quote["state"] = "PAID"
            quote["payment_preimage"] = "00" * 32
            quote["change"] = self._change(quote.pop("_excess"), quote.pop("_outputs"))
        else:
            quote["state"] = "UNPAID"
            for Y in quote.pop("_input_ys"):
                self.spent.discard(Y)

    # ───────────────────────── Transport interface ─────────────────────────────

    async def request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        assert url.startswith(self.url), url
        path = url[len(self.url) :]
        self.requests.append((method, path))
        for prefix in list(self.failures):
            if path.startswith(prefix):
                raise self.failures.pop(prefix)
        body = json or {}

        if method == "GET" and path == "/v1/info":
            return self._info()
        if method == "GET" and path == "/v1/keys":
            return {"keysets": [self._keyset()]}
        if method == "GET" and path.startswith("/v1/keys/"):
            if path.rsplit("/", 1)[1] != self.keyset_id:
                raise MintError("unknown keyset", code=12001)
            return {"keysets": [self._keyset()]}
        if method == "GET" and path == "/v1/keysets":
            return {
                "keysets": [
                    {
                        "id": self.keyset_id,
                        "unit": self.unit,
                        "active": True,
                        "input_fee_ppk": self.input_fee_ppk,
                    }
                ]
            }
        if method == "POST" and path == "/v1/mint/quote/bolt11":
            return self._create_mint_quote(body)
        if method == "GET" and path.startswith("/v1/mint/quote/bolt11/"):
            return self._public(self._mint_quote(path))
        if method == "POST" and path == "/v1/mint/bolt11":
            return self._mint(body)
        if method == "POST" and path == "/v1/melt/quote/bolt11":
            return self._create_melt_quote(body)
        if method == "GET" and path.startswith("/v1/melt/quote/bolt11/"):
            return self._public(self._melt_quote(path))
        if method == "POST" and path == "/v1/melt/bolt11":
            return self._melt(body)
        if method == "POST" and path == "/v1/swap":
            return self._swap(body)
        if method == "POST" and path == "/v1/checkstate":
            return {
                "states": [
                    {"Y": Y, "state": "SPENT" if Y in self.spent else "UNSPENT", "witness": None}
                    for Y in body["Ys"]
                ]
            }
        if method == "POST" and path == "/v1/restore":
            known = [o for o in body["outputs"] if o["B_"] in self.signed]
            return {"outputs": known, "signatures": [self.signed[o["B_"]] for o in known]}
        raise NotFoundError(f"FakeMint has no route {method} {path}")

    async def aclose(self) -> None:
        self.closed = True

    # ───────────────────────── Mint internals ─────────────────────────────────

    def _info(self) -> dict[str, Any]:
        return {
            "name": "Fake Mint",
            "version": "fake/1.0",
            "description": "in-memory test mint",
            "contact": [],
            "nuts": {
                "4": {"methods": [{"method": "bolt11", "unit": self.unit}], "disabled": False},
                "5": {"methods": [{"method": "bolt11", "unit": self.unit}], "disabled": False},
                "7": {"supported": True},
                "8": {"supported": True},
                "9": {"supported": True},
                "12": {"supported": self.dleq},
            },
        }

    def _keyset(self) -> dict[str, Any]:
        return {"id": self.keyset_id, "unit": self.unit, "keys": dict(self.keys)}

    @staticmethod
    def _public(quote: dict[str, Any]) -> dict[str, Any]:
        return {k: v for k, v in quote.items() if not k.startswith("_")}

    def _mint_quote(self, path: str) -> dict[str, Any]:
        quote = self.mint_quotes.get(path.rsplit("/", 1)[1])
        if quote is None:
            raise MintError("quote not found", code=20007)
        return quote

    def _melt_quote(self, path: str) -> dict[str, Any]:
        quote = self.melt_quotes.get(path.rsplit("/", 1)[1])
        if quote is None:
            raise MintError("quote not found", code=20007)
        return quote

    def _sign(self, output: dict[str, Any], amount: int | None = None) -> dict[str, Any]:
        amount = output["amount"] if amount is None else amount
        if amount not in self.privkeys:
            raise MintError(f"invalid output amount {amount}", code=11005)
        k = self.privkeys[amount]
        B_ = PublicKey(bytes.fromhex(output["B_"]))
        C_ = B_.multiply(k.secret)
        signature: dict[str, Any] = {
            "id": self.keyset_id,
            "amount": amount,
            "C_": C_.format(compressed=True).hex(),
        }
        if self.dleq:
            p = PrivateKey(secrets.token_bytes(32))
            R1 = p.public_key
            R2 = B_.multiply(p.secret)
            e = hash_e(R1, R2, k.public_key, C_)
            s = (int.from_bytes(p.secret, "big") + int.from_bytes(e, "big") * int.from_bytes(k.secret, "big")) % CURVE_ORDER
            signature["dleq"] = {"e": e.hex(), "s": s.to_bytes(32, "big").hex()}
        self.signed[output["B_"]] = signature
        return signature

    def _verify_inputs(self, proofs: list[dict[str, Any]]) -> list[str]:
        ys = []
        for proof in proofs:
            Y = hash_to_curve(proof["secret"].encode())
            expected = Y.multiply(self.privkeys[proof["amount"]].secret)
            if expected.format(compressed=True).hex() != proof["C"]:
                raise MintError("could not verify proofs", code=10003)
            y_hex = Y.format(compressed=True).hex()
            if y_hex in self.spent or y_hex in ys:
                raise MintError("Token already spent.", code=11001)
            ys.append(y_hex)
        return ys

    def _fee(self, proofs: list[dict[str, Any]]) -> int:
        return (len(proofs) * self.input_fee_ppk + 999) // 1000

    def _change(self, excess: int, outputs: list[dict[str, Any]]) -> list[dict[str, Any]]:
        amounts = _split(excess)[: len(outputs)]
        return [self._sign(output, amount) for output, amount in zip(outputs, amounts)]

    def _create_mint_quote(self, body: dict[str, Any]) -> dict[str, Any]:
        quote_id = uuid4().hex
        self.mint_quotes[quote_id] = {
            "quote": quote_id,
            "request": f"lnbcfake{quote_id}",
            "amount": body["amount"],
            "unit": body["unit"],
            "state": "UNPAID",
            "expiry": 2_000_000_000,
        }
        return dict(self.mint_quotes[quote_id])

    def _mint(self, body: dict[str, Any]) -> dict[str, Any]:
        quote = self.mint_quotes.get(body["quote"])
        if quote is None:
            raise MintError("quote not found", code=20007)
        if quote["state"] == "UNPAID":
            raise MintError("quote not paid", code=20001)
        if quote["state"] == "ISSUED":
            raise MintError("quote already issued", code=20002)
        if sum(o["amount"] for o in body["outputs"]) != quote["amount"]:
            raise MintError("outputs do not match quote amount", code=11002)
        signatures = [self._sign(o) for o in body["outputs"]]
        quote["state"] = "ISSUED"
        return {"signatures": signatures}

    def _create_melt_quote(self, body: dict[str, Any]) -> dict[str, Any]:
        amount = self.invoice_amounts.get(body["request"])
        if amount is None:
            raise MintError("unknown invoice", code=20008)
        quote_id = uuid4().hex
        self.melt_quotes[quote_id] = {
            "quote": quote_id,
            "request": body["request"],
            "amount": amount,
            "fee_reserve": self.fee_reserve,
            "unit": body["unit"],
            "state": "UNPAID",
            "expiry": 2_000_000_000,
            "payment_preimage": None,
            "change": None,
        }
        return self._public(self.melt_quotes[quote_id])

    def _melt(self, body: dict[str, Any]) -> dict[str, Any]:
        quote = self.melt_quotes.get(body["quote"])
        if quote is None:
            raise MintError("quote not found", code=20007)
        if quote["state"] != "UNPAID":
            raise MintError(f"quote is {quote['state']}", code=20005)
        inputs = body["inputs"]
        ys = self._verify_inputs(inputs)
        available = sum(p["amount"] for p in inputs) - self._fee(inputs)
        if available < quote["amount"] + quote["fee_reserve"]:
            raise MintError("not enough inputs provided for melt", code=11002)
        self.spent.update(ys)
        excess = available - quote["amount"] - self.lightning_fee
        outputs = body.get("outputs") or []
        if self.melt_behavior == "pending":
            quote["state"] = "PENDING"
            quote["_excess"] = excess
            quote["_outputs"] = outputs
            quote["_input_ys"] = ys
        else:
            quote["state"] = "PAID"
            quote["payment_preimage"] = "00" * 32
            quote["change"] = self._change(excess, outputs)
        return self._public(quote)

    def _swap(self, body: dict[str, Any]) -> dict[str, Any]:
        inputs, outputs = body["inputs"], body["outputs"]
        ys = self._verify_inputs(inputs)
        expected = sum(p["amount"] for p in inputs) - self._fee(inputs)
        if sum(o["amount"] for o in outputs) != expected:
            raise MintError("inputs and outputs not balanced", code=11002)
        signatures = [self._sign(o) for o in outputs]
        self.spent.update(ys)
        return {"signatures": signatures}


class FakeRelay:
    """Backup transport keeping published events in memory."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def publish(self, event: dict[str, Any]) -> bool:
        self.events.append(dict(event))
        return True

    async def fetch(self, author: str, kinds: list[int]) -> list[dict[str, Any]]:
        return [e for e in self.events if e["pubkey"] == author and e["kind"] in kinds]


class UnreachableMint:
    """Transport for a mint that is offline."""

    def __init__(self, url: str) -> None:
        self.url = url

    async def request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        raise NetworkError(f"Cannot reach {self.url}")

    async def aclose(self) -> None:
        pass


class MintNetwork:
    """Transport factory routing mint URLs to fake mints."""

    def __init__(self, *mints: FakeMint) -> None:
        self.mints = {mint.url: mint for mint in mints}

    def add(self, mint: FakeMint) -> FakeMint:
        self.mints[mint.url] = mint
        return mint

    def __call__(self, mint_url: str) -> FakeMint | UnreachableMint:
        return self.mints.get(mint_url) or UnreachableMint(mint_url)


@pytest.fixture
def make_mint() -> type[FakeMint]:
    """Factory for extra mints with their own fees or behavior."""
    return FakeMint


@pytest.fixture
def fake_mint() -> FakeMint:
    return FakeMint()


@pytest.fixture
def network(fake_mint: FakeMint) -> MintNetwork:
    return MintNetwork(fake_mint)


@pytest.fixture
def fake_relay() -> FakeRelay:
    return FakeRelay()


@pytest.fixture
def seed_a() -> SeedManager:
    return SeedManager(SEED_A)


@pytest.fixture
def seed_b() -> SeedManager:
    return SeedManager(SEED_B)


def fake_bolt11(amount_msat: int | None = 100_000, description: str = "coffee") -> SimpleNamespace:
    return SimpleNamespace(
        amount_msat=amount_msat,
        description=description,
        expiry=600,
        date=1_700_000_000,
        payment_hash="ab" * 32,
    )


@pytest.fixture
def bolt11_decoder():
    """Patch the BOLT-11 parser; tests set ``return_value`` as needed."""
    with patch("many_nuts.invoice.bolt11.decode", return_value=fake_bolt11()) as decoder:
        yield decoder


@pytest_asyncio.fixture
async def open_wallet(network: MintNetwork, fake_relay: FakeRelay):
    """Factory for ``MultiMintWallet`` instances wired to the fake network."""
    opened: list[MultiMintWallet] = []

    async def _open(
        seed: bytes | SeedManager = SEED_A,
        *,
        mints: Sequence[str] = (),
        store: WalletStore | None = None,
        backup: bool = True,
    ) -> MultiMintWallet:
        wallet = await MultiMintWallet.create(
            seed,
            mint_urls=mints,
            store=store or MemoryStore(),
            transport_factory=network,
            backup_transport=fake_relay if backup else None,
        )
        opened.append(wallet)
        return wallet

    yield _open
    for wallet in opened:
        await wallet.aclose()


@pytest.fixture
def fund():
    """Mint ``amount`` into a wallet through a paid mint quote."""

    async def _fund(wallet: MultiMintWallet, mint: FakeMint, amount: int) -> int:
        quote = await wallet.create_mint_quote(mint.url, amount)
        mint.pay_mint_quote(quote.id)
        return await wallet.redeem_mint_quote(mint.url, quote.id)

    return _fund
