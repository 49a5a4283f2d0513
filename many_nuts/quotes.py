"""Mint and melt quote state machines."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from .types import NotFoundError, StateError, WalletKey

if TYPE_CHECKING:
    from .storage import WalletStore

logger = logging.getLogger(__name__)


class MintQuoteState(str, Enum):
    UNPAID = "UNPAID"
    PAID = "PAID"
    ISSUED = "ISSUED"

    @property
    def rank(self) -> int:
        return _MINT_RANK[self]


class MeltQuoteState(str, Enum):
    UNPAID = "UNPAID"
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"

    @property
    def rank(self) -> int:
        return _MELT_RANK[self]

    @property
    def terminal(self) -> bool:
        return self in (MeltQuoteState.PAID, MeltQuoteState.FAILED)


_MINT_RANK = {MintQuoteState.UNPAID: 0, MintQuoteState.PAID: 1, MintQuoteState.ISSUED: 2}
_MELT_RANK = {
    MeltQuoteState.UNPAID: 0,
    MeltQuoteState.PENDING: 1,
    MeltQuoteState.PAID: 2,
    MeltQuoteState.FAILED: 2,
}


@dataclass
class MintQuote:
    """Lightning invoice that, once paid, lets the wallet mint ``amount``."""

    id: str
    request: str
    amount: int
    unit: str
    state: MintQuoteState = MintQuoteState.UNPAID
    expiry: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "mint",
            "id": self.id,
            "request": self.request,
            "amount": self.amount,
            "unit": self.unit,
            "state": self.state.value,
            "expiry": self.expiry,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MintQuote:
        return cls(
            id=data["id"],
            request=data["request"],
            amount=int(data["amount"]),
            unit=data["unit"],
            state=MintQuoteState(data.get("state", "UNPAID")),
            expiry=data.get("expiry"),
        )


@dataclass
class MeltQuote:
    """Mint's offer to pay a Lightning invoice for ``amount + fee_reserve``.

    ``input_secrets`` holds the proofs committed to the melt while it is
    in flight; they stay reserved until the quote reaches a terminal state.
    """

    id: str
    request: str
    amount: int
    fee_reserve: int
    unit: str
    state: MeltQuoteState = MeltQuoteState.UNPAID
    expiry: int | None = None
    input_secrets: list[str] = field(default_factory=list)
    preimage: str | None = None
    fee_paid: int = 0
    # NUT-08 blank outputs: keyset and counter range they were derived from
    change_keyset: str | None = None
    change_counter: int = 0
    change_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "melt",
            "id": self.id,
            "request": self.request,
            "amount": self.amount,
            "fee_reserve": self.fee_reserve,
            "unit": self.unit,
            "state": self.state.value,
            "expiry": self.expiry,
            "input_secrets": list(self.input_secrets),
            "preimage": self.preimage,
            "fee_paid": self.fee_paid,
            "change_keyset": self.change_keyset,
            "change_counter": self.change_counter,
            "change_count": self.change_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MeltQuote:
        return cls(
            id=data["id"],
            request=data["request"],
            amount=int(data["amount"]),
            fee_reserve=int(data.get("fee_reserve", 0)),
            unit=data["unit"],
            state=MeltQuoteState(data.get("state", "UNPAID")),
            expiry=data.get("expiry"),
            input_secrets=list(data.get("input_secrets") or []),
            preimage=data.get("preimage"),
            fee_paid=int(data.get("fee_paid", 0)),
            change_keyset=data.get("change_keyset"),
            change_counter=int(data.get("change_counter", 0)),
            change_count=int(data.get("change_count", 0)),
        )


class QuoteTracker:
    """Quotes of one wallet, persisted through the wallet store.

    State only moves forward: observing an older state than the one recorded
    is a no-op, and re-observing the current state changes nothing.
    """

    def __init__(self, store: WalletStore, wallet_key: WalletKey) -> None:
        self.store = store
        self.wallet_key = wallet_key
        self._mint: dict[str, MintQuote] = {}
        self._melt: dict[str, MeltQuote] = {}

    async def load(self) -> None:
        for data in await self.store.load_quotes(self.wallet_key):
            if data.get("type") == "melt":
                quote = MeltQuote.from_dict(data)
                self._melt[quote.id] = quote
            else:
                mint_quote = MintQuote.from_dict(data)
                self._mint[mint_quote.id] = mint_quote

    async def _persist(self, quote: MintQuote | MeltQuote) -> None:
        await self.store.save_quote(self.wallet_key, quote.to_dict())

    # ───────────────────────── Mint quotes ─────────────────────────────────

    async def add_mint_quote(self, quote: MintQuote) -> MintQuote:
        self._mint[quote.id] = quote
        await self._persist(quote)
        return quote

    def get_mint_quote(self, quote_id: str) -> MintQuote:
        try:
            return self._mint[quote_id]
        except KeyError:
            raise NotFoundError(f"Unknown mint quote {quote_id}") from None

    def mint_quotes(self) -> list[MintQuote]:
        return list(self._mint.values())

    async def observe_mint_state(self, quote_id: str, state: MintQuoteState | str) -> MintQuote:
        """Record a state reported by the mint, ignoring regressions."""
        quote = self.get_mint_quote(quote_id)
        new_state = MintQuoteState(state)
        if new_state.rank > quote.state.rank:
            logger.debug("Mint quote %s: %s -> %s", quote_id, quote.state.value, new_state.value)
            quote.state = new_state
            await self._persist(quote)
        return quote

    async def mark_issued(self, quote_id: str) -> MintQuote:
        return await self.observe_mint_state(quote_id, MintQuoteState.ISSUED)

    # ───────────────────────── Melt quotes ─────────────────────────────────

    async def add_melt_quote(self, quote: MeltQuote) -> MeltQuote:
        self._melt[quote.id] = quote
        await self._persist(quote)
        return quote

    def get_melt_quote(self, quote_id: str) -> MeltQuote:
        try:
            return self._melt[quote_id]
        except KeyError:
            raise NotFoundError(f"Unknown melt quote {quote_id}") from None

    def melt_quotes(self) -> list[MeltQuote]:
        return list(self._melt.values())

    def pending_melts(self) -> list[MeltQuote]:
        return [q for q in self._melt.values() if q.state is MeltQuoteState.PENDING]

    async def begin_melt(
        self,
        quote_id: str,
        input_secrets: list[str],
        *,
        change_keyset: str | None = None,
        change_counter: int = 0,
        change_count: int = 0,
    ) -> MeltQuote:
        """Move an unpaid quote to PENDING, remembering the committed inputs."""
        quote = self.get_melt_quote(quote_id)
        if quote.state is not MeltQuoteState.UNPAID:
            raise StateError(f"Melt quote {quote_id} is {quote.state.value}")
        quote.state = MeltQuoteState.PENDING
        quote.input_secrets = list(input_secrets)
        quote.change_keyset = change_keyset
        quote.change_counter = change_counter
        quote.change_count = change_count
        await self._persist(quote)
        return quote

    async def observe_melt_state(
        self,
        quote_id: str,
        state: MeltQuoteState | str,
        *,
        preimage: str | None = None,
        fee_paid: int | None = None,
    ) -> MeltQuote:
        quote = self.get_melt_quote(quote_id)
        new_state = MeltQuoteState(state)
        if quote.state.terminal or new_state.rank <= quote.state.rank:
            return quote
        logger.debug("Melt quote %s: %s -> %s", quote_id, quote.state.value, new_state.value)
        quote.state = new_state
        if preimage is not None:
            quote.preimage = preimage
        if fee_paid is not None:
            quote.fee_paid = fee_paid
        if new_state.terminal:
            quote.input_secrets = []
        await self._persist(quote)
        return quote
