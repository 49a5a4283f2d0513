"""Single-mint Cashu wallet bound to one (mint URL, unit) pair."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from coincurve import PublicKey

from .crypto import (
    create_blinded_message,
    derive_secret,
    get_mint_pubkey_for_amount,
    hash_to_curve,
    unblind_signature,
    verify_dleq,
    verify_proof_dleq,
)
from .denominations import DenominationSystem, blank_outputs_needed, calculate_input_fees
from .invoice import decode_invoice
from .mint import Mint, MintCapabilities, normalize_mint_url
from .proofs import ProofStore
from .quotes import MeltQuote, MeltQuoteState, MintQuote, MintQuoteState, QuoteTracker
from .storage import WalletStore
from .token import Token
from .types import (
    DLEQ,
    BlindedMessage,
    BlindedSignature,
    Direction,
    DuplicateProofError,
    InvalidInputError,
    KeysetInfo,
    MintError,
    NetworkError,
    PaymentResult,
    Proof,
    ProtocolError,
    StateError,
    Transaction,
    TransactionKind,
    WalletKey,
    validate_amount,
)

logger = logging.getLogger(__name__)

# Blank outputs carry a placeholder amount; the mint assigns the real one
BLANK_OUTPUT_AMOUNT = 1


@dataclass
class SendOptions:
    include_fees: bool = False  # sender covers the receiver's redemption fee
    force_swap: bool = False


@dataclass
class PreparedSend:
    """Proof selection for a send that has not touched the mint yet."""

    wallet_key: WalletKey
    amount: int
    send_amount: int
    inputs: list[Proof]
    swap_fee: int
    needs_swap: bool

    @property
    def input_secrets(self) -> list[str]:
        return [p["secret"] for p in self.inputs]

    @property
    def fee(self) -> int:
        return self.swap_fee + (self.send_amount - self.amount)


@dataclass
class _Outputs:
    messages: list[BlindedMessage] = field(default_factory=list)
    secrets: list[str] = field(default_factory=list)
    blinding: list[bytes] = field(default_factory=list)
    keyset_id: str = ""
    counter: int = 0


def proof_y(proof: Proof) -> str:
    """Hex Y = hash_to_curve(secret), the key mints use for proof state."""
    return hash_to_curve(proof["secret"].encode("utf-8")).format(compressed=True).hex()


class MintWallet:
    """Wallet instance for one mint and unit.

    All proof mutations and quote redemptions run under ``self.lock``. Mint
    calls are made before any local state changes, so a failed request
    leaves proofs and ledger as they were.
    """

    def __init__(
        self,
        wallet_key: WalletKey,
        *,
        mint: Mint,
        store: WalletStore,
        material: bytes,
        capabilities: MintCapabilities | None = None,
    ) -> None:
        self.key = wallet_key
        self.mint = mint
        self.store = store
        self.capabilities = capabilities or MintCapabilities()
        self._material = material
        self.keysets: dict[str, KeysetInfo] = {}
        self.active_keyset: KeysetInfo | None = None
        self.proofs = ProofStore()
        self.quotes = QuoteTracker(store, wallet_key)
        self.lock = asyncio.Lock()

    @property
    def mint_url(self) -> str:
        return self.key.mint_url

    @property
    def unit(self) -> str:
        return self.key.unit

    def __repr__(self) -> str:
        return f"MintWallet({self.key})"

    async def load(self) -> None:
        """Load proofs and quotes from the store."""
        self.proofs = ProofStore()
        self.proofs.add_many(await self.store.load_proofs(self.key))
        await self.quotes.load()
        for quote in self.quotes.pending_melts():
            held = [s for s in quote.input_secrets if s in self.proofs]
            self.proofs.reserve(held)

    # ───────────────────────── Keysets ─────────────────────────────────

    def set_keysets(self, keysets: dict[str, KeysetInfo]) -> None:
        """Adopt keysets and pick the cheapest active one for this unit."""
        self.keysets = {k: ks for k, ks in keysets.items() if ks.unit == self.unit}
        candidates = [ks for ks in self.keysets.values() if ks.active and ks.keys]
        if not candidates:
            raise ProtocolError(f"{self.mint_url} has no active keyset for unit {self.unit}")
        self.active_keyset = min(candidates, key=lambda ks: (ks.input_fee_ppk, ks.id))

    async def load_keysets(self) -> dict[str, KeysetInfo]:
        keysets = await self.mint.load_keysets()
        self.set_keysets(keysets)
        return self.keysets

    def _active(self) -> KeysetInfo:
        if self.active_keyset is None:
            raise StateError(f"Keysets for {self.key} are not loaded")
        return self.active_keyset

    async def _keyset_with_keys(self, keyset_id: str) -> KeysetInfo:
        keyset = self.keysets.get(keyset_id)
        if keyset is not None and keyset.keys:
            return keyset
        fetched = await self.mint.get_keys(keyset_id)
        if not fetched:
            raise ProtocolError(f"Mint returned no keys for keyset {keyset_id}")
        loaded = fetched[0]
        if keyset is not None:
            keyset.keys = loaded.keys
            return keyset
        self.keysets[loaded.id] = loaded
        return loaded

    def input_fee(self, proofs: Sequence[Proof]) -> int:
        return calculate_input_fees(proofs, self.keysets)

    def _split(self, amount: int, keyset: KeysetInfo) -> list[int]:
        if amount == 0:
            return []
        return DenominationSystem.split_amount(amount, keyset.denominations)

    # ───────────────────────── Blinding ─────────────────────────────────

    async def _create_outputs(
        self, amounts: list[int], keyset: KeysetInfo
    ) -> _Outputs:
        """Deterministic outputs; the keyset counter is advanced before use."""
        counter = await self.store.get_counter(self.key, keyset.id)
        await self.store.set_counter(self.key, keyset.id, counter + len(amounts))
        outputs = _Outputs(keyset_id=keyset.id, counter=counter)
        for i, amount in enumerate(amounts):
            secret, r = derive_secret(self._material, keyset.id, counter + i)
            outputs.messages.append(create_blinded_message(amount, keyset.id, secret, r))
            outputs.secrets.append(secret)
            outputs.blinding.append(r)
        return outputs

    def _rederive_outputs(self, keyset_id: str, counter: int, count: int) -> _Outputs:
        outputs = _Outputs(keyset_id=keyset_id, counter=counter)
        for i in range(count):
            secret, r = derive_secret(self._material, keyset_id, counter + i)
            outputs.messages.append(
                create_blinded_message(BLANK_OUTPUT_AMOUNT, keyset_id, secret, r)
            )
            outputs.secrets.append(secret)
            outputs.blinding.append(r)
        return outputs

    async def _construct_proofs(
        self,
        signatures: Sequence[BlindedSignature],
        outputs: _Outputs,
        indices: Sequence[int] | None = None,
    ) -> list[Proof]:
        """Unblind mint signatures into proofs, checking DLEQs when offered."""
        if indices is None:
            indices = range(len(signatures))
        proofs: list[Proof] = []
        for sig, i in zip(signatures, indices):
            keyset = await self._keyset_with_keys(sig["id"])
            K = get_mint_pubkey_for_amount(keyset.keys, sig["amount"])
            if K is None:
                raise ProtocolError(f"No mint key for amount {sig['amount']}")
            C_ = PublicKey(bytes.fromhex(sig["C_"]))
            r = outputs.blinding[i]
            proof = Proof(
                id=sig["id"],
                amount=sig["amount"],
                secret=outputs.secrets[i],
                C=unblind_signature(C_, r, K).format(compressed=True).hex(),
            )
            dleq = sig.get("dleq")
            if dleq and self.capabilities.dleq:
                B_ = PublicKey(bytes.fromhex(outputs.messages[i]["B_"]))
                if not verify_dleq(
                    B_, C_, bytes.fromhex(dleq["e"]), bytes.fromhex(dleq["s"]), K
                ):
                    raise ProtocolError("Mint returned a signature with an invalid DLEQ proof")
                proof["dleq"] = DLEQ(e=dleq["e"], s=dleq["s"], r=r.hex())
            proofs.append(proof)
        return proofs

    async def _save_proofs(self) -> None:
        await self.store.save_proofs(self.key, list(self.proofs.unspent()))

    async def _record(self, tx: Transaction) -> Transaction:
        await self.store.append_transaction(self.key, tx)
        return tx

    # ───────────────────────── Balance & ledger ─────────────────────────────────

    def balance(self) -> int:
        return self.proofs.balance()

    async def list_transactions(self) -> list[Transaction]:
        return await self.store.load_transactions(self.key)

    # ─────────────────────────────── Send ─────────────────────────────────────

    def _receiver_fee(self, amount: int, keyset: KeysetInfo) -> tuple[int, int]:
        """Return (send_amount, fee) so the receiver nets ``amount`` after fees."""
        send_amount = amount
        for _ in range(8):
            n_outputs = len(self._split(send_amount, keyset))
            fee = (n_outputs * keyset.input_fee_ppk + 999) // 1000
            if amount + fee == send_amount:
                break
            send_amount = amount + fee
        return send_amount, send_amount - amount

    def prepare_send(self, amount: int, options: SendOptions | None = None) -> PreparedSend:
        """Select proofs for a send without contacting the mint.

        Raises:
            InsufficientBalanceError: If the wallet can't cover the amount
        """
        validate_amount(amount)
        options = options or SendOptions()
        keyset = self._active()
        send_amount = amount
        if options.include_fees:
            send_amount, _ = self._receiver_fee(amount, keyset)

        if not options.force_swap:
            exact = self.proofs.select(send_amount)
            if sum(p["amount"] for p in exact) == send_amount:
                return PreparedSend(
                    wallet_key=self.key,
                    amount=amount,
                    send_amount=send_amount,
                    inputs=exact,
                    swap_fee=0,
                    needs_swap=False,
                )

        inputs = self.proofs.select(send_amount, fee_for=self.input_fee)
        return PreparedSend(
            wallet_key=self.key,
            amount=amount,
            send_amount=send_amount,
            inputs=inputs,
            swap_fee=self.input_fee(inputs),
            needs_swap=True,
        )

    async def confirm(self, prepared: PreparedSend, memo: str | None = None) -> Token:
        async with self.lock:
            return await self._confirm_locked(prepared, memo)

    async def _confirm_locked(self, prepared: PreparedSend, memo: str | None) -> Token:
        if prepared.wallet_key != self.key:
            raise InvalidInputError("Prepared send belongs to another wallet")
        if not self.proofs.owns_all(prepared.input_secrets):
            raise StateError("Prepared send is stale: its inputs are no longer available")

        change: list[Proof] = []
        if not prepared.needs_swap:
            send_proofs = list(prepared.inputs)
        else:
            keyset = self._active()
            input_total = sum(p["amount"] for p in prepared.inputs)
            change_amount = input_total - prepared.swap_fee - prepared.send_amount
            send_amounts = self._split(prepared.send_amount, keyset)
            change_amounts = self._split(change_amount, keyset)
            outputs = await self._create_outputs(send_amounts + change_amounts, keyset)
            response = await self.mint.swap(inputs=prepared.inputs, outputs=outputs.messages)
            new_proofs = await self._construct_proofs(response["signatures"], outputs)
            send_proofs = new_proofs[: len(send_amounts)]
            change = new_proofs[len(send_amounts) :]

        self.proofs.remove_many(prepared.input_secrets)
        self.proofs.add_many(change)
        await self._save_proofs()
        await self._record(
            Transaction(
                direction=Direction.OUTGOING,
                amount=prepared.amount,
                fee=prepared.fee,
                kind=TransactionKind.ECASH_SEND,
                mint_url=self.mint_url,
                unit=self.unit,
                memo=memo,
            )
        )
        logger.info("Sent %d %s from %s", prepared.amount, self.unit, self.mint_url)
        return Token(mint_url=self.mint_url, unit=self.unit, proofs=send_proofs, memo=memo)

    async def send(
        self, amount: int, memo: str | None = None, options: SendOptions | None = None
    ) -> Token:
        """Select, swap if needed, and hand back a token worth ``amount``."""
        async with self.lock:
            prepared = self.prepare_send(amount, options)
            return await self._confirm_locked(prepared, memo)

    # ─────────────────────────────── Receive ──────────────────────────────────

    async def receive(self, token: Token) -> int:
        """Swap a token's proofs into fresh ones owned by this wallet.

        Returns:
            Amount credited (token amount minus input fees)
        """
        if normalize_mint_url(token.mint_url) != self.mint_url or token.unit != self.unit:
            raise InvalidInputError(
                f"Token for {token.mint_url} [{token.unit}] does not belong to {self.key}"
            )
        if not token.proofs:
            raise InvalidInputError("Token has no proofs")

        async with self.lock:
            for proof in token.proofs:
                if proof["secret"] in self.proofs:
                    raise DuplicateProofError("Token proofs are already in this wallet")

            if any(p["id"] not in self.keysets for p in token.proofs):
                await self.load_keysets()
                unknown = {p["id"] for p in token.proofs} - set(self.keysets)
                if unknown:
                    raise InvalidInputError(f"Token uses unknown keysets: {sorted(unknown)}")

            if self.capabilities.dleq:
                for proof in token.proofs:
                    if "dleq" not in proof:
                        continue
                    keyset = await self._keyset_with_keys(proof["id"])
                    A = get_mint_pubkey_for_amount(keyset.keys, proof["amount"])
                    if A is None or not verify_proof_dleq(dict(proof), A):
                        raise ProtocolError("Token proof carries an invalid DLEQ proof")

            total = token.amount
            fee = self.input_fee(token.proofs)
            credited = total - fee
            if credited <= 0:
                raise InvalidInputError("Token amount does not cover the mint's input fee")

            keyset = self._active()
            outputs = await self._create_outputs(self._split(credited, keyset), keyset)
            response = await self.mint.swap(inputs=token.proofs, outputs=outputs.messages)
            new_proofs = await self._construct_proofs(response["signatures"], outputs)

            self.proofs.add_many(new_proofs)
            await self._save_proofs()
            await self._record(
                Transaction(
                    direction=Direction.INCOMING,
                    amount=credited,
                    fee=fee,
                    kind=TransactionKind.ECASH_RECEIVE,
                    mint_url=self.mint_url,
                    unit=self.unit,
                    memo=token.memo,
                )
            )
        logger.info("Received %d %s at %s", credited, self.unit, self.mint_url)
        return credited

    # ───────────────────────── Mint quotes (Lightning in) ─────────────────────────

    async def create_mint_quote(self, amount: int, description: str | None = None) -> MintQuote:
        """Ask the mint for a Lightning invoice worth ``amount``."""
        validate_amount(amount)
        response = await self.mint.create_mint_quote(
            amount=amount, unit=self.unit, description=description
        )
        quote = MintQuote(
            id=response["quote"],
            request=response["request"],
            amount=int(response.get("amount") or amount),
            unit=self.unit,
            state=MintQuoteState(_mint_state(response)),
            expiry=response.get("expiry"),
        )
        return await self.quotes.add_mint_quote(quote)

    async def check_mint_quote(self, quote_id: str) -> MintQuote:
        """Refresh a quote's state from the mint. Never issues proofs."""
        self.quotes.get_mint_quote(quote_id)
        response = await self.mint.get_mint_quote(quote_id)
        return await self.quotes.observe_mint_state(quote_id, _mint_state(response))

    async def redeem_mint_quote(self, quote_id: str) -> int:
        """Mint proofs for a paid quote. Returns 0 if already issued.

        Raises:
            ProtocolError: If the invoice has not been paid yet
        """
        async with self.lock:
            quote = self.quotes.get_mint_quote(quote_id)
            if quote.state is MintQuoteState.ISSUED:
                return 0
            if quote.state is MintQuoteState.UNPAID:
                response = await self.mint.get_mint_quote(quote_id)
                quote = await self.quotes.observe_mint_state(quote_id, _mint_state(response))
            if quote.state is MintQuoteState.UNPAID:
                raise ProtocolError(f"Mint quote {quote_id} not paid")
            if quote.state is MintQuoteState.ISSUED:
                logger.warning(
                    "Quote %s was issued but no proofs were stored; run restore", quote_id
                )
                return 0

            keyset = self._active()
            outputs = await self._create_outputs(self._split(quote.amount, keyset), keyset)
            response = await self.mint.mint(quote=quote_id, outputs=outputs.messages)
            new_proofs = await self._construct_proofs(response["signatures"], outputs)

            self.proofs.add_many(new_proofs)
            await self._save_proofs()
            await self.quotes.mark_issued(quote_id)
            await self._record(
                Transaction(
                    direction=Direction.INCOMING,
                    amount=quote.amount,
                    kind=TransactionKind.MINT,
                    mint_url=self.mint_url,
                    unit=self.unit,
                    metadata={"quote": quote_id},
                )
            )
        logger.info("Minted %d %s at %s", quote.amount, self.unit, self.mint_url)
        return quote.amount

    # ───────────────────────── Melt quotes (Lightning out) ─────────────────────────

    async def create_melt_quote(self, invoice: str) -> MeltQuote:
        decoded = decode_invoice(invoice)
        response = await self.mint.create_melt_quote(request=decoded.request, unit=self.unit)
        quote = MeltQuote(
            id=response["quote"],
            request=decoded.request,
            amount=int(response["amount"]),
            fee_reserve=int(response.get("fee_reserve", 0)),
            unit=self.unit,
            expiry=response.get("expiry"),
        )
        return await self.quotes.add_melt_quote(quote)

    async def melt(self, quote_id: str) -> PaymentResult:
        """Pay a melt quote's invoice from this wallet's proofs.

        A network failure leaves the quote PENDING with its inputs reserved;
        ``check_melt_quote`` settles it later.
        """
        async with self.lock:
            quote = self.quotes.get_melt_quote(quote_id)
            if quote.state is MeltQuoteState.PAID:
                return _payment_result(quote, change_amount=0)
            if quote.state is not MeltQuoteState.UNPAID:
                raise StateError(f"Melt quote {quote_id} is {quote.state.value}")

            inputs = self.proofs.select(quote.amount + quote.fee_reserve, fee_for=self.input_fee)
            overpaid = sum(p["amount"] for p in inputs) - self.input_fee(inputs) - quote.amount
            outputs = _Outputs()
            if self.capabilities.fee_returns:
                keyset = self._active()
                n_blank = blank_outputs_needed(overpaid)
                outputs = await self._create_outputs([BLANK_OUTPUT_AMOUNT] * n_blank, keyset)

            secrets = [p["secret"] for p in inputs]
            self.proofs.reserve(secrets)
            await self.quotes.begin_melt(
                quote_id,
                secrets,
                change_keyset=outputs.keyset_id or None,
                change_counter=outputs.counter,
                change_count=len(outputs.messages),
            )

            try:
                response = await self.mint.melt(
                    quote=quote_id, inputs=inputs, outputs=outputs.messages or None
                )
            except NetworkError:
                logger.warning("Melt %s outcome unknown; quote left pending", quote_id)
                raise
            except MintError:
                self.proofs.release(secrets)
                await self.quotes.observe_melt_state(quote_id, MeltQuoteState.FAILED)
                raise

            return await self._settle_melt(quote, dict(response))

    async def check_melt_quote(self, quote_id: str) -> MeltQuote:
        """Refresh a melt quote and settle it if it was in flight."""
        quote = self.quotes.get_melt_quote(quote_id)
        response = dict(await self.mint.get_melt_quote(quote_id))
        async with self.lock:
            if quote.state is MeltQuoteState.PENDING and quote.input_secrets:
                await self._settle_melt(quote, response)
            elif not quote.state.terminal:
                # Not melted by this wallet: track the state, spend nothing
                state = _melt_state(response)
                if state in (MeltQuoteState.PAID, MeltQuoteState.PENDING):
                    await self.quotes.observe_melt_state(
                        quote_id, state, preimage=response.get("payment_preimage")
                    )
        return quote

    async def _settle_melt(self, quote: MeltQuote, response: dict[str, Any]) -> PaymentResult:
        """Apply the mint's verdict on a PENDING melt. Caller holds the lock."""
        state = _melt_state(response)
        secrets = list(quote.input_secrets)

        if state is MeltQuoteState.PENDING:
            return _payment_result(quote, change_amount=0)

        if state is not MeltQuoteState.PAID:
            self.proofs.release(secrets)
            await self.quotes.observe_melt_state(quote.id, MeltQuoteState.FAILED)
            logger.warning("Melt %s failed; inputs released", quote.id)
            return _payment_result(quote, change_amount=0)

        inputs = [p for s in secrets if (p := self.proofs.get(s)) is not None]
        input_total = sum(p["amount"] for p in inputs)
        input_fee = self.input_fee(inputs)

        change: list[Proof] = []
        signatures = response.get("change") or []
        if signatures and quote.change_keyset:
            outputs = self._rederive_outputs(
                quote.change_keyset, quote.change_counter, quote.change_count
            )
            change = await self._construct_proofs(signatures[: quote.change_count], outputs)
        change_amount = sum(p["amount"] for p in change)
        fee_paid = max(input_total - input_fee - quote.amount - change_amount, 0)

        self.proofs.remove_many(secrets)
        self.proofs.add_many(change)
        await self._save_proofs()
        await self.quotes.observe_melt_state(
            quote.id,
            MeltQuoteState.PAID,
            preimage=response.get("payment_preimage"),
            fee_paid=fee_paid,
        )
        await self._record(
            Transaction(
                direction=Direction.OUTGOING,
                amount=quote.amount,
                fee=input_total - quote.amount - change_amount,
                kind=TransactionKind.MELT,
                mint_url=self.mint_url,
                unit=self.unit,
                metadata={"quote": quote.id},
            )
        )
        logger.info("Paid invoice for %d %s via %s", quote.amount, self.unit, self.mint_url)
        return _payment_result(quote, change_amount=change_amount)

    # ───────────────────────── Proof state & recovery ─────────────────────────────

    async def check_proofs_state(self) -> int:
        """Drop proofs the mint reports as SPENT. Returns the amount dropped.

        Proofs reserved by a pending melt are left for ``check_melt_quote``.
        """
        async with self.lock:
            reserved = self.proofs.reserved()
            candidates = [p for p in self.proofs.unspent() if p["secret"] not in reserved]
            if not candidates:
                return 0
            by_y = {proof_y(p): p for p in candidates}
            response = await self.mint.check_state(Ys=list(by_y))
            spent = [
                by_y[entry["Y"]]
                for entry in response.get("states", [])
                if entry.get("state") == "SPENT" and entry.get("Y") in by_y
            ]
            if not spent:
                return 0
            self.proofs.remove_many(p["secret"] for p in spent)
            await self._save_proofs()
        dropped = sum(p["amount"] for p in spent)
        logger.info("Dropped %d spent proof(s) worth %d %s", len(spent), dropped, self.unit)
        return dropped

    async def restore(self, batch_size: int = 25, gap_limit: int = 2) -> int:
        """Recover proofs derived from this wallet's seed material.

        Walks the counters of every keyset of the unit in batches until
        ``gap_limit`` consecutive batches come back empty. Returns the
        amount of unspent proofs added.
        """
        if batch_size <= 0 or gap_limit <= 0:
            raise InvalidInputError("batch_size and gap_limit must be positive")

        recovered: list[Proof] = []
        for keyset_id in list(self.keysets):
            keyset = await self._keyset_with_keys(keyset_id)
            counter, empty_batches, next_counter = 0, 0, 0
            while empty_batches < gap_limit:
                outputs = self._rederive_outputs(keyset.id, counter, batch_size)
                response = await self.mint.restore(outputs=outputs.messages)
                signatures = response.get("signatures") or response.get("promises") or []
                returned = response.get("outputs") or []
                index = {m["B_"]: i for i, m in enumerate(outputs.messages)}
                matched = [index[o["B_"]] for o in returned if o.get("B_") in index]
                if signatures and matched:
                    recovered.extend(await self._construct_proofs(signatures, outputs, matched))
                    next_counter = counter + max(matched) + 1
                    empty_batches = 0
                else:
                    empty_batches += 1
                counter += batch_size

            stored = await self.store.get_counter(self.key, keyset.id)
            if next_counter > stored:
                await self.store.set_counter(self.key, keyset.id, next_counter)

        if not recovered:
            return 0

        by_y = {proof_y(p): p for p in recovered}
        response = await self.mint.check_state(Ys=list(by_y))
        unspent = [
            by_y[entry["Y"]]
            for entry in response.get("states", [])
            if entry.get("state") == "UNSPENT" and entry.get("Y") in by_y
        ]
        async with self.lock:
            added = self.proofs.add_many(unspent)
            if added:
                await self._save_proofs()
        amount = sum(p["amount"] for p in added)
        logger.info("Restored %d proof(s) worth %d %s", len(added), amount, self.unit)
        return amount

    async def import_proofs(self, proofs: Sequence[Proof]) -> int:
        """Add already-owned proofs (e.g. from a backup). Returns amount added."""
        async with self.lock:
            added = self.proofs.add_many(proofs)
            if added:
                await self._save_proofs()
        return sum(p["amount"] for p in added)


def _mint_state(response: dict[str, Any]) -> str:
    state = response.get("state")
    if state:
        return str(state)
    return "PAID" if response.get("paid") else "UNPAID"


def _melt_state(response: dict[str, Any]) -> MeltQuoteState:
    state = response.get("state")
    if not state:
        state = "PAID" if response.get("paid") else "UNPAID"
    try:
        return MeltQuoteState(state)
    except ValueError:
        raise ProtocolError(f"Unknown melt state {state!r}") from None


def _payment_result(quote: MeltQuote, *, change_amount: int) -> PaymentResult:
    return PaymentResult(
        quote_id=quote.id,
        paid=quote.state is MeltQuoteState.PAID,
        state=quote.state.value,
        amount=quote.amount,
        fee_paid=quote.fee_paid,
        change_amount=change_amount,
        preimage=quote.preimage,
    )
