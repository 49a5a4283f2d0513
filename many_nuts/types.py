"""Type definitions for the many-nuts package following NUT-00 specifications."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, NamedTuple, TypedDict
from uuid import uuid4


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────


class WalletError(Exception):
    """Base class for wallet errors.

    Every error carries a ``kind`` naming its category and a human-readable
    message describing the failure.
    """

    kind = "WalletError"
    retryable = False

    @property
    def detail(self) -> str:
        return str(self)


class InvalidInputError(WalletError):
    """Malformed caller input (URL, hex, JSON, mnemonic, amount, token)."""

    kind = "InvalidInput"


class InvoiceMissingAmountError(InvalidInputError):
    """Lightning invoice carries no amount."""

    kind = "InvoiceMissingAmount"


class NotFoundError(WalletError):
    """Unknown mint, wallet, quote or proof."""

    kind = "NotFound"


class NetworkError(WalletError):
    """Mint or relay unreachable, or the request timed out. Safe to retry."""

    kind = "NetworkFailure"
    retryable = True


class RelayError(NetworkError):
    """Base exception for relay errors."""


class ProtocolError(WalletError):
    """The mint rejected the request (spent proof, bad signature, unpaid quote)."""

    kind = "ProtocolError"


class MintError(ProtocolError):
    """Error response returned by a mint."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class StateError(WalletError):
    """Operation not valid in the current wallet state."""

    kind = "StateError"


class DuplicateProofError(WalletError):
    """A proof with the same secret is already stored."""

    kind = "DuplicateProof"


class InsufficientBalanceError(WalletError):
    """Wallet cannot cover the requested amount."""

    kind = "InsufficientBalance"


class DecryptionFailedError(WalletError):
    """Backup record could not be decrypted with the given key."""

    kind = "DecryptionFailed"


# ──────────────────────────────────────────────────────────────────────────────
# Proofs and mint wire types
# ──────────────────────────────────────────────────────────────────────────────


# Standard currency units as per NUT-00 specification
CurrencyUnit = Literal[
    "btc",  # Bitcoin
    "sat",  # Satoshi (1e-8 BTC)
    "msat",  # Millisatoshi (1e-11 BTC)
    "usd",  # US Dollar
    "eur",  # Euro
    "gbp",  # British Pound
    "jpy",  # Japanese Yen
    # Special units
    "auth",  # Authentication tokens
    # Stablecoins
    "usdt",
    "usdc",
]


class DLEQ(TypedDict):
    """NUT-12 discrete log equality proof attached to a proof."""

    e: str
    s: str
    r: str


class ProofRequired(TypedDict):
    id: str  # keyset ID
    amount: int
    secret: str
    C: str  # unblinded signature (hex)


class Proof(ProofRequired, total=False):
    """Bearer token unit. Uniquely identified by ``secret``."""

    witness: str
    dleq: DLEQ


class BlindedMessage(TypedDict):
    """Blinded message for mint operations."""

    amount: int
    id: str  # keyset ID
    B_: str  # hex encoded blinded message


class BlindedSignatureRequired(TypedDict):
    amount: int
    id: str  # keyset ID
    C_: str  # hex encoded blinded signature


class BlindedSignature(BlindedSignatureRequired, total=False):
    """Blinded signature response from mint."""

    dleq: dict[str, str]  # NUT-12 {e, s}


@dataclass
class KeysetInfo:
    """Complete keyset information."""

    id: str
    unit: str
    active: bool
    input_fee_ppk: int = 0
    keys: dict[str, str] = field(default_factory=dict)  # amount -> pubkey

    @property
    def denominations(self) -> list[int]:
        return sorted(int(amount) for amount in self.keys)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "unit": self.unit,
            "active": self.active,
            "input_fee_ppk": self.input_fee_ppk,
            "keys": dict(self.keys),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KeysetInfo:
        return cls(
            id=data["id"],
            unit=data["unit"],
            active=bool(data.get("active", True)),
            input_fee_ppk=int(data.get("input_fee_ppk", 0) or 0),
            keys=dict(data.get("keys") or {}),
        )


# ──────────────────────────────────────────────────────────────────────────────
# Wallet model
# ──────────────────────────────────────────────────────────────────────────────


class WalletKey(NamedTuple):
    """Identity of a single-mint wallet inside the orchestrator."""

    mint_url: str
    unit: str

    def __str__(self) -> str:
        return f"{self.mint_url} [{self.unit}]"


@dataclass
class MintRecord:
    """Persisted record of a mint whose reachability has been verified."""

    mint_url: str
    mint_info: dict[str, Any]
    supported_units: list[str]
    units: list[str] = field(default_factory=list)
    keysets: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mint_url": self.mint_url,
            "mint_info": self.mint_info,
            "supported_units": list(self.supported_units),
            "units": list(self.units),
            "keysets": list(self.keysets),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MintRecord:
        return cls(
            mint_url=data["mint_url"],
            mint_info=dict(data.get("mint_info") or {}),
            supported_units=list(data.get("supported_units") or []),
            units=list(data.get("units") or []),
            keysets=list(data.get("keysets") or []),
        )


class Direction(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class TransactionKind(str, Enum):
    MINT = "mint"
    MELT = "melt"
    ECASH_SEND = "ecash_send"
    ECASH_RECEIVE = "ecash_receive"


@dataclass(frozen=True)
class Transaction:
    """Append-only ledger entry."""

    direction: Direction
    amount: int
    kind: TransactionKind
    mint_url: str
    unit: str
    fee: int = 0
    memo: str | None = None
    timestamp: float = field(default_factory=time.time)
    metadata: dict[str, str] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "direction": self.direction.value,
            "amount": self.amount,
            "fee": self.fee,
            "memo": self.memo,
            "timestamp": self.timestamp,
            "mint_url": self.mint_url,
            "unit": self.unit,
            "kind": self.kind.value,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transaction:
        return cls(
            id=data["id"],
            direction=Direction(data["direction"]),
            amount=int(data["amount"]),
            fee=int(data.get("fee", 0)),
            memo=data.get("memo"),
            timestamp=float(data["timestamp"]),
            mint_url=data["mint_url"],
            unit=data["unit"],
            kind=TransactionKind(data["kind"]),
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
        )


@dataclass
class PaymentResult:
    """Outcome of paying a Lightning invoice through a melt quote."""

    quote_id: str
    paid: bool
    state: str
    amount: int
    fee_paid: int = 0
    change_amount: int = 0
    preimage: str | None = None


class EventKind:
    """Nostr event kinds used by the wallet."""

    Wallet = 17375  # NIP-60 wallet event (replaceable)
    Token = 7375  # NIP-60 token event
    TokenHistory = 7376  # NIP-60 spending history
    Deletion = 5  # NIP-09 event deletion


# Event type definitions
EventDict = dict[str, Any]  # Generic Nostr event dictionary


def validate_amount(amount: Any, *, allow_zero: bool = False) -> int:
    """Return ``amount`` as int or raise InvalidInputError."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInputError(f"Amount must be an integer, got {amount!r}")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidInputError(f"Amount must be positive, got {amount}")
    return amount
