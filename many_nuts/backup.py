"""Encrypted wallet backups as NIP-60 Nostr events."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Protocol

from coincurve import PrivateKey

from .crypto import (
    NIP44Encrypt,
    NIP44Error,
    get_pubkey,
    nip44_decrypt,
    nip44_encrypt,
    sign_event,
    verify_event,
)
from .types import (
    DecryptionFailedError,
    EventDict,
    EventKind,
    InvalidInputError,
    Proof,
    WalletKey,
)

logger = logging.getLogger(__name__)

MAX_RECORD_SIZE = NIP44Encrypt.MAX_PLAINTEXT_SIZE


class BackupTransport(Protocol):
    """Where backup events are published to and fetched from."""

    async def publish(self, event: EventDict) -> bool: ...

    async def fetch(self, author: str, kinds: list[int]) -> list[EventDict]: ...


@dataclass
class WalletRecord:
    """Wallet-level settings: the P2PK key and the mints in use."""

    privkey: str
    mints: list[str] = field(default_factory=list)
    event_id: str | None = None
    created_at: int = 0


@dataclass
class TokenRecord:
    """Unspent proofs of one mint and unit at the time of publishing.

    ``deleted`` lists ids of older token records this one supersedes.
    """

    mint: str
    unit: str
    proofs: list[Proof] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    event_id: str | None = None
    created_at: int = 0

    @property
    def wallet_key(self) -> WalletKey:
        return WalletKey(self.mint, self.unit)

    @property
    def amount(self) -> int:
        return sum(p["amount"] for p in self.proofs)


def _proof_from_json(data: dict[str, Any]) -> Proof:
    proof = Proof(
        id=str(data["id"]), amount=int(data["amount"]), secret=str(data["secret"]), C=str(data["C"])
    )
    if "witness" in data:
        proof["witness"] = data["witness"]
    if "dleq" in data:
        proof["dleq"] = data["dleq"]
    return proof


def _compact(data: Any) -> str:
    return json.dumps(data, separators=(",", ":"))


def _token_payload(record: TokenRecord) -> dict[str, Any]:
    return {
        "mint": record.mint,
        "unit": record.unit,
        "proofs": [dict(p) for p in record.proofs],
        "del": list(record.deleted),
    }


def split_token_record(record: TokenRecord, limit: int = MAX_RECORD_SIZE) -> list[TokenRecord]:
    """Split a record so each part's JSON fits in one NIP-44 plaintext.

    Every part carries the full ``del`` list. A record without proofs stays a
    single part.
    """
    base = len(_compact(_token_payload(replace(record, proofs=[]))).encode())
    parts: list[list[Proof]] = [[]]
    size = base
    for proof in record.proofs:
        # One comma between neighbouring proofs
        extra = len(_compact(dict(proof)).encode()) + (1 if parts[-1] else 0)
        if parts[-1] and size + extra > limit:
            parts.append([])
            size = base
            extra -= 1
        parts[-1].append(proof)
        size += extra
    return [replace(record, proofs=proofs) for proofs in parts]


def _superseded(ordered: list[TokenRecord]) -> set[str]:
    position = {r.event_id: i for i, r in enumerate(ordered) if r.event_id}
    return {
        deleted_id
        for i, record in enumerate(ordered)
        for deleted_id in record.deleted
        if deleted_id in position and position[deleted_id] < i
    }


def _ordered(records: Iterable[TokenRecord]) -> list[TokenRecord]:
    return sorted(records, key=lambda r: (r.created_at, r.event_id or ""))


class BackupCodec:
    """Encodes wallet state into signed events encrypted to our own key."""

    def __init__(self, privkey: PrivateKey) -> None:
        self.privkey = privkey
        self.pubkey = get_pubkey(privkey)

    def _sign(self, kind: int, content: str, tags: list[list[str]], created_at: int | None) -> EventDict:
        event = {
            "created_at": int(created_at if created_at is not None else time.time()),
            "kind": kind,
            "tags": tags,
            "content": content,
        }
        return sign_event(event, self.privkey)

    def _encrypt(self, plaintext: str) -> str:
        try:
            return nip44_encrypt(plaintext, self.privkey)
        except NIP44Error as e:
            raise InvalidInputError(f"Cannot encrypt backup record: {e}") from e

    def _open(self, event: EventDict, kind: int) -> Any:
        if event.get("kind") != kind:
            raise InvalidInputError(f"Expected kind {kind}, got {event.get('kind')}")
        if not verify_event(event):
            raise InvalidInputError(f"Event {event.get('id')} has an invalid signature")
        try:
            plaintext = nip44_decrypt(event["content"], self.privkey, event["pubkey"])
        except (NIP44Error, ValueError) as e:
            raise DecryptionFailedError(f"Cannot decrypt event {event.get('id')}") from e
        try:
            return json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise InvalidInputError(f"Event {event.get('id')} holds invalid JSON") from e

    # ───────────────────────── Wallet record ─────────────────────────────────

    def encode_wallet(self, record: WalletRecord, *, created_at: int | None = None) -> EventDict:
        tags = [["privkey", record.privkey]] + [["mint", url] for url in record.mints]
        content = self._encrypt(json.dumps(tags))
        return self._sign(EventKind.Wallet, content, [], created_at)

    def decode_wallet(self, event: EventDict) -> WalletRecord:
        data = self._open(event, EventKind.Wallet)
        if not isinstance(data, list):
            raise InvalidInputError("Wallet record content must be a tag array")
        privkey, mints = None, []
        for tag in data:
            if not isinstance(tag, list) or len(tag) < 2:
                continue
            if tag[0] == "privkey":
                privkey = str(tag[1])
            elif tag[0] == "mint":
                mints.append(str(tag[1]))
        if privkey is None:
            raise InvalidInputError("Wallet record has no privkey")
        return WalletRecord(
            privkey=privkey, mints=mints, event_id=event["id"], created_at=event["created_at"]
        )

    # ───────────────────────── Token records ─────────────────────────────────

    def encode_token(self, record: TokenRecord, *, created_at: int | None = None) -> EventDict:
        content = self._encrypt(_compact(_token_payload(record)))
        return self._sign(EventKind.Token, content, [], created_at)

    def encode_tokens(
        self, record: TokenRecord, *, created_at: int | None = None
    ) -> list[EventDict]:
        """Encode a record as one or more events, splitting large proof sets."""
        return [
            self.encode_token(part, created_at=created_at)
            for part in split_token_record(record)
        ]

    def decode_token(self, event: EventDict) -> TokenRecord:
        data = self._open(event, EventKind.Token)
        try:
            proofs = [_proof_from_json(p) for p in data.get("proofs", [])]
            return TokenRecord(
                mint=data["mint"],
                unit=data.get("unit", "sat"),
                proofs=proofs,
                deleted=[str(d) for d in data.get("del", [])],
                event_id=event["id"],
                created_at=event["created_at"],
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidInputError(f"Malformed token record {event.get('id')}: {e}") from e

    def encode_deletion(self, event_ids: Iterable[str], kind: int = EventKind.Token) -> EventDict:
        """NIP-09 deletion request for superseded records."""
        tags = [["e", event_id] for event_id in event_ids] + [["k", str(kind)]]
        return self._sign(EventKind.Deletion, "", tags, None)

    # ───────────────────────── Reconciliation ─────────────────────────────────

    @staticmethod
    def reconcile(records: Iterable[TokenRecord]) -> dict[WalletKey, list[Proof]]:
        """Merge token records into the surviving proof set per wallet.

        Records are ordered by ``(created_at, event_id)``. A record is dropped
        only when a newer one lists it in ``del``; proofs of the survivors are
        unioned by secret.
        """
        ordered = _ordered(records)
        dropped = _superseded(ordered)

        merged: dict[WalletKey, dict[str, Proof]] = {}
        for record in ordered:
            if record.event_id in dropped:
                continue
            bucket = merged.setdefault(record.wallet_key, {})
            for proof in record.proofs:
                bucket.setdefault(proof["secret"], proof)
        return {key: list(proofs.values()) for key, proofs in merged.items()}

    @staticmethod
    def surviving_ids(records: Iterable[TokenRecord]) -> list[str]:
        """Ids of records not superseded by a newer record."""
        ordered = _ordered(records)
        dropped = _superseded(ordered)
        return [r.event_id for r in ordered if r.event_id and r.event_id not in dropped]

    def latest_wallet(self, events: Iterable[EventDict]) -> WalletRecord | None:
        records = []
        for event in events:
            if event.get("kind") != EventKind.Wallet:
                continue
            try:
                records.append(self.decode_wallet(event))
            except (DecryptionFailedError, InvalidInputError) as e:
                logger.warning("Ignoring wallet record %s: %s", event.get("id"), e)
        if not records:
            return None
        return max(records, key=lambda r: (r.created_at, r.event_id or ""))

    def token_records(self, events: Iterable[EventDict]) -> list[TokenRecord]:
        records = []
        for event in events:
            if event.get("kind") != EventKind.Token:
                continue
            try:
                records.append(self.decode_token(event))
            except (DecryptionFailedError, InvalidInputError) as e:
                logger.warning("Ignoring token record %s: %s", event.get("id"), e)
        return records
