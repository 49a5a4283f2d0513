"""In-memory set of unspent proofs for a single (mint, unit) wallet."""

from __future__ import annotations

from typing import Callable, Iterable, Sequence

from .types import DuplicateProofError, InsufficientBalanceError, NotFoundError, Proof

FeeFunction = Callable[[Sequence[Proof]], int]


def _no_fee(proofs: Sequence[Proof]) -> int:
    return 0


class ProofStore:
    """Unspent proofs keyed by secret.

    Insertion order is preserved so snapshots and persisted documents are
    stable. Reserved proofs belong to an in-flight melt: they still count
    toward the balance but can't be selected for new payments.
    """

    def __init__(self, proofs: Iterable[Proof] = ()) -> None:
        self._proofs: dict[str, Proof] = {}
        self._reserved: set[str] = set()
        for proof in proofs:
            self.add(proof)

    def __len__(self) -> int:
        return len(self._proofs)

    def __contains__(self, secret: object) -> bool:
        return secret in self._proofs

    def add(self, proof: Proof) -> None:
        if proof["secret"] in self._proofs:
            raise DuplicateProofError("Proof with this secret is already stored")
        self._proofs[proof["secret"]] = proof

    def add_many(self, proofs: Iterable[Proof]) -> list[Proof]:
        """Insert proofs whose secret is new; returns the ones inserted."""
        added = []
        for proof in proofs:
            if proof["secret"] not in self._proofs:
                self._proofs[proof["secret"]] = proof
                added.append(proof)
        return added

    def remove(self, secret: str) -> bool:
        self._reserved.discard(secret)
        return self._proofs.pop(secret, None) is not None

    def remove_many(self, secrets: Iterable[str]) -> int:
        return sum(1 for secret in list(secrets) if self.remove(secret))

    def get(self, secret: str) -> Proof | None:
        return self._proofs.get(secret)

    def balance(self) -> int:
        return sum(p["amount"] for p in self._proofs.values())

    def available_balance(self) -> int:
        return sum(p["amount"] for p in self.available())

    def unspent(self) -> tuple[Proof, ...]:
        return tuple(self._proofs.values())

    def available(self) -> list[Proof]:
        return [p for s, p in self._proofs.items() if s not in self._reserved]

    def owns_all(self, secrets: Iterable[str]) -> bool:
        """True if every secret is stored and not held by a pending melt."""
        return all(s in self._proofs and s not in self._reserved for s in secrets)

    # ───────────────────────── Selection ─────────────────────────────────

    def select(self, amount: int, fee_for: FeeFunction = _no_fee) -> list[Proof]:
        """Pick proofs covering ``amount`` plus the input fee they incur.

        Greedy, largest first. Nothing is mutated.

        Raises:
            InsufficientBalanceError: If the available proofs can't cover it
        """
        candidates = sorted(self.available(), key=lambda p: p["amount"], reverse=True)
        selected: list[Proof] = []
        total = 0
        for proof in candidates:
            if total >= amount + fee_for(selected):
                break
            selected.append(proof)
            total += proof["amount"]

        needed = amount + fee_for(selected)
        if total < needed:
            raise InsufficientBalanceError(
                f"Insufficient balance: need {needed}, have {self.available_balance()}"
            )
        return self._trim(selected, amount, fee_for)

    @staticmethod
    def _trim(selected: list[Proof], amount: int, fee_for: FeeFunction) -> list[Proof]:
        # Drop the smallest proofs that are not needed after the greedy pass
        trimmed = list(selected)
        for proof in sorted(selected, key=lambda p: p["amount"]):
            candidate = [p for p in trimmed if p is not proof]
            if sum(p["amount"] for p in candidate) >= amount + fee_for(candidate):
                trimmed = candidate
        return trimmed

    # ───────────────────────── Reservation ─────────────────────────────────

    def reserve(self, secrets: Iterable[str]) -> None:
        secrets = list(secrets)
        missing = [s for s in secrets if s not in self._proofs]
        if missing:
            raise NotFoundError(f"Cannot reserve {len(missing)} unknown proof(s)")
        self._reserved.update(secrets)

    def release(self, secrets: Iterable[str]) -> None:
        self._reserved.difference_update(secrets)

    def reserved(self) -> frozenset[str]:
        return frozenset(self._reserved)
