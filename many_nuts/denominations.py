"""Denomination splitting and fee arithmetic for Cashu keysets."""

from __future__ import annotations

import math
from typing import Iterable, Sequence

from .types import InvalidInputError, KeysetInfo, Proof

DEFAULT_DENOMINATIONS = [2**i for i in range(21)]


class DenominationSystem:
    """Splits amounts into the denominations a keyset can sign."""

    @staticmethod
    def calculate_optimal_split(
        amount: int, available_denominations: Sequence[int] | None = None
    ) -> dict[int, int]:
        """Calculate optimal denomination breakdown for an amount.

        Uses a greedy algorithm over the keyset's denominations to minimize
        the number of outputs.

        Args:
            amount: Total amount to split
            available_denominations: Denominations the keyset signs

        Returns:
            Dict of denomination -> count

        Raises:
            InvalidInputError: If the amount cannot be represented exactly
        """
        denominations: dict[int, int] = {}
        remaining = amount

        for denom in sorted(available_denominations or DEFAULT_DENOMINATIONS, reverse=True):
            if remaining >= denom:
                count = remaining // denom
                denominations[denom] = count
                remaining -= denom * count

        if remaining > 0:
            raise InvalidInputError(
                f"Amount {amount} cannot be split into available denominations"
            )
        return denominations

    @staticmethod
    def split_amount(
        amount: int, available_denominations: Sequence[int] | None = None
    ) -> list[int]:
        """Flatten the optimal split into a sorted list of output amounts."""
        split = DenominationSystem.calculate_optimal_split(amount, available_denominations)
        return sorted(denom for denom, count in split.items() for _ in range(count))

    @staticmethod
    def merge_denominations(denominations_list: list[dict[int, int]]) -> dict[int, int]:
        """Merge multiple denomination dicts into one."""
        merged: dict[int, int] = {}
        for denoms in denominations_list:
            for denom, count in denoms.items():
                merged[denom] = merged.get(denom, 0) + count
        return merged


def calculate_input_fees(proofs: Iterable[Proof], keysets: dict[str, KeysetInfo]) -> int:
    """NUT-02 input fee: ceil(sum(input_fee_ppk) / 1000).

    Example:
        With input_fee_ppk=1000 (1 sat per proof) and 3 proofs:
        fee = (3 * 1000 + 999) // 1000 = 3
    """
    sum_fees = 0
    for proof in proofs:
        keyset = keysets.get(proof["id"])
        sum_fees += keyset.input_fee_ppk if keyset else 0
    return (sum_fees + 999) // 1000


def blank_outputs_needed(fee_reserve: int) -> int:
    """Number of NUT-08 blank outputs to attach to a melt for fee return."""
    if fee_reserve <= 0:
        return 0
    return max(math.ceil(math.log2(fee_reserve)), 1)
