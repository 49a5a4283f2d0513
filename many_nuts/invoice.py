"""Lightning (BOLT-11) invoice decoding."""

from __future__ import annotations

from dataclasses import dataclass

import bolt11
from bolt11.exceptions import Bolt11Exception

from .types import InvalidInputError, InvoiceMissingAmountError

DEFAULT_EXPIRY = 3600  # BOLT-11 default when the x field is absent


@dataclass(frozen=True)
class Invoice:
    request: str
    amount_msat: int
    description: str | None
    expiry: int
    timestamp: int
    payment_hash: str | None = None

    @property
    def amount_sat(self) -> int:
        return self.amount_msat // 1000

    @property
    def expires_at(self) -> int:
        return self.timestamp + self.expiry

    def amount_in(self, unit: str) -> int:
        """Amount expressed in the smallest unit of ``unit``."""
        if unit == "msat":
            return self.amount_msat
        if unit == "sat":
            return self.amount_sat
        raise InvalidInputError(f"Cannot express invoice amount in {unit}")


def decode_invoice(request: str) -> Invoice:
    """Decode a BOLT-11 invoice.

    Raises:
        InvoiceMissingAmountError: If the invoice has no amount
        InvalidInputError: If the invoice cannot be parsed
    """
    request = request.strip()
    if request.lower().startswith("lightning:"):
        request = request[len("lightning:") :]
    if not request.lower().startswith("ln"):
        raise InvalidInputError("Not a Lightning invoice")

    try:
        decoded = bolt11.decode(request)
    except (Bolt11Exception, ValueError, KeyError, IndexError) as e:
        raise InvalidInputError(f"Invalid Lightning invoice: {e}") from e

    if decoded.amount_msat is None:
        raise InvoiceMissingAmountError("Invoice does not specify an amount")

    return Invoice(
        request=request,
        amount_msat=int(decoded.amount_msat),
        description=decoded.description,
        expiry=int(decoded.expiry or DEFAULT_EXPIRY),
        timestamp=int(decoded.date),
        payment_hash=decoded.payment_hash,
    )
