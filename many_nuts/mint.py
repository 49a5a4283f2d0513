"""
Cashu Mint API client wrapper."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, TypedDict, cast
from urllib.parse import urlparse, urlunparse

from .crypto import derive_keyset_id
from .transport import AuthProvider, HttpTransport, Transport
from .types import (
    BlindedMessage,
    BlindedSignature,
    InvalidInputError,
    KeysetInfo,
    Proof,
    ProtocolError,
)

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# Type definitions based on NUT-01 and OpenAPI spec
# ──────────────────────────────────────────────────────────────────────────────


class MintInfo(TypedDict, total=False):
    """Mint information response (NUT-06)."""

    name: str
    pubkey: str
    version: str
    description: str
    description_long: str
    contact: list[dict[str, str]]
    icon_url: str
    motd: str
    nuts: dict[str, dict[str, Any]]


class PostMintQuoteResponse(TypedDict, total=False):
    quote: str  # quote id
    request: str  # bolt11 invoice
    amount: int
    unit: str
    state: str  # "UNPAID", "PAID", "ISSUED"
    expiry: int | None


class PostMintResponse(TypedDict):
    signatures: list[BlindedSignature]


class PostMeltQuoteResponse(TypedDict, total=False):
    quote: str
    amount: int
    fee_reserve: int
    unit: str
    request: str
    state: str  # "UNPAID", "PENDING", "PAID"
    expiry: int | None
    payment_preimage: str | None
    change: list[BlindedSignature] | None


class PostSwapResponse(TypedDict):
    signatures: list[BlindedSignature]


class PostCheckStateResponse(TypedDict):
    states: list[dict[str, Any]]  # [{Y, state, witness}]


class PostRestoreResponse(TypedDict, total=False):
    outputs: list[BlindedMessage]
    signatures: list[BlindedSignature]
    promises: list[BlindedSignature]  # deprecated


class InvalidKeysetError(ProtocolError):
    """Raised when keyset structure is invalid per NUT-01."""


# ──────────────────────────────────────────────────────────────────────────────
# Capability descriptor
# ──────────────────────────────────────────────────────────────────────────────


@dataclass
class MintCapabilities:
    """Parsed view of a mint's info endpoint.

    Unknown or malformed NUT entries count as unsupported.
    """

    name: str = ""
    version: str = ""
    description: str = ""
    contact: list[dict[str, str]] = field(default_factory=list)
    nuts: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_info(cls, info: dict[str, Any]) -> MintCapabilities:
        nuts = info.get("nuts")
        contact = info.get("contact")
        return cls(
            name=str(info.get("name") or ""),
            version=str(info.get("version") or ""),
            description=str(info.get("description") or ""),
            contact=contact if isinstance(contact, list) else [],
            nuts=nuts if isinstance(nuts, dict) else {},
        )

    def supports(self, nut: int) -> bool:
        entry = self.nuts.get(str(nut))
        if isinstance(entry, dict):
            if "disabled" in entry:
                return not entry["disabled"]
            if "supported" in entry:
                return bool(entry["supported"])
            return True
        return bool(entry)

    @property
    def fee_returns(self) -> bool:
        return self.supports(8)

    @property
    def dleq(self) -> bool:
        return self.supports(12)

    @property
    def spending_conditions(self) -> bool:
        return self.supports(10) and self.supports(11)

    @property
    def restore(self) -> bool:
        return self.supports(9)

    @property
    def auth_required(self) -> bool:
        return self.supports(21) or self.supports(22)


# ──────────────────────────────────────────────────────────────────────────────
# URL handling
# ──────────────────────────────────────────────────────────────────────────────


def normalize_mint_url(url: str) -> str:
    """Canonical form of a mint URL.

    Lowercases scheme and host, drops trailing slashes, and forces hidden
    services onto plain ``http`` (tor already encrypts the channel).
    """
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https") or not parsed.hostname:
        raise InvalidInputError(f"Invalid mint URL: {url!r}")
    host = parsed.hostname.lower()
    scheme = "http" if host.endswith(".onion") else parsed.scheme.lower()
    netloc = host if parsed.port is None else f"{host}:{parsed.port}"
    return urlunparse((scheme, netloc, parsed.path.rstrip("/"), "", "", ""))


def validate_mint_url(url: str) -> bool:
    """Return True if ``url`` is already in canonical form."""
    try:
        return normalize_mint_url(url) == url
    except InvalidInputError:
        return False


# ──────────────────────────────────────────────────────────────────────────────
# Mint API client
# ──────────────────────────────────────────────────────────────────────────────


class Mint:
    def __init__(
        self,
        url: str,
        *,
        transport: Transport | None = None,
        auth: AuthProvider | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self.transport: Transport = transport or HttpTransport()
        self.auth = auth

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make HTTP request to mint."""
        if os.environ.get("MINT_DEBUG", "false").lower() == "true":
            logger.setLevel(logging.DEBUG)
        logger.debug("%s %s%s", method, self.url, path)
        headers = await self.auth.headers_for(method, path) if self.auth else None
        return await self.transport.request(
            method, f"{self.url}{path}", json=json, params=params, headers=headers
        )

    # ───────────────────────── Keyset Validation ─────────────────────────────────

    @staticmethod
    def _is_valid_compressed_pubkey(pubkey: Any) -> bool:
        if not isinstance(pubkey, str) or len(pubkey) != 66:
            return False
        if not pubkey.startswith(("02", "03")):
            return False
        try:
            bytes.fromhex(pubkey)
        except ValueError:
            return False
        return True

    def _validate_keyset(self, keyset: Any) -> KeysetInfo:
        """Validate keyset structure per NUT-01/NUT-02 and convert it."""
        if not isinstance(keyset, dict) or not all(k in keyset for k in ("id", "unit", "keys")):
            raise InvalidKeysetError("Keyset missing required fields")
        keys = keyset["keys"]
        if not isinstance(keys, dict) or not keys:
            raise InvalidKeysetError(f"Keyset {keyset['id']} has no keys")
        for amount_str, pubkey in keys.items():
            try:
                if int(amount_str) <= 0:
                    raise ValueError(amount_str)
            except ValueError as e:
                raise InvalidKeysetError(f"Invalid amount {amount_str!r} in keyset") from e
            if not self._is_valid_compressed_pubkey(pubkey):
                raise InvalidKeysetError(f"Invalid public key for amount {amount_str}")

        keyset_id = str(keyset["id"])
        if keyset_id.startswith("00") and derive_keyset_id(keys) != keyset_id:
            raise InvalidKeysetError(f"Keyset ID {keyset_id} does not match its keys")
        return KeysetInfo(
            id=keyset_id,
            unit=str(keyset["unit"]),
            active=bool(keyset.get("active", True)),
            input_fee_ppk=int(keyset.get("input_fee_ppk", 0) or 0),
            keys=dict(keys),
        )

    # ───────────────────────── Info & Keys ─────────────────────────────────

    async def get_info(self) -> MintInfo:
        """Get mint information."""
        return cast(MintInfo, await self._request("GET", "/v1/info"))

    async def get_keys(self, keyset_id: str | None = None) -> list[KeysetInfo]:
        """Get public keys of the active keysets (or one specific keyset)."""
        path = f"/v1/keys/{keyset_id}" if keyset_id else "/v1/keys"
        response = await self._request("GET", path)
        keysets = response.get("keysets")
        if not isinstance(keysets, list):
            raise InvalidKeysetError("Response missing 'keysets' list")
        return [self._validate_keyset(keyset) for keyset in keysets]

    async def get_keysets_info(self) -> list[KeysetInfo]:
        """Get metadata (unit, active flag, fee) of all keysets."""
        response = await self._request("GET", "/v1/keysets")
        keysets = response.get("keysets")
        if not isinstance(keysets, list):
            raise InvalidKeysetError("Response missing 'keysets' list")
        return [
            KeysetInfo(
                id=str(ks["id"]),
                unit=str(ks["unit"]),
                active=bool(ks.get("active", True)),
                input_fee_ppk=int(ks.get("input_fee_ppk", 0) or 0),
            )
            for ks in keysets
        ]

    async def load_keysets(self) -> dict[str, KeysetInfo]:
        """Merged view of keyset metadata and active keys, by keyset ID."""
        infos = {ks.id: ks for ks in await self.get_keysets_info()}
        for keyset in await self.get_keys():
            info = infos.get(keyset.id)
            if info is not None:
                keyset.active = info.active
                keyset.input_fee_ppk = info.input_fee_ppk
            infos[keyset.id] = keyset
        return infos

    # ───────────────────────── Minting (receive) ─────────────────────────────────

    async def create_mint_quote(
        self, *, amount: int, unit: str, description: str | None = None
    ) -> PostMintQuoteResponse:
        """Request a Lightning invoice to mint tokens."""
        body: dict[str, Any] = {"unit": unit, "amount": amount}
        if description is not None:
            body["description"] = description
        return cast(
            PostMintQuoteResponse,
            await self._request("POST", "/v1/mint/quote/bolt11", json=body),
        )

    async def get_mint_quote(self, quote_id: str) -> PostMintQuoteResponse:
        """Check status of a mint quote."""
        return cast(
            PostMintQuoteResponse,
            await self._request("GET", f"/v1/mint/quote/bolt11/{quote_id}"),
        )

    async def mint(self, *, quote: str, outputs: list[BlindedMessage]) -> PostMintResponse:
        """Mint tokens after paying the Lightning invoice."""
        body: dict[str, Any] = {"quote": quote, "outputs": outputs}
        return cast(PostMintResponse, await self._request("POST", "/v1/mint/bolt11", json=body))

    # ───────────────────────── Melting (send) ─────────────────────────────────

    async def create_melt_quote(self, *, request: str, unit: str) -> PostMeltQuoteResponse:
        """Get a quote for paying a Lightning invoice."""
        body: dict[str, Any] = {"unit": unit, "request": request}
        return cast(
            PostMeltQuoteResponse,
            await self._request("POST", "/v1/melt/quote/bolt11", json=body),
        )

    async def get_melt_quote(self, quote_id: str) -> PostMeltQuoteResponse:
        """Check status of a melt quote."""
        return cast(
            PostMeltQuoteResponse,
            await self._request("GET", f"/v1/melt/quote/bolt11/{quote_id}"),
        )

    async def melt(
        self,
        *,
        quote: str,
        inputs: list[Proof],
        outputs: list[BlindedMessage] | None = None,
    ) -> PostMeltQuoteResponse:
        """Melt tokens to pay a Lightning invoice."""
        body: dict[str, Any] = {"quote": quote, "inputs": inputs}
        if outputs:
            body["outputs"] = outputs
        return cast(
            PostMeltQuoteResponse, await self._request("POST", "/v1/melt/bolt11", json=body)
        )

    # ───────────────────────── Token Management ─────────────────────────────────

    async def swap(
        self, *, inputs: list[Proof], outputs: list[BlindedMessage]
    ) -> PostSwapResponse:
        """Swap proofs for new blinded signatures."""
        body: dict[str, Any] = {"inputs": inputs, "outputs": outputs}
        return cast(PostSwapResponse, await self._request("POST", "/v1/swap", json=body))

    async def check_state(self, *, Ys: list[str]) -> PostCheckStateResponse:
        """Check if proofs are spent or pending."""
        return cast(
            PostCheckStateResponse,
            await self._request("POST", "/v1/checkstate", json={"Ys": Ys}),
        )

    async def restore(self, *, outputs: list[BlindedMessage]) -> PostRestoreResponse:
        """Restore signatures for previously issued blinded messages."""
        return cast(
            PostRestoreResponse,
            await self._request("POST", "/v1/restore", json={"outputs": outputs}),
        )
