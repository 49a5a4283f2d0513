"""Cashu token serialization: V3 (``cashuA``, JSON) and V4 (``cashuB``, CBOR)."""

from __future__ import annotations

import base64
import json
from dataclasses import dataclass, field
from typing import Any, Literal

import cbor2

from .types import DLEQ, InvalidInputError, Proof

TokenVersion = Literal[3, 4]


@dataclass
class Token:
    """A transferable bundle of proofs from one mint in one unit."""

    mint_url: str
    unit: str
    proofs: list[Proof] = field(default_factory=list)
    memo: str | None = None

    @property
    def amount(self) -> int:
        return sum(p["amount"] for p in self.proofs)

    def serialize(self, version: TokenVersion = 4) -> str:
        return encode_token(self, version)


def _b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _b64decode(data: str) -> bytes:
    # Add correct padding: (-len) % 4 equals 0,1,2,3
    return base64.urlsafe_b64decode(data + "=" * ((-len(data)) % 4))


def _proof_v3(proof: Proof) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": proof["id"],
        "amount": proof["amount"],
        "secret": proof["secret"],
        "C": proof["C"],
    }
    if "witness" in proof:
        out["witness"] = proof["witness"]
    if "dleq" in proof:
        out["dleq"] = dict(proof["dleq"])
    return out


def _proof_from_v3(data: dict[str, Any]) -> Proof:
    proof = Proof(
        id=str(data["id"]),
        amount=int(data["amount"]),
        secret=str(data["secret"]),
        C=str(data["C"]),
    )
    if "witness" in data:
        proof["witness"] = data["witness"]
    if "dleq" in data:
        dleq = data["dleq"]
        proof["dleq"] = DLEQ(e=dleq["e"], s=dleq["s"], r=dleq["r"])
    return proof


def _serialize_v3(token: Token) -> str:
    token_data: dict[str, Any] = {
        "token": [{"mint": token.mint_url, "proofs": [_proof_v3(p) for p in token.proofs]}],
        "unit": token.unit,
    }
    if token.memo is not None:
        token_data["memo"] = token.memo
    json_str = json.dumps(token_data, separators=(",", ":"))
    return f"cashuA{_b64encode(json_str.encode())}"


def _serialize_v4(token: Token) -> str:
    # Consecutive proofs sharing a keyset form one entry so proof order survives
    entries: list[dict[str, Any]] = []
    for proof in token.proofs:
        keyset_id = bytes.fromhex(proof["id"])
        if not entries or entries[-1]["i"] != keyset_id:
            entries.append({"i": keyset_id, "p": []})
        v4_proof: dict[str, Any] = {
            "a": proof["amount"],
            "s": proof["secret"],
            "c": bytes.fromhex(proof["C"]),
        }
        if "dleq" in proof:
            v4_proof["d"] = {
                "e": bytes.fromhex(proof["dleq"]["e"]),
                "s": bytes.fromhex(proof["dleq"]["s"]),
                "r": bytes.fromhex(proof["dleq"]["r"]),
            }
        if "witness" in proof:
            v4_proof["w"] = proof["witness"]
        entries[-1]["p"].append(v4_proof)

    token_data: dict[str, Any] = {"m": token.mint_url, "u": token.unit}
    if token.memo is not None:
        token_data["d"] = token.memo
    token_data["t"] = entries
    return f"cashuB{_b64encode(cbor2.dumps(token_data))}"


def encode_token(token: Token, version: TokenVersion = 4) -> str:
    """Serialize a token. V4 requires hex keyset IDs and signatures."""
    if version == 3:
        return _serialize_v3(token)
    if version == 4:
        try:
            return _serialize_v4(token)
        except ValueError as e:
            raise InvalidInputError(f"Token not representable as cashuB: {e}") from e
    raise InvalidInputError(f"Unsupported token version: {version}. Use 3 or 4.")


def _parse_v3(encoded: str) -> Token:
    token_data = json.loads(_b64decode(encoded).decode())
    entries = token_data["token"]
    if not entries:
        raise InvalidInputError("Token has no entries")
    mint_urls = {entry["mint"] for entry in entries}
    if len(mint_urls) != 1:
        raise InvalidInputError("Token proofs reference more than one mint")
    proofs = [_proof_from_v3(p) for entry in entries for p in entry["proofs"]]
    return Token(
        mint_url=entries[0]["mint"],
        unit=token_data.get("unit", "sat"),
        proofs=proofs,
        memo=token_data.get("memo"),
    )


def _parse_v4(encoded: str) -> Token:
    token_data = cbor2.loads(_b64decode(encoded))
    proofs: list[Proof] = []
    for entry in token_data["t"]:
        keyset_id = entry["i"].hex()
        for p in entry["p"]:
            proof = Proof(id=keyset_id, amount=int(p["a"]), secret=p["s"], C=p["c"].hex())
            if "d" in p:
                proof["dleq"] = DLEQ(e=p["d"]["e"].hex(), s=p["d"]["s"].hex(), r=p["d"]["r"].hex())
            if "w" in p:
                proof["witness"] = p["w"]
            proofs.append(proof)
    return Token(
        mint_url=token_data["m"], unit=token_data["u"], proofs=proofs, memo=token_data.get("d")
    )


def decode_token(token: str) -> Token:
    """Parse a ``cashuA`` or ``cashuB`` token string."""
    token = token.strip()
    if token.startswith("cashu:"):
        token = token[len("cashu:") :]
    if not token.startswith("cashu") or len(token) < 7:
        raise InvalidInputError("Invalid token format")

    try:
        if token.startswith("cashuA"):
            parsed = _parse_v3(token[6:])
        elif token.startswith("cashuB"):
            parsed = _parse_v4(token[6:])
        else:
            raise InvalidInputError(f"Unknown token version: {token[:6]}")
    except InvalidInputError:
        raise
    except (ValueError, KeyError, TypeError, IndexError, AttributeError) as e:
        raise InvalidInputError(f"Malformed token: {e}") from e

    for proof in parsed.proofs:
        if proof["amount"] <= 0:
            raise InvalidInputError("Token contains a non-positive proof amount")
    return parsed
