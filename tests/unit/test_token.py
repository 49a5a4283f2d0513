"""Tests for cashuA / cashuB token serialization."""

import base64
import json

import cbor2
import pytest

from many_nuts.token import Token, decode_token, encode_token
from many_nuts.types import InvalidInputError, Proof

KEYSET = "009a1f293253e41e"
C_HEX = "02" + "ab" * 32


def _proof(amount: int, secret: str, **extra) -> Proof:
    proof = Proof(id=KEYSET, amount=amount, secret=secret, C=C_HEX)
    proof.update(extra)
    return proof


@pytest.fixture
def token() -> Token:
    return Token(
        mint_url="https://mint.test",
        unit="sat",
        proofs=[_proof(2, "a"), _proof(8, "b")],
        memo="thanks",
    )


class TestEncoding:
    """Serializing tokens."""

    def test_v4_prefix_and_structure(self, token: Token) -> None:
        encoded = encode_token(token)
        assert encoded.startswith("cashuB")
        assert "=" not in encoded
        raw = encoded[6:]
        data = cbor2.loads(base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)))
        assert data["m"] == "https://mint.test"
        assert data["u"] == "sat"
        assert data["d"] == "thanks"
        assert data["t"][0]["i"] == bytes.fromhex(KEYSET)
        assert [p["a"] for p in data["t"][0]["p"]] == [2, 8]

    def test_v3_prefix_and_structure(self, token: Token) -> None:
        encoded = token.serialize(3)
        assert encoded.startswith("cashuA")
        raw = encoded[6:]
        data = json.loads(base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4)))
        assert data["unit"] == "sat"
        assert data["memo"] == "thanks"
        assert data["token"][0]["mint"] == "https://mint.test"
        assert len(data["token"][0]["proofs"]) == 2

    def test_v4_keeps_order_across_keysets(self) -> None:
        other = "00ad268c4d1f5826"
        token = Token(
            mint_url="https://mint.test",
            unit="sat",
            proofs=[_proof(1, "a"), Proof(id=other, amount=2, secret="b", C=C_HEX), _proof(4, "c")],
        )
        decoded = decode_token(encode_token(token))
        assert [p["secret"] for p in decoded.proofs] == ["a", "b", "c"]
        assert [p["id"] for p in decoded.proofs] == [KEYSET, other, KEYSET]

    def test_v4_requires_hex_keyset_ids(self) -> None:
        token = Token(
            mint_url="https://mint.test",
            unit="sat",
            proofs=[Proof(id="I2yN+iRYfkzT", amount=1, secret="a", C=C_HEX)],
        )
        with pytest.raises(InvalidInputError):
            encode_token(token, 4)
        assert encode_token(token, 3).startswith("cashuA")

    def test_unknown_version(self, token: Token) -> None:
        with pytest.raises(InvalidInputError):
            encode_token(token, 5)  # type: ignore[arg-type]


class TestDecoding:
    """Parsing tokens."""

    @pytest.mark.parametrize("version", [3, 4])
    def test_fields_survive(self, token: Token, version: int) -> None:
        decoded = decode_token(encode_token(token, version))  # type: ignore[arg-type]
        assert decoded.mint_url == token.mint_url
        assert decoded.unit == token.unit
        assert decoded.memo == token.memo
        assert decoded.proofs == token.proofs
        assert decoded.amount == 10

    def test_dleq_and_witness_survive_v4(self) -> None:
        dleq = {"e": "11" * 32, "s": "22" * 32, "r": "33" * 32}
        token = Token(
            mint_url="https://mint.test",
            unit="sat",
            proofs=[_proof(4, "w", dleq=dleq, witness='{"signatures":[]}')],
        )
        proof = decode_token(encode_token(token)).proofs[0]
        assert proof["dleq"] == dleq
        assert proof["witness"] == '{"signatures":[]}'

    def test_uri_prefix_and_whitespace(self, token: Token) -> None:
        encoded = encode_token(token)
        assert decode_token(f"  cashu:{encoded}\n").amount == 10

    def test_v3_without_unit_defaults_to_sat(self) -> None:
        payload = {"token": [{"mint": "https://mint.test", "proofs": [dict(_proof(1, "x"))]}]}
        raw = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()
        assert decode_token("cashuA" + raw).unit == "sat"

    @pytest.mark.parametrize(
        "value",
        ["", "cashu", "hello", "cashuC" + "A" * 10, "cashuA!!!notbase64", "cashuBAAAA"],
    )
    def test_malformed_tokens(self, value: str) -> None:
        with pytest.raises(InvalidInputError):
            decode_token(value)

    def test_multiple_mints_rejected(self) -> None:
        payload = {
            "token": [
                {"mint": "https://a.test", "proofs": [dict(_proof(1, "x"))]},
                {"mint": "https://b.test", "proofs": [dict(_proof(1, "y"))]},
            ]
        }
        raw = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()
        with pytest.raises(InvalidInputError):
            decode_token("cashuA" + raw)

    def test_non_positive_amount_rejected(self) -> None:
        token = Token(mint_url="https://mint.test", unit="sat", proofs=[_proof(0, "z")])
        with pytest.raises(InvalidInputError):
            decode_token(encode_token(token))
