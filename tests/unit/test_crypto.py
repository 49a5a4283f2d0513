"""Tests for BDHKE, DLEQ, keyset ids, Nostr keys/events and NIP-44."""

import hashlib
import json

import pytest
from coincurve import PrivateKey

from many_nuts.crypto import (
    CURVE_ORDER,
    NIP44Encrypt,
    NIP44Error,
    blind_message,
    compute_event_id,
    create_blinded_message,
    decode_npub,
    decode_nsec,
    derive_keyset_id,
    derive_secret,
    encode_npub,
    encode_nsec,
    get_pubkey,
    hash_e,
    hash_to_curve,
    nip44_decrypt,
    nip44_encrypt,
    sign_event,
    unblind_signature,
    verify_dleq,
    verify_event,
    verify_proof_dleq,
)
from many_nuts.types import InvalidInputError


def _sign_with_dleq(k: PrivateKey, B_, nonce: bytes = b"\x07" * 32):
    """Mint side of BDHKE with a NUT-12 DLEQ proof."""
    C_ = B_.multiply(k.secret)
    p = PrivateKey(nonce)
    e = hash_e(p.public_key, B_.multiply(p.secret), k.public_key, C_)
    s = (
        int.from_bytes(p.secret, "big")
        + int.from_bytes(e, "big") * int.from_bytes(k.secret, "big")
    ) % CURVE_ORDER
    return C_, e, s.to_bytes(32, "big")


class TestHashToCurve:
    """NUT-00 hash_to_curve."""

    def test_known_vectors(self) -> None:
        """Test vectors published with NUT-00."""
        y0 = hash_to_curve(bytes(32))
        assert y0.format().hex() == (
            "024cce997d3b518f739663b757deaec95bcd9473c30a14ac2fd04023a739d1a725"
        )
        y1 = hash_to_curve(bytes(31) + b"\x01")
        assert y1.format().hex() == (
            "022e7158e11c9506f1aa4248bf531298daa7febd6194f003edcd9b93ade6253acf"
        )

    def test_deterministic_and_even(self) -> None:
        a = hash_to_curve(b"secret")
        b = hash_to_curve(b"secret")
        assert a.format() == b.format()
        assert a.format()[0] == 2

    def test_different_messages_map_to_different_points(self) -> None:
        assert hash_to_curve(b"a").format() != hash_to_curve(b"b").format()


class TestBlindSignatures:
    """Client-side blinding and unblinding."""

    def test_unblinded_signature_equals_k_times_y(self) -> None:
        """C = C_ - rK must equal k*hash_to_curve(secret)."""
        k = PrivateKey(hashlib.sha256(b"mint key").digest())
        secret = "test_message"
        r = hashlib.sha256(b"blinding").digest()

        B_, returned_r = blind_message(secret, r)
        assert returned_r == r
        C_ = B_.multiply(k.secret)
        C = unblind_signature(C_, r, k.public_key)

        expected = hash_to_curve(secret.encode()).multiply(k.secret)
        assert C.format() == expected.format()

    def test_random_blinding_factor_is_generated(self) -> None:
        B1, r1 = blind_message("same")
        B2, r2 = blind_message("same")
        assert r1 != r2
        assert B1.format() != B2.format()

    def test_create_blinded_message_wire_format(self) -> None:
        r = hashlib.sha256(b"r").digest()
        message = create_blinded_message(8, "00abcdef01234567", "s3cret", r)
        assert message["amount"] == 8
        assert message["id"] == "00abcdef01234567"
        assert message["B_"] == blind_message("s3cret", r)[0].format().hex()


class TestDLEQ:
    """NUT-12 discrete log equality proofs."""

    def test_valid_proof_verifies(self) -> None:
        k = PrivateKey(hashlib.sha256(b"k").digest())
        B_, _ = blind_message("dleq", hashlib.sha256(b"r").digest())
        C_, e, s = _sign_with_dleq(k, B_)
        assert verify_dleq(B_, C_, e, s, k.public_key)

    def test_wrong_mint_key_fails(self) -> None:
        k = PrivateKey(hashlib.sha256(b"k").digest())
        other = PrivateKey(hashlib.sha256(b"other").digest())
        B_, _ = blind_message("dleq", hashlib.sha256(b"r").digest())
        C_, e, s = _sign_with_dleq(k, B_)
        assert not verify_dleq(B_, C_, e, s, other.public_key)

    def test_tampered_signature_fails(self) -> None:
        k = PrivateKey(hashlib.sha256(b"k").digest())
        B_, _ = blind_message("dleq", hashlib.sha256(b"r").digest())
        C_, e, s = _sign_with_dleq(k, B_)
        forged = B_.multiply(hashlib.sha256(b"forged").digest())
        assert not verify_dleq(B_, forged, e, s, k.public_key)

    def test_proof_dleq_verified_by_receiver(self) -> None:
        """The receiver rebuilds B_ and C_ from (secret, C, r)."""
        k = PrivateKey(hashlib.sha256(b"k").digest())
        r = hashlib.sha256(b"r").digest()
        secret = "carried"
        B_, _ = blind_message(secret, r)
        C_, e, s = _sign_with_dleq(k, B_)
        C = unblind_signature(C_, r, k.public_key)
        proof = {
            "id": "00" * 8,
            "amount": 1,
            "secret": secret,
            "C": C.format().hex(),
            "dleq": {"e": e.hex(), "s": s.hex(), "r": r.hex()},
        }
        assert verify_proof_dleq(proof, k.public_key)

        proof["secret"] = "swapped"
        assert not verify_proof_dleq(proof, k.public_key)

    def test_proof_without_dleq_does_not_verify(self) -> None:
        k = PrivateKey(hashlib.sha256(b"k").digest())
        assert not verify_proof_dleq({"secret": "x", "C": "02" * 33}, k.public_key)


class TestKeysetsAndSecrets:
    """NUT-02 keyset ids and deterministic secret derivation."""

    def test_keyset_id_vector(self) -> None:
        keys = {
            "1": "03a40f20667ed53513075dc51e715ff2046cad64eb68960632269ba7f0210e38bc",
            "2": "03fd4ce5a16b65576145949e6f99f445f8249fee17c606b688b504a849cdc452de",
            "4": "02648eccfa4c026960966276fa5a4cae46ce0fd432211a4f449bf84f13aa5f8303",
            "8": "02fdfd6796bfeac490cbee12f778f867f0a2c68f6508d17c649759ea0dc3547528",
        }
        assert derive_keyset_id(keys) == "00456a94ab4e1c46"

    def test_keyset_id_sorts_by_numeric_amount(self) -> None:
        pk = [PrivateKey(bytes([i]) * 32).public_key.format().hex() for i in (1, 2, 3)]
        ordered = {"1": pk[0], "2": pk[1], "10": pk[2]}
        shuffled = {"10": pk[2], "1": pk[0], "2": pk[1]}
        assert derive_keyset_id(ordered) == derive_keyset_id(shuffled)
        assert derive_keyset_id(ordered, version=1).startswith("01")

    def test_derive_secret_is_deterministic(self) -> None:
        material = b"\x01" * 32
        assert derive_secret(material, "009a1f293253e41e", 0) == derive_secret(
            material, "009a1f293253e41e", 0
        )

    def test_derive_secret_depends_on_all_inputs(self) -> None:
        base = derive_secret(b"\x01" * 32, "009a1f293253e41e", 0)
        assert derive_secret(b"\x02" * 32, "009a1f293253e41e", 0) != base
        assert derive_secret(b"\x01" * 32, "00ad268c4d1f5826", 0) != base
        assert derive_secret(b"\x01" * 32, "009a1f293253e41e", 1) != base

    def test_derived_blinding_factor_is_a_valid_scalar(self) -> None:
        for counter in range(20):
            secret, r = derive_secret(b"\x05" * 32, "009a1f293253e41e", counter)
            assert len(secret) == 64
            assert 0 < int.from_bytes(r, "big") < CURVE_ORDER


class TestNostrKeys:
    """bech32 key encodings."""

    def test_nsec_round_trip(self) -> None:
        key = PrivateKey(b"\x11" * 32)
        nsec = encode_nsec(key)
        assert nsec.startswith("nsec1")
        assert decode_nsec(nsec).secret == key.secret

    def test_decode_nsec_accepts_hex(self) -> None:
        assert decode_nsec("11" * 32).secret == b"\x11" * 32

    def test_npub_round_trip(self) -> None:
        pubkey = get_pubkey(PrivateKey(b"\x22" * 32))
        assert len(pubkey) == 64
        assert decode_npub(encode_npub(pubkey)) == pubkey

    @pytest.mark.parametrize("value", ["nsec1invalid", "zz" * 32, "11" * 16])
    def test_invalid_keys_are_rejected(self, value: str) -> None:
        with pytest.raises(InvalidInputError):
            decode_nsec(value)

    def test_npub_is_not_an_nsec(self) -> None:
        npub = encode_npub(get_pubkey(PrivateKey(b"\x22" * 32)))
        with pytest.raises(InvalidInputError):
            decode_nsec(npub)


class TestEvents:
    """NIP-01 event ids and schnorr signatures."""

    def _event(self) -> dict:
        return {"created_at": 1_700_000_000, "kind": 1, "tags": [["t", "x"]], "content": "hi"}

    def test_event_id_matches_serialization(self) -> None:
        signed = sign_event(self._event(), PrivateKey(b"\x33" * 32))
        serialized = json.dumps(
            [0, signed["pubkey"], 1_700_000_000, 1, [["t", "x"]], "hi"],
            separators=(",", ":"),
        )
        assert signed["id"] == hashlib.sha256(serialized.encode()).hexdigest()
        assert compute_event_id(signed) == signed["id"]

    def test_signed_event_verifies(self) -> None:
        signed = sign_event(self._event(), PrivateKey(b"\x33" * 32))
        assert verify_event(signed)

    def test_tampered_event_fails(self) -> None:
        signed = sign_event(self._event(), PrivateKey(b"\x33" * 32))
        signed["content"] = "bye"
        assert not verify_event(signed)

    def test_missing_fields_fail(self) -> None:
        assert not verify_event({"kind": 1})


class TestNIP44:
    """NIP-44 v2 payload encryption."""

    def test_round_trip_between_two_parties(self) -> None:
        alice, bob = PrivateKey(b"\x01" * 32), PrivateKey(b"\x02" * 32)
        payload = nip44_encrypt("hello bob", alice, get_pubkey(bob))
        assert nip44_decrypt(payload, bob, get_pubkey(alice)) == "hello bob"

    def test_self_encryption(self) -> None:
        key = PrivateKey(b"\x03" * 32)
        assert nip44_decrypt(nip44_encrypt("note to self", key), key) == "note to self"

    def test_wrong_key_fails_mac(self) -> None:
        key, other = PrivateKey(b"\x03" * 32), PrivateKey(b"\x04" * 32)
        payload = nip44_encrypt("secret", key)
        with pytest.raises(NIP44Error):
            nip44_decrypt(payload, other, get_pubkey(key))

    def test_conversation_key_is_symmetric(self) -> None:
        alice, bob = PrivateKey(b"\x01" * 32), PrivateKey(b"\x02" * 32)
        assert NIP44Encrypt.get_conversation_key(
            alice, get_pubkey(bob)
        ) == NIP44Encrypt.get_conversation_key(bob, get_pubkey(alice))

    @pytest.mark.parametrize(
        "length, padded", [(1, 32), (32, 32), (33, 64), (100, 128), (320, 320), (1000, 1024)]
    )
    def test_padding_lengths(self, length: int, padded: int) -> None:
        assert NIP44Encrypt.calc_padded_len(length) == padded

    def test_unsupported_version_rejected(self) -> None:
        with pytest.raises(NIP44Error):
            nip44_decrypt("#abc", PrivateKey(b"\x03" * 32))

    def test_empty_plaintext_rejected(self) -> None:
        with pytest.raises(NIP44Error):
            nip44_encrypt("", PrivateKey(b"\x03" * 32))
