"""Cashu cryptographic primitives (BDHKE client side, NUT-12 DLEQ) and Nostr helpers (NIP-44, keys, events)."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import secrets
import struct
from typing import Any, Tuple

import bech32
from coincurve import PrivateKey, PublicKey, PublicKeyXOnly
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

from .types import BlindedMessage, InvalidInputError

# secp256k1 group order and field prime
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
FIELD_PRIME = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F

DOMAIN_SEPARATOR = b"Secp256k1_HashToCurve_Cashu_"
KDF_DOMAIN = b"Cashu_KDF_HMAC_SHA256"


# ──────────────────────────────────────────────────────────────────────────────
# BDHKE (NUT-00)
# ──────────────────────────────────────────────────────────────────────────────


def hash_to_curve(message: bytes) -> PublicKey:
    """Map a message to a point on secp256k1 as defined by NUT-00."""
    msg_to_hash = hashlib.sha256(DOMAIN_SEPARATOR + message).digest()
    for counter in range(2**16):
        candidate = hashlib.sha256(msg_to_hash + counter.to_bytes(4, "little")).digest()
        try:
            return PublicKey(b"\x02" + candidate)
        except ValueError:
            continue
    raise ValueError("No valid point found")


def _scalar(value: bytes | int) -> bytes:
    if isinstance(value, bytes):
        value = int.from_bytes(value, "big")
    value %= CURVE_ORDER
    if value == 0:
        raise ValueError("Scalar is zero")
    return value.to_bytes(32, "big")


def _negate(point: PublicKey) -> PublicKey:
    raw = point.format(compressed=False)
    x, y = raw[1:33], int.from_bytes(raw[33:65], "big")
    neg_y = ((FIELD_PRIME - y) % FIELD_PRIME).to_bytes(32, "big")
    return PublicKey(b"\x04" + x + neg_y)


def blind_message(secret: str, r: bytes | None = None) -> tuple[PublicKey, bytes]:
    """Blind a secret for the mint.

    Returns:
        Tuple of (B_, r) where B_ = Y + r*G
    """
    Y = hash_to_curve(secret.encode("utf-8"))
    if r is None:
        r = secrets.token_bytes(32)
    r_key = PrivateKey(_scalar(r))
    B_ = PublicKey.combine_keys([Y, r_key.public_key])
    return B_, r


def unblind_signature(C_: PublicKey, r: bytes, K: PublicKey) -> PublicKey:
    """Unblind a mint signature: C = C_ - r*K."""
    rK = K.multiply(_scalar(r))
    return PublicKey.combine_keys([C_, _negate(rK)])


def create_blinded_message(
    amount: int, keyset_id: str, secret: str, r: bytes
) -> BlindedMessage:
    """Build the wire form of a blinded output."""
    B_, _ = blind_message(secret, r)
    return BlindedMessage(
        amount=amount, id=keyset_id, B_=B_.format(compressed=True).hex()
    )


def get_mint_pubkey_for_amount(keys: dict[str, str], amount: int) -> PublicKey | None:
    """Get the mint public key used for a specific denomination."""
    pubkey_hex = keys.get(str(amount))
    if pubkey_hex is None:
        return None
    return PublicKey(bytes.fromhex(pubkey_hex))


def derive_keyset_id(keys: dict[str, str], version: int = 0) -> str:
    """Derive a NUT-02 keyset ID from the mint public keys."""
    sorted_keys = sorted(keys.items(), key=lambda item: int(item[0]))
    pubkeys = b"".join(bytes.fromhex(pubkey) for _, pubkey in sorted_keys)
    digest = hashlib.sha256(pubkeys).hexdigest()
    return f"{version:02x}{digest[:14]}"


def derive_secret(material: bytes, keyset_id: str, counter: int) -> tuple[str, bytes]:
    """Deterministically derive (secret, blinding factor) for one output.

    Both values are HMAC-SHA256 over the keyset ID and counter, keyed by the
    wallet's signing material, so outputs can be regenerated from the seed.
    """
    try:
        keyset_bytes = bytes.fromhex(keyset_id)
    except ValueError:
        keyset_bytes = keyset_id.encode("utf-8")
    base = KDF_DOMAIN + keyset_bytes + counter.to_bytes(8, "big")
    secret = hmac.new(material, base + b"\x00", hashlib.sha256).hexdigest()
    r_int = int.from_bytes(hmac.new(material, base + b"\x01", hashlib.sha256).digest(), "big")
    r = (r_int % (CURVE_ORDER - 1) + 1).to_bytes(32, "big")
    return secret, r


# ──────────────────────────────────────────────────────────────────────────────
# DLEQ (NUT-12)
# ──────────────────────────────────────────────────────────────────────────────


def hash_e(*points: PublicKey) -> bytes:
    joined = "".join(p.format(compressed=False).hex() for p in points)
    return hashlib.sha256(joined.encode("utf-8")).digest()


def verify_dleq(
    B_: PublicKey, C_: PublicKey, e: bytes, s: bytes, A: PublicKey
) -> bool:
    """Check that C_ was produced with the private key behind A."""
    try:
        neg_e = _scalar(CURVE_ORDER - int.from_bytes(e, "big") % CURVE_ORDER)
        R1 = PublicKey.combine_keys([PrivateKey(_scalar(s)).public_key, A.multiply(neg_e)])
        R2 = PublicKey.combine_keys([B_.multiply(_scalar(s)), C_.multiply(neg_e)])
    except ValueError:
        return False
    return hmac.compare_digest(hash_e(R1, R2, A, C_), e)


def verify_proof_dleq(proof: dict[str, Any], A: PublicKey) -> bool:
    """Verify the DLEQ carried inside an unblinded proof (receiver side)."""
    dleq = proof.get("dleq")
    if not dleq:
        return False
    try:
        r = bytes.fromhex(dleq["r"])
        Y = hash_to_curve(proof["secret"].encode("utf-8"))
        C = PublicKey(bytes.fromhex(proof["C"]))
        C_ = PublicKey.combine_keys([C, A.multiply(_scalar(r))])
        B_ = PublicKey.combine_keys([Y, PrivateKey(_scalar(r)).public_key])
        return verify_dleq(B_, C_, bytes.fromhex(dleq["e"]), bytes.fromhex(dleq["s"]), A)
    except (KeyError, ValueError):
        return False


# ──────────────────────────────────────────────────────────────────────────────
# Nostr keys
# ──────────────────────────────────────────────────────────────────────────────


def get_pubkey(privkey: PrivateKey) -> str:
    """Nostr x-only public key (hex) for a private key."""
    return privkey.public_key.format(compressed=True)[1:].hex()


def _bech32_encode(hrp: str, payload: bytes) -> str:
    data = bech32.convertbits(payload, 8, 5)
    return bech32.bech32_encode(hrp, data)


def _bech32_decode(expected_hrp: str, value: str) -> bytes:
    hrp, data = bech32.bech32_decode(value)
    if hrp != expected_hrp or data is None:
        raise InvalidInputError(f"Invalid {expected_hrp} string")
    decoded = bech32.convertbits(data, 5, 8, False)
    if decoded is None or len(decoded) != 32:
        raise InvalidInputError(f"Invalid {expected_hrp} payload")
    return bytes(decoded)


def encode_nsec(privkey: PrivateKey) -> str:
    return _bech32_encode("nsec", privkey.secret)


def encode_npub(pubkey_hex: str) -> str:
    try:
        return _bech32_encode("npub", bytes.fromhex(pubkey_hex))
    except ValueError as e:
        raise InvalidInputError(f"Invalid public key: {e}") from e


def decode_npub(npub: str) -> str:
    return _bech32_decode("npub", npub).hex()


def decode_nsec(nsec: str) -> PrivateKey:
    """Parse an ``nsec1...`` or 64-char hex private key."""
    nsec = nsec.strip()
    if nsec.startswith("nsec1"):
        raw = _bech32_decode("nsec", nsec)
    else:
        try:
            raw = bytes.fromhex(nsec)
        except ValueError as e:
            raise InvalidInputError(f"Invalid private key: {e}") from e
        if len(raw) != 32:
            raise InvalidInputError("Private key must be 32 bytes")
    try:
        return PrivateKey(raw)
    except ValueError as e:
        raise InvalidInputError(f"Invalid private key: {e}") from e


# ──────────────────────────────────────────────────────────────────────────────
# Nostr events (NIP-01)
# ──────────────────────────────────────────────────────────────────────────────


def compute_event_id(event: dict[str, Any]) -> str:
    serialized = json.dumps(
        [0, event["pubkey"], event["created_at"], event["kind"], event["tags"], event["content"]],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def sign_event(event: dict[str, Any], privkey: PrivateKey) -> dict[str, Any]:
    """Fill in ``pubkey``, ``id`` and ``sig`` of an unsigned event."""
    signed = dict(event)
    signed["pubkey"] = get_pubkey(privkey)
    signed["id"] = compute_event_id(signed)
    signed["sig"] = privkey.sign_schnorr(bytes.fromhex(signed["id"])).hex()
    return signed


def verify_event(event: dict[str, Any]) -> bool:
    try:
        if compute_event_id(event) != event["id"]:
            return False
        pubkey = PublicKeyXOnly(bytes.fromhex(event["pubkey"]))
        return pubkey.verify(bytes.fromhex(event["sig"]), bytes.fromhex(event["id"]))
    except (KeyError, ValueError):
        return False


# ──────────────────────────────────────────────────────────────────────────────
# NIP-44 v2
# ──────────────────────────────────────────────────────────────────────────────


class NIP44Error(Exception):
    """Base exception for NIP-44 encryption errors."""


class NIP44Encrypt:
    """NIP-44 v2 encryption implementation."""

    VERSION = 2
    MIN_PLAINTEXT_SIZE = 1
    MAX_PLAINTEXT_SIZE = 65535
    SALT = b"nip44-v2"

    @staticmethod
    def calc_padded_len(unpadded_len: int) -> int:
        if unpadded_len <= 0:
            raise ValueError("Invalid unpadded length")
        if unpadded_len <= 32:
            return 32
        next_power = 1 << (math.floor(math.log2(unpadded_len - 1)) + 1)
        chunk = 32 if next_power <= 256 else next_power // 8
        return chunk * ((unpadded_len - 1) // chunk + 1)

    @staticmethod
    def pad(plaintext: bytes) -> bytes:
        unpadded_len = len(plaintext)
        if not (
            NIP44Encrypt.MIN_PLAINTEXT_SIZE
            <= unpadded_len
            <= NIP44Encrypt.MAX_PLAINTEXT_SIZE
        ):
            raise NIP44Error(f"Invalid plaintext length: {unpadded_len}")
        padded_len = NIP44Encrypt.calc_padded_len(unpadded_len)
        prefix = struct.pack(">H", unpadded_len)
        return prefix + plaintext + bytes(padded_len - unpadded_len)

    @staticmethod
    def unpad(padded: bytes) -> bytes:
        if len(padded) < 2:
            raise NIP44Error("Invalid padded data")
        unpadded_len = struct.unpack(">H", padded[:2])[0]
        if unpadded_len == 0 or len(padded) < 2 + unpadded_len:
            raise NIP44Error("Invalid padding")
        if len(padded) != 2 + NIP44Encrypt.calc_padded_len(unpadded_len):
            raise NIP44Error("Invalid padded length")
        return padded[2 : 2 + unpadded_len]

    @staticmethod
    def get_conversation_key(privkey: PrivateKey, pubkey_hex: str) -> bytes:
        """ECDH shared x coordinate run through HKDF-Extract."""
        pubkey_bytes = bytes.fromhex(pubkey_hex)
        if len(pubkey_bytes) == 32:
            pubkey_bytes = b"\x02" + pubkey_bytes
        shared_point = PublicKey(pubkey_bytes).multiply(privkey.secret)
        shared_x = shared_point.format(compressed=False)[1:33]
        # HKDF-Extract only: the PRK is HMAC(salt, ikm)
        return hmac.new(NIP44Encrypt.SALT, shared_x, hashlib.sha256).digest()

    @staticmethod
    def get_message_keys(
        conversation_key: bytes, nonce: bytes
    ) -> Tuple[bytes, bytes, bytes]:
        if len(conversation_key) != 32:
            raise NIP44Error("Invalid conversation key length")
        if len(nonce) != 32:
            raise NIP44Error("Invalid nonce length")
        expanded = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(
            conversation_key
        )
        return expanded[0:32], expanded[32:44], expanded[44:76]

    @staticmethod
    def hmac_aad(key: bytes, message: bytes, aad: bytes) -> bytes:
        if len(aad) != 32:
            raise NIP44Error("AAD must be 32 bytes")
        return hmac.new(key, aad + message, hashlib.sha256).digest()

    @staticmethod
    def chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
        # cryptography's ChaCha20 takes a 16-byte nonce: 4-byte counter + 12-byte nonce
        cipher = Cipher(algorithms.ChaCha20(key, b"\x00" * 4 + nonce), mode=None)
        encryptor = cipher.encryptor()
        return encryptor.update(data) + encryptor.finalize()

    @staticmethod
    def encrypt(
        plaintext: str,
        sender_privkey: PrivateKey,
        recipient_pubkey: str,
        nonce: bytes | None = None,
    ) -> str:
        nonce = nonce or secrets.token_bytes(32)
        conversation_key = NIP44Encrypt.get_conversation_key(sender_privkey, recipient_pubkey)
        chacha_key, chacha_nonce, hmac_key = NIP44Encrypt.get_message_keys(
            conversation_key, nonce
        )
        padded = NIP44Encrypt.pad(plaintext.encode("utf-8"))
        ciphertext = NIP44Encrypt.chacha20(chacha_key, chacha_nonce, padded)
        mac = NIP44Encrypt.hmac_aad(hmac_key, ciphertext, nonce)
        payload = bytes([NIP44Encrypt.VERSION]) + nonce + ciphertext + mac
        return base64.b64encode(payload).decode("ascii")

    @staticmethod
    def decrypt(ciphertext: str, recipient_privkey: PrivateKey, sender_pubkey: str) -> str:
        if ciphertext.startswith("#"):
            raise NIP44Error("Unsupported encryption version")
        try:
            payload = base64.b64decode(ciphertext, validate=True)
        except ValueError as e:
            raise NIP44Error(f"Invalid base64: {e}") from e
        if len(payload) < 99 or len(payload) > 65603:
            raise NIP44Error(f"Invalid payload size: {len(payload)}")
        if payload[0] != NIP44Encrypt.VERSION:
            raise NIP44Error(f"Unknown version: {payload[0]}")

        nonce, mac, encrypted = payload[1:33], payload[-32:], payload[33:-32]
        try:
            conversation_key = NIP44Encrypt.get_conversation_key(
                recipient_privkey, sender_pubkey
            )
        except ValueError as e:
            raise NIP44Error(f"Invalid public key: {e}") from e
        chacha_key, chacha_nonce, hmac_key = NIP44Encrypt.get_message_keys(
            conversation_key, nonce
        )
        if not hmac.compare_digest(NIP44Encrypt.hmac_aad(hmac_key, encrypted, nonce), mac):
            raise NIP44Error("Invalid MAC")
        padded = NIP44Encrypt.chacha20(chacha_key, chacha_nonce, encrypted)
        try:
            return NIP44Encrypt.unpad(padded).decode("utf-8")
        except UnicodeDecodeError as e:
            raise NIP44Error(f"Invalid plaintext: {e}") from e


def nip44_encrypt(plaintext: str, privkey: PrivateKey, pubkey_hex: str | None = None) -> str:
    """Encrypt to ``pubkey_hex`` (defaults to our own key)."""
    return NIP44Encrypt.encrypt(plaintext, privkey, pubkey_hex or get_pubkey(privkey))


def nip44_decrypt(ciphertext: str, privkey: PrivateKey, pubkey_hex: str | None = None) -> str:
    """Decrypt a payload sent by ``pubkey_hex`` (defaults to our own key)."""
    return NIP44Encrypt.decrypt(ciphertext, privkey, pubkey_hex or get_pubkey(privkey))
