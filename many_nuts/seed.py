"""Master seed handling: BIP-39 mnemonics, seed interchange and key derivation."""

from __future__ import annotations

from coincurve import PrivateKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from mnemonic import Mnemonic

from .crypto import CURVE_ORDER
from .types import InvalidInputError, WalletKey

WORKING_SEED_LEN = 64
WORKING_SEED_SALT = b"many-nuts/working-seed"
WALLET_MATERIAL_SALT = b"many-nuts/wallet-material"
IDENTITY_INFO = b"many-nuts/nostr-identity"
WALLET_RECORD_INFO = b"many-nuts/nip60-wallet"

_WORD_STRENGTH = {12: 128, 24: 256}
_wordlist = Mnemonic("english")


def _normalize(mnemonic: str) -> str:
    return " ".join(mnemonic.lower().split())


def generate_mnemonic(word_count: int = 12) -> str:
    """Generate a new 12 or 24 word BIP-39 mnemonic."""
    strength = _WORD_STRENGTH.get(word_count)
    if strength is None:
        raise InvalidInputError(f"Unsupported word count: {word_count} (use 12 or 24)")
    return _wordlist.generate(strength=strength)


def validate_mnemonic(mnemonic: str) -> bool:
    """Return True when the mnemonic has known words and a valid checksum."""
    try:
        return _wordlist.check(_normalize(mnemonic))
    except (ValueError, LookupError, TypeError, AttributeError):
        return False


def mnemonic_to_seed(mnemonic: str) -> bytes:
    """Decode a mnemonic to its entropy bytes (16 bytes for 12 words, 32 for 24)."""
    normalized = _normalize(mnemonic)
    if not validate_mnemonic(normalized):
        raise InvalidInputError("Invalid mnemonic: unknown word or bad checksum")
    return bytes(_wordlist.to_entropy(normalized))


def seed_to_mnemonic(seed: bytes) -> str:
    """Encode 16 or 32 bytes of entropy as a mnemonic."""
    if len(seed) not in (16, 32):
        raise InvalidInputError(f"Entropy must be 16 or 32 bytes, got {len(seed)}")
    return _wordlist.to_mnemonic(seed)


def mnemonic_to_master_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """The 64-byte BIP-39 seed (PBKDF2) for a mnemonic."""
    normalized = _normalize(mnemonic)
    if not validate_mnemonic(normalized):
        raise InvalidInputError("Invalid mnemonic: unknown word or bad checksum")
    return Mnemonic.to_seed(normalized, passphrase)


def seed_from_hex(seed_hex: str) -> bytes:
    """Parse a 32 or 64 byte seed given as 64 or 128 hex characters."""
    seed_hex = seed_hex.strip()
    if len(seed_hex) not in (64, 128):
        raise InvalidInputError(
            f"Seed must be 64 or 128 hex characters, got {len(seed_hex)}"
        )
    try:
        return bytes.fromhex(seed_hex)
    except ValueError as e:
        raise InvalidInputError(f"Invalid seed hex: {e}") from e


def derive_working_seed(seed: bytes) -> bytes:
    """Canonical 64-byte working seed.

    64-byte seeds are used unchanged. 32-byte seeds are stretched with
    HKDF-SHA256; no truncation or zero padding ever happens.
    """
    if len(seed) == WORKING_SEED_LEN:
        return bytes(seed)
    if len(seed) == 32:
        return HKDF(
            algorithm=hashes.SHA256(),
            length=WORKING_SEED_LEN,
            salt=WORKING_SEED_SALT,
            info=b"expand-32",
        ).derive(seed)
    raise InvalidInputError(f"Seed must be 32 or 64 bytes, got {len(seed)}")


def derive_wallet_material(working_seed: bytes, wallet_key: WalletKey) -> bytes:
    """32 bytes of signing material owned by a single mint wallet."""
    info = f"{wallet_key.mint_url}|{wallet_key.unit}".encode("utf-8")
    return HKDF(
        algorithm=hashes.SHA256(), length=32, salt=WALLET_MATERIAL_SALT, info=info
    ).derive(working_seed)


def _derive_private_key(working_seed: bytes, info: bytes) -> PrivateKey:
    raw = HKDF(
        algorithm=hashes.SHA256(), length=32, salt=WALLET_MATERIAL_SALT, info=info
    ).derive(working_seed)
    scalar = int.from_bytes(raw, "big") % (CURVE_ORDER - 1) + 1
    return PrivateKey(scalar.to_bytes(32, "big"))


def derive_identity_key(working_seed: bytes) -> PrivateKey:
    """Nostr identity key used to encrypt and sign backups."""
    return _derive_private_key(working_seed, IDENTITY_INFO)


def derive_wallet_record_key(working_seed: bytes) -> PrivateKey:
    """Key published inside the NIP-60 wallet record (P2PK receive key)."""
    return _derive_private_key(working_seed, WALLET_RECORD_INFO)


class SeedManager:
    """Holds the working seed and hands out derived key material."""

    def __init__(self, seed: bytes) -> None:
        self._working_seed = derive_working_seed(seed)

    @classmethod
    def from_mnemonic(cls, mnemonic: str, passphrase: str = "") -> SeedManager:
        return cls(mnemonic_to_master_seed(mnemonic, passphrase))

    @classmethod
    def from_hex(cls, seed_hex: str) -> SeedManager:
        return cls(seed_from_hex(seed_hex))

    @classmethod
    def generate(cls, word_count: int = 12) -> tuple[SeedManager, str]:
        """Create a fresh seed; returns the manager and its mnemonic."""
        mnemonic = generate_mnemonic(word_count)
        return cls.from_mnemonic(mnemonic), mnemonic

    @property
    def working_seed(self) -> bytes:
        return self._working_seed

    def wallet_material(self, wallet_key: WalletKey) -> bytes:
        return derive_wallet_material(self._working_seed, wallet_key)

    def identity_key(self) -> PrivateKey:
        return derive_identity_key(self._working_seed)

    def wallet_record_key(self) -> PrivateKey:
        return derive_wallet_record_key(self._working_seed)
