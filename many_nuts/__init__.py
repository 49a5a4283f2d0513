"""many-nuts - multi-mint Cashu wallet core.

Tracks ecash proofs across several mints, drives Lightning mint/melt quotes
and keeps encrypted NIP-60 backups on Nostr relays.
"""

from .backup import BackupCodec, BackupTransport, TokenRecord, WalletRecord
from .mint import Mint, MintCapabilities, normalize_mint_url
from .orchestrator import MultiMintWallet
from .quotes import MeltQuote, MeltQuoteState, MintQuote, MintQuoteState
from .registry import MintRegistry
from .seed import SeedManager, generate_mnemonic, validate_mnemonic
from .storage import JsonFileStore, MemoryStore, WalletStore
from .token import Token, decode_token, encode_token
from .transport import ClearAuth, HttpTransport, TransportSelector
from .types import (
    DecryptionFailedError,
    DuplicateProofError,
    InsufficientBalanceError,
    InvalidInputError,
    InvoiceMissingAmountError,
    MintError,
    NetworkError,
    NotFoundError,
    ProtocolError,
    RelayError,
    StateError,
    WalletError,
    WalletKey,
)
from .wallet import MintWallet, PreparedSend, SendOptions

__all__ = [
    # Main wallet classes
    "MultiMintWallet",
    "MintWallet",
    "MintRegistry",
    "SeedManager",
    # Tokens and quotes
    "Token",
    "decode_token",
    "encode_token",
    "MintQuote",
    "MintQuoteState",
    "MeltQuote",
    "MeltQuoteState",
    "PreparedSend",
    "SendOptions",
    "WalletKey",
    # Mint access
    "Mint",
    "MintCapabilities",
    "normalize_mint_url",
    "HttpTransport",
    "TransportSelector",
    "ClearAuth",
    # Persistence and backup
    "WalletStore",
    "MemoryStore",
    "JsonFileStore",
    "BackupCodec",
    "BackupTransport",
    "WalletRecord",
    "TokenRecord",
    "generate_mnemonic",
    "validate_mnemonic",
    # Errors
    "WalletError",
    "InvalidInputError",
    "InvoiceMissingAmountError",
    "NotFoundError",
    "NetworkError",
    "RelayError",
    "ProtocolError",
    "MintError",
    "StateError",
    "DuplicateProofError",
    "InsufficientBalanceError",
    "DecryptionFailedError",
]
