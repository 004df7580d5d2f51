from .engine import (
    CryptoEngine,
    DecryptionFailure,
    derive_master_key,
    legacy_plaintext,
    search_hash,
    verify_search_hash,
)

__all__ = [
    "CryptoEngine",
    "DecryptionFailure",
    "derive_master_key",
    "legacy_plaintext",
    "search_hash",
    "verify_search_hash",
]
