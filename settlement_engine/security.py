"""
Security utilities: inbound verification and Fernet encryption.

Two concerns are handled here:

1. INBOUND VERIFICATION
   - The fiat gateway signs webhooks by sending a shared secret in the
     `verif-hash` header. It is compared to WEBHOOK_SECRET in constant time.
   - Operator endpoints (manual settlement retry, sweeps, chain event
     ingestion from an external subscriber) require OPERATOR_API_KEY in the
     `X-Operator-Key` header, compared the same way.

2. FERNET ENCRYPTION (AES-128-CBC + HMAC-SHA256)
   - Used for merchant bank account numbers at rest
   - Fernet provides authenticated encryption: data is both encrypted and
     integrity-checked, preventing tampering
   - The key is loaded from PAYOUT_ENCRYPTION_KEY, never hardcoded
"""

import hmac
from functools import lru_cache

from cryptography.fernet import Fernet

from settlement_engine.config import settings


# ---------------------------------------------------------------------------
# 1. Inbound verification
# ---------------------------------------------------------------------------

def _constant_time_equals(provided: str | None, expected: str) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


def verify_webhook_signature(signature: str | None, secret: str | None = None) -> bool:
    """
    Check the gateway's `verif-hash` header against the configured secret.

    Args:
        signature: Header value as received (None when absent).
        secret: Override for the configured WEBHOOK_SECRET.

    Returns:
        True only when both values are present and equal.
    """
    return _constant_time_equals(signature, secret if secret is not None else settings.WEBHOOK_SECRET)


def verify_operator_key(provided: str | None) -> bool:
    """Check an `X-Operator-Key` header against OPERATOR_API_KEY."""
    return _constant_time_equals(provided, settings.OPERATOR_API_KEY)


# ---------------------------------------------------------------------------
# 2. Fernet Encryption (for payout account numbers at rest)
# ---------------------------------------------------------------------------

@lru_cache(maxsize=1)
def _fernet() -> Fernet:
    # Fernet keys are URL-safe base64-encoded 32-byte keys.
    return Fernet(settings.PAYOUT_ENCRYPTION_KEY.encode())


def encrypt_value(plaintext: str) -> bytes:
    """
    Encrypt a string value using Fernet.

    Args:
        plaintext: The sensitive value to encrypt (e.g., "0690000031").

    Returns:
        Encrypted bytes suitable for storing in a LargeBinary column.
    """
    return _fernet().encrypt(plaintext.encode())


def decrypt_value(ciphertext: bytes) -> str:
    """
    Decrypt a Fernet-encrypted value back to plaintext.

    Raises:
        cryptography.fernet.InvalidToken: If the data is corrupted or
            the encryption key doesn't match.
    """
    return _fernet().decrypt(ciphertext).decode()
