"""
Token hashing utilities.

Security notes:
  • SHA-256 is used for token hashing — acceptable for admin tokens because
    they are high-entropy random strings (not low-entropy passwords).
  • Comparisons happen between digests with secrets.compare_digest, so
    timing never depends on how much of a guessed token was right.
"""

import hashlib
import secrets


def hash_token(raw_token: str) -> str:
    """
    Hash a raw token using SHA-256.

    Returns the hex digest string.
    """
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def tokens_match(raw_token: str, expected_token: str) -> bool:
    """Constant-time comparison of two raw tokens via their hashes."""
    if not raw_token or not expected_token:
        return False
    return secrets.compare_digest(hash_token(raw_token), hash_token(expected_token))
