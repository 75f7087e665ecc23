"""Partner API key generation and verification using argon2id."""

from __future__ import annotations

import secrets

import argon2

KEY_PREFIX = "pk-kcr-"
PREFIX_LENGTH = 14  # "pk-kcr-" plus 7 random characters

_hasher = argon2.PasswordHasher(
    time_cost=2,
    memory_cost=65536,
    parallelism=1,
    hash_len=32,
    salt_len=16,
    type=argon2.Type.ID,
)


def generate_api_key() -> tuple[str, str, str]:
    """
    Generate a new partner API key.

    Returns:
        (full_key, prefix, argon2_hash).
        The full key is shown to the partner once, never stored.
    """
    full_key = f"{KEY_PREFIX}{secrets.token_hex(32)}"
    return full_key, key_prefix(full_key), _hasher.hash(full_key)


def key_prefix(full_key: str) -> str:
    """The indexed lookup prefix of a key."""
    return full_key[:PREFIX_LENGTH]


def looks_like_partner_key(value: str) -> bool:
    return value.startswith(KEY_PREFIX) and len(value) > PREFIX_LENGTH


def verify_api_key(full_key: str, stored_hash: str) -> bool:
    """Check a presented key against its stored argon2 hash."""
    try:
        return _hasher.verify(stored_hash, full_key)
    except (argon2.exceptions.VerifyMismatchError, argon2.exceptions.InvalidHashError):
        return False
