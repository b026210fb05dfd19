"""Encryption of stored OAuth credentials."""

from pos_sync.security.encryption import TokenEncryptor, get_encryptor

__all__ = ["TokenEncryptor", "get_encryptor"]
