"""
Encryption of OAuth tokens at rest.

Uses Fernet symmetric encryption; MultiFernet allows rotating the master key
without re-encrypting every stored Integration at once.
"""

from typing import List, Optional

from cryptography.fernet import Fernet, MultiFernet, InvalidToken

from pos_sync.utils.exceptions import ConfigurationError
from pos_sync.utils.logger import get_logger

logger = get_logger(__name__)


class TokenEncryptor:
    """
    Encrypts and decrypts access/refresh tokens.

    The first key encrypts; every key is tried when decrypting.
    """

    def __init__(self, master_key: Optional[str], secondary_key: Optional[str] = None):
        """
        Args:
            master_key: Base64-encoded Fernet key used for new ciphertexts
            secondary_key: Previous key, still accepted for decryption
        """
        if not master_key:
            raise ConfigurationError(
                "ENCRYPTION_MASTER_KEY is required to store OAuth tokens. "
                "Generate one with TokenEncryptor.generate_key()"
            )

        self.keys: List[bytes] = [master_key.encode()]
        if secondary_key:
            self.keys.append(secondary_key.encode())
            logger.info("Secondary encryption key loaded for rotation")

        self.fernet = MultiFernet([Fernet(key) for key in self.keys])

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")
        return self.fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a stored token.

        Raises:
            InvalidToken: If no configured key can decrypt the value
        """
        if not ciphertext:
            raise ValueError("Cannot decrypt empty string")
        try:
            return self.fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            logger.error("Token decryption failed - invalid key or corrupted data")
            raise

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt a value under the current primary key."""
        return self.fernet.rotate(ciphertext.encode()).decode()

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()


_encryptor: Optional[TokenEncryptor] = None


def get_encryptor() -> TokenEncryptor:
    """Process-wide encryptor built from configuration."""
    global _encryptor
    if _encryptor is None:
        from pos_sync.utils.config import get_config
        config = get_config()
        _encryptor = TokenEncryptor(config.encryption_master_key, config.encryption_secondary_key)
    return _encryptor
