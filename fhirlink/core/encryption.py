"""
Token encryption at rest

Tokens are encrypted with Fernet (AES-128-CBC + HMAC-SHA256, authenticated).
The keyring is configured as ``kid:key`` pairs; the first entry is the primary
key used for new ciphertext. Stored values carry their key id as a prefix
(``kid$<fernet token>``) so decryption selects the matching key, and rotating
in a new primary key never invalidates ciphertext written under older keys.
"""

from typing import Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from fhirlink.core.config import settings
from fhirlink.core.exceptions import ConfigurationError, TokenDecryptionError
from fhirlink.core.logging import get_logger

logger = get_logger(__name__)

KEY_ID_SEPARATOR = "$"


def parse_keyring(raw: str) -> List[Tuple[str, bytes]]:
    """Parse ``kid:key,kid:key`` into an ordered list of (kid, key)."""
    keyring: List[Tuple[str, bytes]] = []
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        kid, sep, key = entry.partition(":")
        if not sep or not kid or not key:
            raise ConfigurationError("TOKEN_ENCRYPTION_KEYS entries must look like 'kid:fernet-key'")
        if KEY_ID_SEPARATOR in kid:
            raise ConfigurationError(f"Key id may not contain '{KEY_ID_SEPARATOR}'")
        keyring.append((kid, key.encode()))
    return keyring


class TokenCipher:
    """Authenticated encryption for token material with key rotation."""

    def __init__(self, keyring: List[Tuple[str, bytes]]):
        if not keyring:
            raise ConfigurationError("TOKEN_ENCRYPTION_KEYS is not set - refusing to store tokens unencrypted")
        try:
            self._ciphers: Dict[str, Fernet] = {kid: Fernet(key) for kid, key in keyring}
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid Fernet key in TOKEN_ENCRYPTION_KEYS: {e}")
        self.primary_key_id = keyring[0][0]
        # Covers ciphertext written without a key id prefix
        self._fallback = MultiFernet([self._ciphers[kid] for kid, _ in keyring])

    @classmethod
    def from_settings(cls) -> "TokenCipher":
        return cls(parse_keyring(settings.TOKEN_ENCRYPTION_KEYS))

    @property
    def key_ids(self) -> List[str]:
        return list(self._ciphers.keys())

    def encrypt(self, plaintext: str) -> str:
        """Encrypt under the primary key, returning ``kid$token``."""
        token = self._ciphers[self.primary_key_id].encrypt(plaintext.encode()).decode()
        return f"{self.primary_key_id}{KEY_ID_SEPARATOR}{token}"

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a value produced by :meth:`encrypt` under any known key."""
        kid, token = self.split(ciphertext)
        try:
            if kid is None:
                return self._fallback.decrypt(token.encode()).decode()
            cipher = self._ciphers.get(kid)
            if cipher is None:
                raise TokenDecryptionError(f"No encryption key with id '{kid}'")
            return cipher.decrypt(token.encode()).decode()
        except InvalidToken:
            raise TokenDecryptionError("Stored token failed authentication")

    def key_id_of(self, ciphertext: str) -> Optional[str]:
        return self.split(ciphertext)[0]

    def needs_rotation(self, ciphertext: str) -> bool:
        return self.key_id_of(ciphertext) != self.primary_key_id

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt a stored value under the primary key."""
        return self.encrypt(self.decrypt(ciphertext))

    @staticmethod
    def split(ciphertext: str) -> Tuple[Optional[str], str]:
        kid, sep, token = ciphertext.partition(KEY_ID_SEPARATOR)
        if not sep:
            return None, ciphertext
        return kid, token


_token_cipher: Optional[TokenCipher] = None


def get_token_cipher() -> TokenCipher:
    """Get the process-wide cipher, built lazily from settings."""
    global _token_cipher
    if _token_cipher is None:
        _token_cipher = TokenCipher.from_settings()
        logger.info("token_cipher_initialized", key_ids=_token_cipher.key_ids)
    return _token_cipher


def reset_token_cipher() -> None:
    """Drop the cached cipher (used after keyring changes and in tests)."""
    global _token_cipher
    _token_cipher = None
