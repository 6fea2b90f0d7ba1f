"""
Token Encryption Module

Encrypts Plaid access tokens at rest using Fernet symmetric encryption.
The key material comes from settings and is passed in by the caller.
"""

from cryptography.fernet import Fernet, InvalidToken
import base64


class TokenEncryption:
    """
    Encrypt and decrypt item access tokens for storage in the database.

    All tokens are encrypted before storage and decrypted right before a
    provider call.
    """

    def __init__(self, key_material: str):
        """
        Build the cipher from arbitrary key material.

        The material is padded/truncated to 32 bytes and base64-encoded
        to form a valid Fernet key.
        """
        if not key_material:
            raise ValueError("Encryption key material must not be empty")

        key_bytes = key_material.encode()[:32].ljust(32, b'0')
        self.cipher = Fernet(base64.urlsafe_b64encode(key_bytes))

    @classmethod
    def from_settings(cls, settings) -> "TokenEncryption":
        return cls(settings.encryption_key or settings.secret_key)

    def encrypt(self, token: str) -> str:
        """
        Encrypt a token for database storage.

        Example:
            >>> enc = TokenEncryption("some-secret")
            >>> stored = enc.encrypt("access-sandbox-123")
        """
        if not token:
            return ""

        return self.cipher.encrypt(token.encode()).decode()

    def decrypt(self, encrypted_token: str) -> str:
        """
        Decrypt a token read from the database.

        Raises:
            ValueError: If the token was encrypted with a different key
        """
        if not encrypted_token:
            return ""

        try:
            return self.cipher.decrypt(encrypted_token.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Stored access token could not be decrypted") from e
