"""Encryption of bank details stored on cashout requests."""

import json
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger

from .config import ENCRYPTION_KEY, IS_PROD
from .errors import SecurityError


class EncryptionService:
    """
    Fernet (symmetric) encryption for payout details.

    Without a key, development stores plaintext and logs a warning;
    production refuses to store anything.
    """

    def __init__(self, encryption_key: Optional[str] = None, production: bool = IS_PROD) -> None:
        self.production = production
        self.fernet: Optional[Fernet] = None
        if encryption_key:
            try:
                self.fernet = Fernet(encryption_key.encode())
            except ValueError as e:
                logger.error("Invalid encryption key: {}", e)
                if production:
                    raise SecurityError("Invalid encryption key in production environment") from e
        elif production:
            raise SecurityError("ENCRYPTION_KEY is required in production")

    @property
    def enabled(self) -> bool:
        return self.fernet is not None

    def encrypt_json(self, data: dict) -> str:
        plaintext = json.dumps(data, sort_keys=True)
        if not self.enabled:
            logger.warning("Encryption disabled - storing bank details as plaintext (DEV ONLY)")
            return plaintext
        return self.fernet.encrypt(plaintext.encode()).decode()

    def decrypt_json(self, ciphertext: str) -> dict:
        if not self.enabled:
            return json.loads(ciphertext)
        try:
            return json.loads(self.fernet.decrypt(ciphertext.encode()).decode())
        except InvalidToken as e:
            raise SecurityError("Decryption failed") from e

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()


_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    global _service
    if _service is None:
        _service = EncryptionService(ENCRYPTION_KEY)
    return _service
