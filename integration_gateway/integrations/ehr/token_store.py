"""
Encrypted token persistence.

Partner tokens are serialized to JSON, encrypted with Fernet and handed to a
TokenStore (external storage) keyed by partner, so credentials survive a
restart without ever being written in clear text.
"""

import json
from typing import Dict, List, Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from integration_gateway.core.logging import get_logger

from .models import AuthToken

logger = get_logger(__name__)


class TokenStore(Protocol):
    """External storage for encrypted partner tokens"""

    async def load(self, partner: str) -> Optional[str]:
        ...

    async def save(self, partner: str, encrypted_blob: str) -> None:
        ...

    async def delete(self, partner: str) -> None:
        ...

    async def partners(self) -> List[str]:
        ...


class InMemoryTokenStore:
    """Process-local TokenStore"""

    def __init__(self):
        self._blobs: Dict[str, str] = {}

    async def load(self, partner: str) -> Optional[str]:
        return self._blobs.get(partner)

    async def save(self, partner: str, encrypted_blob: str) -> None:
        self._blobs[partner] = encrypted_blob

    async def delete(self, partner: str) -> None:
        self._blobs.pop(partner, None)

    async def partners(self) -> List[str]:
        return list(self._blobs)


class TokenCipher:
    """Fernet encryption of AuthToken records"""

    def __init__(self, key: Optional[str] = None):
        if key:
            self._cipher = Fernet(key.encode() if isinstance(key, str) else key)
            self.ephemeral = False
        else:
            self._cipher = Fernet(Fernet.generate_key())
            self.ephemeral = True
            logger.warning(
                "ehr_token_key_ephemeral",
                detail="TOKEN_ENCRYPTION_KEY not set; persisted tokens will not survive restart",
            )

    def encrypt(self, token: AuthToken) -> str:
        return self._cipher.encrypt(json.dumps(token.to_dict()).encode()).decode()

    def decrypt(self, encrypted_blob: str) -> Optional[AuthToken]:
        """
        Decrypt a persisted token.

        Returns:
            The token, or None if the blob cannot be decrypted or parsed.
        """
        try:
            data = json.loads(self._cipher.decrypt(encrypted_blob.encode()).decode())
            return AuthToken.from_dict(data)
        except InvalidToken:
            logger.warning("ehr_token_decrypt_failed", reason="invalid key or corrupted blob")
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("ehr_token_decode_failed", error=str(e))
            return None
