"""
Sealing utilities for tamper-evident client-held cookies.

Payloads are JSON objects encrypted and authenticated with Fernet, so the
client can neither read nor forge them without the server's key.
"""

import base64
import json
import logging
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)


def derive_key(secret: str, salt: str) -> bytes:
    """
    Derive a Fernet key from a configured secret.

    Uses PBKDF2 so that an arbitrary passphrase yields a proper 32-byte key.
    The salt is configured per deployment.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode(),
        iterations=100000,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode()))


class Sealer:
    """Encrypts and authenticates small JSON payloads."""

    def __init__(self, key: bytes):
        self._fernet = Fernet(key)

    @classmethod
    def from_secret(cls, secret: str, salt: str) -> "Sealer":
        return cls(derive_key(secret, salt))

    def seal(self, payload: Dict[str, Any]) -> str:
        """Seal a payload into an opaque URL-safe string."""
        data = json.dumps(payload, separators=(",", ":")).encode()
        return self._fernet.encrypt(data).decode()

    def unseal(self, token: Optional[str], max_age: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """
        Open a sealed payload.

        Args:
            token: The sealed string, usually a cookie value
            max_age: Reject tokens older than this many seconds

        Returns:
            The payload dict, or None if the token is absent, malformed,
            tampered with, expired, or does not hold a JSON object.
        """
        if not token:
            return None
        try:
            data = self._fernet.decrypt(token.encode(), ttl=max_age)
        except (InvalidToken, UnicodeEncodeError):
            logger.debug("Rejected sealed token that failed verification")
            return None
        try:
            payload = json.loads(data)
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        return payload
