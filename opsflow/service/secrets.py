from __future__ import annotations

import base64
import hashlib
import json
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from opsflow.logging import get_logger
from opsflow.service.errors import ServerError

logger = get_logger(__name__)


class SecretBox:
    """Fernet envelope for tenant-scoped capability configuration."""

    def __init__(self, key_material: Optional[str]) -> None:
        if key_material:
            self._cipher = Fernet(self._derive_cipher_key(key_material))
        else:
            # Tokens written with an ephemeral key do not survive a restart.
            logger.warning("secret_key_ephemeral")
            self._cipher = Fernet(Fernet.generate_key())

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt_config(self, config: Dict[str, Any]) -> str:
        payload = json.dumps(config, sort_keys=True).encode()
        return self._cipher.encrypt(payload).decode()

    def decrypt_config(self, token: Optional[str]) -> Dict[str, Any]:
        if not token:
            return {}
        try:
            return json.loads(self._cipher.decrypt(token.encode()))
        except InvalidToken as exc:
            logger.error("capability_config_decrypt_failed")
            raise ServerError("capability configuration could not be decrypted") from exc
