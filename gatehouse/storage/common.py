"""Storage helpers shared between the memory and postgres implementations.

Keeps identity normalisation and at-rest encryption of MFA seeds identical
across backends so the two stores are interchangeable.
"""

from __future__ import annotations

import base64
import hashlib
import json
import uuid
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from gatehouse.logging import get_logger

logger = get_logger(__name__)


def normalize_email(email: str) -> str:
    """Canonical form used for storage and lookups."""
    return email.strip().lower()


def username_key(username: str) -> str:
    """Key used for the case-insensitive username uniqueness check."""
    return username.strip().lower()


def generate_uuid() -> str:
    return str(uuid.uuid4())


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a JSON column that may come back as text or as a dict.

    Args:
        raw_meta: Raw value (string, dict, or None)

    Returns:
        Parsed dict or None
    """
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except ValueError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


class SecretCipher:
    """Fernet wrapper for MFA seeds stored at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("MFA encryption key material is required")
        derived = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
        self._fernet = Fernet(derived)

    def encrypt(self, secret: str) -> str:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: str) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            logger.warning("mfa_secret_decrypt_failed")
            return None
