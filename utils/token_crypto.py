"""
utils/token_crypto.py
Symmetric encryption for OAuth tokens kept in cookies or on the user row.
"""

import base64
import hashlib
import logging
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from flask import current_app


def _get_fernet() -> Fernet:
    secret_key = current_app.config.get("SECRET_KEY")
    if not secret_key:
        raise RuntimeError("SECRET_KEY is required to encrypt Jira tokens")
    if isinstance(secret_key, str):
        secret_bytes = secret_key.encode("utf-8")
    else:
        secret_bytes = secret_key
    digest = hashlib.sha256(secret_bytes).digest()
    encoded_key = base64.urlsafe_b64encode(digest)
    return Fernet(encoded_key)


def encrypt_token(token: str) -> bytes:
    if not token:
        raise ValueError("Token must not be empty")
    fernet = _get_fernet()
    return fernet.encrypt(token.encode("utf-8"))


def decrypt_token(token_encrypted: Optional[Union[bytes, str]]) -> Optional[str]:
    if not token_encrypted:
        return None
    if isinstance(token_encrypted, str):
        token_encrypted = token_encrypted.encode("utf-8")
    fernet = _get_fernet()
    try:
        return fernet.decrypt(token_encrypted).decode("utf-8")
    except InvalidToken:
        logging.error("Unable to decrypt Jira token due to invalid token or key.")
        return None
