from __future__ import annotations

import hashlib
import os
from typing import Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from backend.config import ENCRYPTION_MASTER_KEY

IV_BYTES = 12
TAG_BYTES = 16


def _derive_key(user_id: str) -> bytes:
    # 32 bytes -> AES-256
    return hashlib.sha256(f"{ENCRYPTION_MASTER_KEY}:{user_id}".encode("utf-8")).digest()


def encrypt_api_key(plaintext: str, user_id: str) -> Tuple[str, str, str]:
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(_derive_key(user_id)).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, auth_tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return ciphertext.hex(), iv.hex(), auth_tag.hex()


def decrypt_api_key(ciphertext: str, iv: str, auth_tag: str, user_id: str) -> str:
    try:
        sealed = bytes.fromhex(ciphertext) + bytes.fromhex(auth_tag)
        plaintext = AESGCM(_derive_key(user_id)).decrypt(bytes.fromhex(iv), sealed, None)
    except (InvalidTag, ValueError) as exc:
        raise ValueError("API key could not be decrypted.") from exc
    return plaintext.decode("utf-8")


def mask_api_key(api_key: str) -> str:
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}…{api_key[-4:]}"
