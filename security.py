"""
Password hashing.

Passwords are pre-hashed with SHA256 and base64-encoded before bcrypt so that
long passwords are not silently truncated at bcrypt's 72-byte limit.
"""
import base64
import hashlib
import logging
from typing import Optional

import bcrypt

from config import get_settings

logger = logging.getLogger(__name__)


def _pre_hash_password(password: str) -> bytes:
    digest = hashlib.sha256(password.encode("utf-8")).digest()
    return base64.b64encode(digest)


def hash_password(password: str, rounds: Optional[int] = None) -> str:
    rounds = rounds or get_settings().bcrypt_rounds
    hashed = bcrypt.hashpw(_pre_hash_password(password), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(
            _pre_hash_password(plain_password), hashed_password.encode("utf-8")
        )
    except ValueError:
        logger.warning("verify_password: malformed stored hash")
        return False
