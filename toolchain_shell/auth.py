import hashlib
import hmac
import os
from typing import Optional


def get_secret() -> Optional[str]:
    """Secret from TOOLCHAIN_SHELL_SECRET; None means auth is disabled (local use)."""
    secret = os.environ.get("TOOLCHAIN_SHELL_SECRET", "")
    return secret or None


def derive_api_token(secret: str) -> str:
    """HMAC(secret, 'api'): the token expected on mutating endpoints."""
    return hmac.new(secret.encode(), b"api", hashlib.sha256).hexdigest()


def check_token(secret: str, token: Optional[str]) -> bool:
    if not token:
        return False
    return hmac.compare_digest(token, derive_api_token(secret))
