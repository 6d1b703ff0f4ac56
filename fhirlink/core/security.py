"""
Security utilities: OAuth state tokens, PKCE, and API key hashing
"""

import base64
import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from fhirlink.core.config import settings
from jose import JWTError, jwt
from passlib.context import CryptContext

# API keys are hashed like passwords; the full key is only shown once
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

STATE_TOKEN_TYPE = "oauth_state"


def generate_pkce_pair() -> Tuple[str, str]:
    """
    Generate a PKCE code verifier and its S256 challenge.

    Returns:
        Tuple of (code_verifier, code_challenge)
    """
    # 32 random bytes -> 43 char base64url verifier
    code_verifier = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode().rstrip("=")
    return code_verifier, compute_code_challenge(code_verifier)


def compute_code_challenge(code_verifier: str) -> str:
    """base64url(SHA-256(verifier)) without padding."""
    return base64.urlsafe_b64encode(hashlib.sha256(code_verifier.encode()).digest()).decode().rstrip("=")


def create_state_token(claims: Dict[str, Any], ttl_seconds: Optional[int] = None) -> Tuple[str, str]:
    """
    Sign an OAuth state payload into a self-contained JWT.

    Args:
        claims: State payload (provider, subject, optional widget context, ...)
        ttl_seconds: Lifetime of the state token

    Returns:
        Tuple of (state_token, state_id)
    """
    now = datetime.now(timezone.utc)
    ttl = ttl_seconds if ttl_seconds is not None else settings.OAUTH_STATE_TTL_SECONDS
    state_id = claims.get("jti") or uuid.uuid4().hex

    to_encode = {k: v for k, v in claims.items() if v is not None}
    to_encode.update(
        {
            "jti": state_id,
            "iat": now,
            "exp": now + timedelta(seconds=ttl),
            "type": STATE_TOKEN_TYPE,
        }
    )
    token = jwt.encode(to_encode, settings.STATE_SIGNING_KEY, algorithm=settings.JWT_ALGORITHM)
    return token, state_id


def decode_state_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Verify and decode an OAuth state token.

    Returns:
        Decoded payload, or None if the signature, expiry or type is invalid
    """
    try:
        payload = jwt.decode(token, settings.STATE_SIGNING_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != STATE_TOKEN_TYPE or not payload.get("jti"):
        return None
    return payload


def hash_api_key(key: str) -> str:
    """Hash an API key for secure storage."""
    return pwd_context.hash(key)


def verify_api_key(plain_key: str, hashed_key: str) -> bool:
    """Verify a plain API key against its hash."""
    return pwd_context.verify(plain_key, hashed_key)
