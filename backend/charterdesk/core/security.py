"""Security utilities: bearer JWTs for issuers, opaque tokens for link holders."""

import base64
import hashlib
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from charterdesk.core.config import settings

# base64url alphabet produced by secrets.token_urlsafe; 20 chars is the
# shortest value ever accepted at the API boundary
RAW_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{20,256}$")


def create_access_token(
    subject: str | int,
    expires_delta: timedelta | None = None,
    additional_claims: dict[str, Any] | None = None,
) -> str:
    """Create a JWT access token."""
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )

    to_encode = {"exp": expire, "sub": str(subject), "type": "access"}
    if additional_claims:
        to_encode.update(additional_claims)

    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict[str, Any] | None:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None


def generate_opaque_token(num_bytes: int | None = None) -> str:
    """Generate a URL-safe random token for an action link.

    The raw value is handed to the caller exactly once; only
    :func:`hash_token` output is ever persisted.
    """
    return secrets.token_urlsafe(num_bytes or settings.ACTION_LINK_TOKEN_BYTES)


def hash_token(raw_token: str) -> str:
    """SHA-256 of the token, base64url encoded without padding (43 chars)."""
    digest = hashlib.sha256(raw_token.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def is_well_formed_token(raw_token: str) -> bool:
    return bool(RAW_TOKEN_PATTERN.match(raw_token or ""))


def hash_prefix(token_hash: str, length: int = 10) -> str:
    """Short, non-reversible prefix of a token hash for logs and traces."""
    return f"{token_hash[:length]}..."
