# passkey_auth/challenges.py
import base64
import secrets

from .config import MIN_CHALLENGE_BYTES
from .errors import ServiceUnavailable


def generate_challenge(length: int = 32) -> bytes:
    """
    Fresh single-use ceremony challenge from the OS CSPRNG.

    Raises ServiceUnavailable if the randomness source cannot be read;
    callers must not retry with a weaker source.
    """
    if length < MIN_CHALLENGE_BYTES:
        raise ValueError(f"challenge length must be at least {MIN_CHALLENGE_BYTES} bytes")

    try:
        return secrets.token_bytes(length)
    except (OSError, NotImplementedError) as e:
        raise ServiceUnavailable(f"secure randomness unavailable: {e!s}") from e


def b64url_encode(b: bytes) -> str:
    """URL-safe Base64 WITHOUT padding (WebAuthn wire encoding)."""
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def b64url_decode(s: str) -> bytes:
    s = str(s).strip()
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s.encode("ascii"))

