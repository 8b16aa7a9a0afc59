# passkey_auth/tokens.py
#
# -----------------------------------------------------------------------------
# Architectural notes
# -----------------------------------------------------------------------------
# Signed session cookie layer.
#
# The browser only ever holds an opaque, server-signed reference to its
# server-side session record. Pending challenges and the authenticated user id
# never leave the server.
#
# Security model:
#   - Server holds ONE Ed25519 keypair (infrastructure key)
#   - Server signs the session cookie payload {"typ":"sess","sid",...}
#   - A cookie that fails verification is treated as "no session"
#
# Token wire format:
#
#     s1.<payload_b64url>.<signature_b64url>
#
# Where:
#   - payload is canonical JSON (sorted keys, no whitespace)
#   - signature = Ed25519.sign(payload_bytes)
# -----------------------------------------------------------------------------

import base64
import json
from typing import Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .challenges import b64url_decode, b64url_encode

TOKEN_PREFIX = "s1"


class InvalidToken(ValueError):
    pass


# -----------------------------------------------------------------------------
# Key loading
# -----------------------------------------------------------------------------
def load_ed25519_private_key_from_b64(sk_b64: str) -> Ed25519PrivateKey:
    """
    Load a raw Ed25519 private key from Base64.

    The key MUST be exactly 32 bytes (raw Ed25519 seed); no PEM, no headers.
    """
    raw = base64.b64decode(sk_b64.strip(), validate=True)
    if len(raw) != 32:
        raise ValueError("Ed25519 raw private key must be 32 bytes (base64 of 32 bytes)")
    return Ed25519PrivateKey.from_private_bytes(raw)


def load_or_generate_signing_key(sk_b64: Optional[str]) -> Ed25519PrivateKey:
    if sk_b64 and sk_b64.strip():
        return load_ed25519_private_key_from_b64(sk_b64)
    print("SERVER_ED25519_SK_B64 not set: using an ephemeral session signing key", flush=True)
    return Ed25519PrivateKey.generate()


# -----------------------------------------------------------------------------
# Token wire format helpers
# -----------------------------------------------------------------------------
def encode_token(payload_bytes: bytes, sig: bytes) -> str:
    return f"{TOKEN_PREFIX}." + b64url_encode(payload_bytes) + "." + b64url_encode(sig)


def decode_token(token: str) -> Tuple[bytes, bytes]:
    """
    Parse a token into payload bytes and signature.

    This performs *format validation only*.
    Cryptographic verification happens separately.
    """
    parts = str(token).split(".")
    if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
        raise InvalidToken("bad token format")

    try:
        payload_bytes = b64url_decode(parts[1])
        sig = b64url_decode(parts[2])
    except ValueError as e:
        raise InvalidToken("bad token encoding") from e
    return payload_bytes, sig


# -----------------------------------------------------------------------------
# Signing / verification
# -----------------------------------------------------------------------------
def sign_token(sk: Ed25519PrivateKey, payload_obj: dict) -> str:
    # sorted keys + no whitespace: signature validity depends on identical bytes
    payload_bytes = json.dumps(
        payload_obj,
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")

    sig = sk.sign(payload_bytes)
    return encode_token(payload_bytes, sig)


def verify_token(pk: Ed25519PublicKey, token: str) -> dict:
    """
    Verify a token and return its decoded payload.

    Raises InvalidToken on any failure.

    IMPORTANT:
      - This function does NOT enforce semantic rules (expiry, typ).
      - Callers MUST validate claims themselves.
    """
    payload_bytes, sig = decode_token(token)
    try:
        pk.verify(sig, payload_bytes)
    except InvalidSignature as e:
        raise InvalidToken("bad token signature") from e

    try:
        obj = json.loads(payload_bytes.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidToken("bad token payload") from e

    if not isinstance(obj, dict):
        raise InvalidToken("bad token payload")
    return obj
