import base64

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from passkey_auth.tokens import (
    InvalidToken,
    load_ed25519_private_key_from_b64,
    load_or_generate_signing_key,
    sign_token,
    verify_token,
)


@pytest.fixture
def sk():
    return Ed25519PrivateKey.generate()


def test_sign_and_verify(sk):
    token = sign_token(sk, {"typ": "sess", "sid": "abc", "expires_at": 10})
    assert token.startswith("s1.")
    assert verify_token(sk.public_key(), token) == {"typ": "sess", "sid": "abc", "expires_at": 10}


def test_other_key_rejected(sk):
    token = sign_token(sk, {"sid": "abc"})
    with pytest.raises(InvalidToken):
        verify_token(Ed25519PrivateKey.generate().public_key(), token)


def test_swapped_payload_rejected(sk):
    a = sign_token(sk, {"sid": "a"}).split(".")
    b = sign_token(sk, {"sid": "b"}).split(".")
    forged = ".".join([a[0], b[1], a[2]])
    with pytest.raises(InvalidToken):
        verify_token(sk.public_key(), forged)


@pytest.mark.parametrize("token", ["", "s1.abc", "v4.a.b", "s1.!!!.???"])
def test_malformed_tokens(sk, token):
    with pytest.raises(InvalidToken):
        verify_token(sk.public_key(), token)


def test_load_key_from_b64(sk):
    from cryptography.hazmat.primitives import serialization

    raw = sk.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    loaded = load_ed25519_private_key_from_b64(base64.b64encode(raw).decode())
    token = sign_token(loaded, {"x": 1})
    assert verify_token(sk.public_key(), token) == {"x": 1}


def test_load_key_wrong_length():
    with pytest.raises(ValueError):
        load_ed25519_private_key_from_b64(base64.b64encode(b"short").decode())


def test_ephemeral_key_when_unset(capsys):
    key = load_or_generate_signing_key("")
    assert isinstance(key, Ed25519PrivateKey)
    assert "ephemeral" in capsys.readouterr().out
