import pytest

from passkey_auth import challenges
from passkey_auth.challenges import b64url_decode, b64url_encode, generate_challenge
from passkey_auth.errors import ServiceUnavailable


def test_default_length_is_32_bytes():
    assert len(generate_challenge()) == 32


def test_challenges_do_not_repeat():
    seen = {generate_challenge() for _ in range(200)}
    assert len(seen) == 200


def test_rejects_short_challenges():
    with pytest.raises(ValueError):
        generate_challenge(15)
    assert len(generate_challenge(16)) == 16


def test_randomness_failure_is_service_unavailable(monkeypatch):
    def broken(n):
        raise OSError("no entropy")

    monkeypatch.setattr(challenges.secrets, "token_bytes", broken)
    with pytest.raises(ServiceUnavailable) as exc:
        generate_challenge()
    assert exc.value.status_code == 503


def test_b64url_is_unpadded_and_decodes_back():
    raw = b"\xfb\xff\x00\x01"
    enc = b64url_encode(raw)
    assert "=" not in enc
    assert "+" not in enc and "/" not in enc
    assert b64url_decode(enc) == raw
