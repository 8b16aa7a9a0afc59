import json

import pytest

from conftest import ORIGIN
from helpers.software_authenticator import SoftwareAuthenticator, encode_cose_public_key
from passkey_auth.challenges import b64url_decode, b64url_encode
from passkey_auth.errors import (
    AuthenticationVerificationFailed,
    ChallengeMissing,
    CredentialNotFound,
    PossibleCloneDetected,
)
from passkey_auth.models import Credential


def audit_events(audit):
    return [json.loads(x) for x in audit.log_path.read_text(encoding="utf-8").splitlines()]


def login(authentication, session, authenticator, credential_id=None, **kw):
    options = authentication.begin_authentication(session)
    response = authenticator.get_assertion(options, kw.pop("origin", ORIGIN), credential_id, **kw)
    return authentication.finish_authentication(session, response)


def test_begin_is_identity_less(authentication, session):
    options = authentication.begin_authentication(session)
    assert options["rpId"] == "localhost"
    assert options.get("allowCredentials", []) == []
    assert len(b64url_decode(options["challenge"])) == 32


def test_login(authentication, store, user, session, authenticator, enrolled, audit):
    owner = login(authentication, session, authenticator)

    assert owner == user
    assert store.find_credential(enrolled.id).sign_count == 1

    last = audit_events(audit)[-1]
    assert (last["result"], last["reason"]) == ("approved", "assertion_valid")
    assert last["user_id"] == user.id


@pytest.mark.parametrize("presented", [4, 5])
def test_counter_that_does_not_advance_is_a_clone(
    authentication, store, session, authenticator, enrolled, audit, presented
):
    store.update_sign_count(enrolled.id, 5)

    with pytest.raises(PossibleCloneDetected) as exc:
        login(authentication, session, authenticator, sign_count=presented)

    assert exc.value.stored_count == 5
    assert exc.value.presented_count == presented
    assert store.find_credential(enrolled.id).sign_count == 5

    last = audit_events(audit)[-1]
    assert (last["result"], last["reason"]) == ("denied", "possible_clone")
    assert (last["stored_sign_count"], last["presented_sign_count"]) == (5, presented)


def test_counter_that_advances_is_accepted(authentication, store, user, session, authenticator, enrolled):
    store.update_sign_count(enrolled.id, 5)
    assert login(authentication, session, authenticator, sign_count=6) == user
    assert store.find_credential(enrolled.id).sign_count == 6


def test_counter_falling_back_to_zero_is_a_clone(authentication, store, session, authenticator, enrolled):
    store.update_sign_count(enrolled.id, 3)
    with pytest.raises(PossibleCloneDetected):
        login(authentication, session, authenticator, sign_count=0)


def test_non_counting_authenticator_logs_in_repeatedly(
    registration, authentication, store, user, session
):
    auth = SoftwareAuthenticator(counter_step=0)
    options = registration.begin_registration(user, session)
    credential = registration.finish_registration(
        user, session, auth.make_credential(options, ORIGIN), lambda cid: True
    )

    for _ in range(3):
        assert login(authentication, session, auth) == user
    assert store.find_credential(credential.id).sign_count == 0


def test_finish_without_begin(authentication, session, authenticator, enrolled):
    options = {"challenge": b64url_encode(b"\x01" * 32)}
    response = authenticator.get_assertion(options, ORIGIN)
    with pytest.raises(ChallengeMissing):
        authentication.finish_authentication(session, response)


def test_challenge_is_single_use(authentication, session, authenticator, enrolled):
    options = authentication.begin_authentication(session)
    response = authenticator.get_assertion(options, ORIGIN)
    authentication.finish_authentication(session, response)

    with pytest.raises(ChallengeMissing):
        authentication.finish_authentication(session, response)

    # replay against a fresh challenge fails verification
    authentication.begin_authentication(session)
    with pytest.raises(AuthenticationVerificationFailed):
        authentication.finish_authentication(session, response)


def test_unknown_credential(authentication, session, enrolled):
    stranger = SoftwareAuthenticator()
    stranger.make_credential({"rp": {"id": "localhost"}, "challenge": "AAAA"}, ORIGIN)
    with pytest.raises(CredentialNotFound):
        login(authentication, session, stranger)


def test_wrong_origin(authentication, store, session, authenticator, enrolled):
    with pytest.raises(AuthenticationVerificationFailed):
        login(authentication, session, authenticator, origin="https://evil.example")
    assert store.find_credential(enrolled.id).sign_count == 0


def test_wrong_rp_id(authentication, session, authenticator, enrolled):
    with pytest.raises(AuthenticationVerificationFailed):
        login(authentication, session, authenticator, rp_id="evil.example")


def test_signature_from_another_key(authentication, store, session, enrolled):
    impostor = SoftwareAuthenticator()
    impostor.make_credential({"rp": {"id": "localhost"}, "challenge": "AAAA"}, ORIGIN, credential_id=enrolled.id)
    with pytest.raises(AuthenticationVerificationFailed):
        login(authentication, session, impostor, sign_count=50)
    assert store.find_credential(enrolled.id).sign_count == 0


def test_malformed_assertion(authentication, session):
    authentication.begin_authentication(session)
    with pytest.raises(AuthenticationVerificationFailed):
        authentication.finish_authentication(session, {"type": "public-key"})


def test_rejections_look_alike():
    bodies = {
        json.dumps(e.public_detail(), sort_keys=True)
        for e in (
            CredentialNotFound(),
            AuthenticationVerificationFailed("bad signature"),
            PossibleCloneDetected(stored_count=5, presented_count=4),
        )
    }
    assert len(bodies) == 1


def test_attestation_sent_to_authentication(authentication, store, session, authenticator, enrolled, audit):
    with pytest.raises(AuthenticationVerificationFailed):
        login(authentication, session, authenticator, kind="webauthn.create")

    assert store.find_credential(enrolled.id).sign_count == 0
    last = audit_events(audit)[-1]
    assert (last["result"], last["reason"]) == ("denied", "authentication_verification_failed")


def test_stored_key_on_unknown_curve(authentication, store, user, session, audit):
    auth = SoftwareAuthenticator()
    auth.make_credential({"rp": {"id": "localhost"}, "challenge": "AAAA"}, ORIGIN)
    (cid, key), = auth.keys.items()
    bad_key = encode_cose_public_key(key.private_key.public_key(), {-1: 99})
    store.insert_credential(Credential(id=cid, public_key=bad_key, sign_count=0, user_id=user.id))

    with pytest.raises(AuthenticationVerificationFailed):
        login(authentication, session, auth)

    assert store.find_credential(cid).sign_count == 0
    last = audit_events(audit)[-1]
    assert (last["result"], last["reason"]) == ("denied", "authentication_verification_failed")


def test_audit_write_failure_keeps_the_outcome(
    authentication, store, user, session, authenticator, enrolled, audit, monkeypatch, capsys
):
    def broken(event):
        raise OSError("disk full")

    monkeypatch.setattr(audit, "append_event", broken)

    assert login(authentication, session, authenticator) == user
    assert store.find_credential(enrolled.id).sign_count == 1

    with pytest.raises(PossibleCloneDetected):
        login(authentication, session, authenticator, sign_count=1)

    assert "AUDIT_WRITE_FAIL authentication denied/possible_clone: disk full" in capsys.readouterr().out
