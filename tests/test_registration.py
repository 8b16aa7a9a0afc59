import json

import pytest

from conftest import ORIGIN
from passkey_auth.challenges import b64url_decode, b64url_encode
from passkey_auth.errors import ChallengeMissing, DuplicateCredential, RegistrationVerificationFailed


def available(store):
    return lambda cid: not store.credential_exists(cid)


def audit_events(audit):
    return [json.loads(x) for x in audit.log_path.read_text(encoding="utf-8").splitlines()]


def test_begin_returns_creation_options(registration, user, session):
    options = registration.begin_registration(user, session)

    assert options["rp"] == {"name": "Passkey Auth", "id": "localhost"}
    assert options["user"]["name"] == "alice"
    assert b64url_decode(options["user"]["id"]) == user.id.encode()
    assert len(b64url_decode(options["challenge"])) == 32
    assert options["authenticatorSelection"]["residentKey"] == "required"
    assert options["attestation"] == "none"
    assert [p["alg"] for p in options["pubKeyCredParams"]] == [-8, -7, -257]
    assert options.get("excludeCredentials", []) == []


def test_register_passkey(registration, store, user, session, authenticator, audit):
    options = registration.begin_registration(user, session)
    response = authenticator.make_credential(options, ORIGIN)

    credential = registration.finish_registration(user, session, response, available(store))

    assert credential.user_id == user.id
    assert credential.sign_count == 0
    assert credential.id == next(iter(authenticator.keys))
    assert store.find_credential(credential.id) == credential

    last = audit_events(audit)[-1]
    assert (last["result"], last["reason"]) == ("approved", "credential_registered")
    assert last["fmt"] == "none"


def test_second_begin_excludes_existing_passkeys(registration, user, session, enrolled):
    options = registration.begin_registration(user, session)
    assert [c["id"] for c in options["excludeCredentials"]] == [b64url_encode(enrolled.id)]


def test_finish_without_begin(registration, store, user, session, authenticator):
    fake_options = {"rp": {"id": "localhost"}, "challenge": b64url_encode(b"\x00" * 32)}
    response = authenticator.make_credential(fake_options, ORIGIN)
    with pytest.raises(ChallengeMissing):
        registration.finish_registration(user, session, response, available(store))


def test_challenge_consumed_even_when_verification_fails(registration, store, user, session, authenticator):
    options = registration.begin_registration(user, session)

    bad = authenticator.make_credential(options, "https://evil.example")
    with pytest.raises(RegistrationVerificationFailed):
        registration.finish_registration(user, session, bad, available(store))

    good = authenticator.make_credential(options, ORIGIN)
    with pytest.raises(ChallengeMissing):
        registration.finish_registration(user, session, good, available(store))

    assert store.list_credentials(user.id) == []


def test_wrong_rp_id(registration, store, user, session, authenticator):
    options = registration.begin_registration(user, session)
    response = authenticator.make_credential(options, ORIGIN, rp_id="evil.example")
    with pytest.raises(RegistrationVerificationFailed):
        registration.finish_registration(user, session, response, available(store))


def test_response_for_another_challenge(registration, store, user, session, authenticator):
    registration.begin_registration(user, session)
    other = {"rp": {"id": "localhost"}, "challenge": b64url_encode(b"\x07" * 32)}
    response = authenticator.make_credential(other, ORIGIN)
    with pytest.raises(RegistrationVerificationFailed):
        registration.finish_registration(user, session, response, available(store))


def test_garbage_response(registration, store, user, session):
    registration.begin_registration(user, session)
    with pytest.raises(RegistrationVerificationFailed):
        registration.finish_registration(user, session, {"id": "x"}, available(store))


def test_duplicate_rejected_by_capability(registration, store, user, session, authenticator, audit):
    options = registration.begin_registration(user, session)
    response = authenticator.make_credential(options, ORIGIN)

    with pytest.raises(DuplicateCredential):
        registration.finish_registration(user, session, response, lambda cid: False)

    assert store.list_credentials(user.id) == []
    assert audit_events(audit)[-1]["reason"] == "duplicate_credential"


def test_duplicate_rejected_by_store(registration, store, user, session, authenticator, enrolled):
    options = registration.begin_registration(user, session)
    response = authenticator.make_credential(options, ORIGIN, credential_id=enrolled.id)

    # capability says free, the store still refuses
    with pytest.raises(DuplicateCredential):
        registration.finish_registration(user, session, response, lambda cid: True)

    assert [c.id for c in store.list_credentials(user.id)] == [enrolled.id]


def test_assertion_sent_to_registration(registration, store, user, session, authenticator, audit):
    options = registration.begin_registration(user, session)
    response = authenticator.make_credential(options, ORIGIN, kind="webauthn.get")

    with pytest.raises(RegistrationVerificationFailed):
        registration.finish_registration(user, session, response, available(store))

    assert store.list_credentials(user.id) == []
    assert audit_events(audit)[-1]["reason"] == "registration_verification_failed"


def test_unusable_public_key_is_never_stored(registration, store, user, session, authenticator, audit):
    options = registration.begin_registration(user, session)
    # P-256 coordinates labelled with a curve no COSE registry knows
    response = authenticator.make_credential(options, ORIGIN, cose_overrides={-1: 99})

    with pytest.raises(RegistrationVerificationFailed):
        registration.finish_registration(user, session, response, available(store))

    assert store.list_credentials(user.id) == []
    last = audit_events(audit)[-1]
    assert (last["result"], last["reason"]) == ("denied", "registration_verification_failed")
