import pytest
from fastapi.testclient import TestClient

from helpers.software_authenticator import SoftwareAuthenticator
from passkey_auth.audit import AuditLog
from passkey_auth.authentication import AuthenticationCeremony
from passkey_auth.config import Settings
from passkey_auth.main import create_app
from passkey_auth.registration import RegistrationCeremony
from passkey_auth.sessions import InMemorySessionStore, open_session
from passkey_auth.sql_storage import SqlStore
from passkey_auth.storage import InMemoryStore
from passkey_auth.verifier import WebAuthnVerifier

ORIGIN = "http://localhost:8000"
RP_ID = "localhost"


def make_settings(tmp_path, **overrides) -> Settings:
    values = dict(
        ORIGIN=ORIGIN,
        RP_ID=RP_ID,
        AUDIT_DIR=str(tmp_path / "audit"),
        DATABASE_URL="memory://",
        SERVER_ED25519_SK_B64="",
        APPLE_APP_ID="",
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    if request.param == "memory":
        return InMemoryStore()
    return SqlStore.from_url("sqlite://")


@pytest.fixture
def verifier(settings):
    return WebAuthnVerifier.from_settings(settings)


@pytest.fixture
def audit(settings):
    return AuditLog(settings.AUDIT_DIR)


@pytest.fixture
def sessions():
    return InMemorySessionStore()


@pytest.fixture
def session(sessions):
    return open_session(sessions, None)


@pytest.fixture
def user(store):
    return store.create_user("alice")


@pytest.fixture
def registration(store, verifier, audit):
    return RegistrationCeremony(store, verifier, audit)


@pytest.fixture
def authentication(store, verifier, audit):
    return AuthenticationCeremony(store, verifier, audit)


@pytest.fixture
def authenticator():
    return SoftwareAuthenticator()


@pytest.fixture
def enrolled(registration, store, user, session, authenticator):
    """alice with one registered passkey held by `authenticator`."""
    options = registration.begin_registration(user, session)
    response = authenticator.make_credential(options, ORIGIN)
    return registration.finish_registration(
        user,
        session,
        response,
        lambda cid: not store.credential_exists(cid),
    )


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c
