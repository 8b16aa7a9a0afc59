from passkey_auth.models import CeremonyPurpose
from passkey_auth.sessions import InMemorySessionStore, open_session

REG = CeremonyPurpose.REGISTRATION
AUTH = CeremonyPurpose.AUTHENTICATION


def test_challenge_is_single_use(session):
    session.set_pending_challenge(AUTH, b"c" * 32)
    assert session.take_pending_challenge(AUTH) == b"c" * 32
    assert session.take_pending_challenge(AUTH) is None


def test_purposes_do_not_mix(session):
    session.set_pending_challenge(REG, b"r" * 32)
    assert session.take_pending_challenge(AUTH) is None
    assert session.take_pending_challenge(REG) == b"r" * 32


def test_new_challenge_replaces_older(session):
    session.set_pending_challenge(AUTH, b"1" * 32)
    session.set_pending_challenge(AUTH, b"2" * 32)
    assert session.take_pending_challenge(AUTH) == b"2" * 32


def test_expired_challenge_is_gone():
    store = InMemorySessionStore(challenge_ttl_seconds=0)
    session = open_session(store, None)
    session.set_pending_challenge(REG, b"x" * 32)
    assert session.take_pending_challenge(REG) is None


def test_resume_by_id(sessions, session):
    session.set_pending_challenge(REG, b"x" * 32)
    again = open_session(sessions, session.session_id)
    assert not again.is_new
    assert again.take_pending_challenge(REG) == b"x" * 32


def test_unknown_id_starts_fresh(sessions):
    s = open_session(sessions, "no-such-session")
    assert s.is_new
    assert s.user_id is None
    assert s.session_id != "no-such-session"


def test_login_rotates_session_id(sessions, session):
    old = session.session_id
    session.mark_authenticated("user-1")

    assert session.rotated
    assert session.user_id == "user-1"
    assert session.session_id != old
    assert sessions.get(old) is None
    assert sessions.get(session.session_id).user_id == "user-1"


def test_clear_authentication_keeps_session(sessions, session):
    session.mark_authenticated("user-1")
    session.clear_authentication()
    assert session.user_id is None
    assert sessions.get(session.session_id) is not None


def test_expired_sessions_do_not_resolve():
    store = InMemorySessionStore(ttl_seconds=0)
    rec = store.create()
    assert store.get(rec.session_id) is None


def test_prune_drops_expired():
    store = InMemorySessionStore(ttl_seconds=10)
    store.create()
    store.create()
    assert store.prune(now=2 ** 40) == 2
    assert store.sessions == {}
