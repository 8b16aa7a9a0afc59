# passkey_auth/sessions.py
#
# Session binding: where a ceremony parks its challenge between begin and
# finish, and where the authenticated user id lives after a login.
#
# - SessionBinding is the interface the ceremonies depend on.
# - CeremonySession is the request-scoped implementation handed to them; it
#   wraps one SessionRecord owned by an InMemorySessionStore.
# - Pending challenges are a typed record (one optional slot per purpose);
#   taking a challenge reads and clears the slot under the store lock, so a
#   challenge can be consumed at most once even under concurrent finishes.
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Optional

from .models import CeremonyPurpose, PendingChallenges


def _now_epoch() -> int:
    # Keep time source centralized for easier testing/mocking.
    return int(time.time())


class SessionBinding(ABC):
    @abstractmethod
    def set_pending_challenge(self, purpose: CeremonyPurpose, value: bytes) -> None: ...

    @abstractmethod
    def take_pending_challenge(self, purpose: CeremonyPurpose) -> Optional[bytes]: ...

    @abstractmethod
    def mark_authenticated(self, user_id: str) -> None: ...

    @abstractmethod
    def clear_authentication(self) -> None: ...

    @property
    @abstractmethod
    def user_id(self) -> Optional[str]: ...

    @property
    def session_id(self) -> Optional[str]:
        return None


@dataclass
class SessionRecord:
    session_id: str
    issued_at: int
    expires_at: int
    pending: PendingChallenges = field(default_factory=PendingChallenges)
    user_id: Optional[str] = None

    @property
    def is_expired(self) -> bool:
        return _now_epoch() >= self.expires_at


class InMemorySessionStore:
    def __init__(self, ttl_seconds: int = 900, challenge_ttl_seconds: int = 300):
        self.ttl_seconds = ttl_seconds
        self.challenge_ttl_seconds = challenge_ttl_seconds
        self.sessions: Dict[str, SessionRecord] = {}
        self._lock = threading.RLock()

    def create(self) -> SessionRecord:
        self.prune()
        now = _now_epoch()
        rec = SessionRecord(
            session_id=secrets.token_urlsafe(24),
            issued_at=now,
            expires_at=now + self.ttl_seconds,
        )
        with self._lock:
            self.sessions[rec.session_id] = rec
        return rec

    def get(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            rec = self.sessions.get(session_id)
            if rec is None:
                return None
            if rec.is_expired:
                self.sessions.pop(session_id, None)
                return None
            return rec

    def rotate(self, rec: SessionRecord) -> SessionRecord:
        """Move a record under a fresh session id (the old id stops resolving)."""
        with self._lock:
            self.sessions.pop(rec.session_id, None)
            rec.session_id = secrets.token_urlsafe(24)
            self.sessions[rec.session_id] = rec
            return rec

    def destroy(self, session_id: str) -> None:
        with self._lock:
            self.sessions.pop(session_id, None)

    def prune(self, now: Optional[int] = None) -> int:
        """Best-effort pruning to prevent unbounded growth."""
        now = now or _now_epoch()
        with self._lock:
            dead = [k for k, v in self.sessions.items() if now >= v.expires_at]
            for k in dead:
                self.sessions.pop(k, None)
        return len(dead)

    # --- pending challenge slots (typed, one per purpose)

    def put_challenge(self, rec: SessionRecord, purpose: CeremonyPurpose, value: bytes) -> None:
        expires_at = _now_epoch() + self.challenge_ttl_seconds
        with self._lock:
            if purpose is CeremonyPurpose.REGISTRATION:
                rec.pending.registration = value
                rec.pending.registration_expires_at = expires_at
            else:
                rec.pending.authentication = value
                rec.pending.authentication_expires_at = expires_at

    def pop_challenge(self, rec: SessionRecord, purpose: CeremonyPurpose) -> Optional[bytes]:
        with self._lock:
            if purpose is CeremonyPurpose.REGISTRATION:
                value, expires_at = rec.pending.registration, rec.pending.registration_expires_at
                rec.pending.registration = None
                rec.pending.registration_expires_at = 0
            else:
                value, expires_at = rec.pending.authentication, rec.pending.authentication_expires_at
                rec.pending.authentication = None
                rec.pending.authentication_expires_at = 0

        if value is None or _now_epoch() >= expires_at:
            return None
        return value


class CeremonySession(SessionBinding):
    """Request-scoped view of one session record."""

    def __init__(self, store: InMemorySessionStore, record: SessionRecord, is_new: bool = False):
        self.store = store
        self.record = record
        self.is_new = is_new
        self.rotated = False

    @property
    def session_id(self) -> str:
        return self.record.session_id

    @property
    def user_id(self) -> Optional[str]:
        return self.record.user_id

    def set_pending_challenge(self, purpose: CeremonyPurpose, value: bytes) -> None:
        self.store.put_challenge(self.record, purpose, value)

    def take_pending_challenge(self, purpose: CeremonyPurpose) -> Optional[bytes]:
        return self.store.pop_challenge(self.record, purpose)

    def mark_authenticated(self, user_id: str) -> None:
        # new identity -> new session id (fixation)
        self.store.rotate(self.record)
        self.record.user_id = user_id
        self.rotated = True

    def clear_authentication(self) -> None:
        self.record.user_id = None


def open_session(store: InMemorySessionStore, session_id: Optional[str]) -> CeremonySession:
    """Resume the session behind session_id, or start a fresh anonymous one."""
    rec = store.get(session_id) if session_id else None
    if rec is not None:
        return CeremonySession(store, rec)
    return CeremonySession(store, store.create(), is_new=True)
