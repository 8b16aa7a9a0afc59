# passkey_auth/storage.py
#
# Credential / user persistence.
#
# The ceremonies only talk to the CredentialStore and UserStore interfaces.
# Two backends implement both:
#   - InMemoryStore (this module): single-process, lock-guarded dicts
#   - SqlStore (sql_storage.py): SQLAlchemy, any SQL engine
#
# Invariants every backend must hold:
#   - credential ids are unique; insert of a taken id raises DuplicateCredential
#   - update_sign_count is an atomic compare-and-set per credential id: the
#     monotonic check and the write happen under one lock / one UPDATE, so two
#     concurrent assertions cannot both advance from the same stale counter
#   - deleting a user deletes its credentials
import threading
import uuid
from abc import ABC, abstractmethod
from copy import copy
from typing import Dict, List, Optional, Tuple

from .errors import CredentialNotFound, DuplicateCredential, PossibleCloneDetected, StoreError, UsernameTaken
from .models import Credential, User


def sign_count_advances(stored: int, presented: int) -> bool:
    """
    Clone-detection rule: the presented counter must be strictly greater than
    the stored one, unless the authenticator does not implement counters at
    all (both zero).
    """
    if stored == 0 and presented == 0:
        return True
    return presented > stored


class CredentialStore(ABC):
    @abstractmethod
    def insert_credential(self, credential: Credential) -> None: ...

    @abstractmethod
    def find_credential(self, credential_id: bytes) -> Optional[Credential]: ...

    @abstractmethod
    def find_credential_with_owner(self, credential_id: bytes) -> Optional[Tuple[Credential, User]]: ...

    @abstractmethod
    def update_sign_count(self, credential_id: bytes, new_count: int) -> None: ...

    @abstractmethod
    def list_credentials(self, user_id: str) -> List[Credential]: ...

    def credential_exists(self, credential_id: bytes) -> bool:
        return self.find_credential(credential_id) is not None


class UserStore(ABC):
    @abstractmethod
    def create_user(self, username: str) -> User: ...

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def delete_user(self, user_id: str) -> bool: ...


class InMemoryStore(CredentialStore, UserStore):
    def __init__(self):
        self._lock = threading.Lock()
        self.users: Dict[str, User] = {}
        self.credentials: Dict[bytes, Credential] = {}

    # --- users

    def create_user(self, username: str) -> User:
        with self._lock:
            if any(u.username == username for u in self.users.values()):
                raise UsernameTaken(f"username {username!r} taken")
            user = User(id=str(uuid.uuid4()), username=username)
            self.users[user.id] = user
            return copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self.users.get(user_id)
            return copy(user) if user else None

    def delete_user(self, user_id: str) -> bool:
        with self._lock:
            if self.users.pop(user_id, None) is None:
                return False
            dead = [cid for cid, c in self.credentials.items() if c.user_id == user_id]
            for cid in dead:
                self.credentials.pop(cid, None)
            return True

    # --- credentials

    def insert_credential(self, credential: Credential) -> None:
        with self._lock:
            if credential.user_id not in self.users:
                raise StoreError(f"owner {credential.user_id} does not exist")
            if credential.id in self.credentials:
                raise DuplicateCredential("credential id already registered")
            self.credentials[credential.id] = copy(credential)

    def find_credential(self, credential_id: bytes) -> Optional[Credential]:
        with self._lock:
            cred = self.credentials.get(credential_id)
            return copy(cred) if cred else None

    def find_credential_with_owner(self, credential_id: bytes) -> Optional[Tuple[Credential, User]]:
        with self._lock:
            cred = self.credentials.get(credential_id)
            if cred is None:
                return None
            owner = self.users.get(cred.user_id)
            if owner is None:
                return None
            return copy(cred), copy(owner)

    def update_sign_count(self, credential_id: bytes, new_count: int) -> None:
        with self._lock:
            cred = self.credentials.get(credential_id)
            if cred is None:
                raise CredentialNotFound("credential vanished before counter update")
            if not sign_count_advances(cred.sign_count, new_count):
                raise PossibleCloneDetected(stored_count=cred.sign_count, presented_count=new_count)
            cred.sign_count = new_count

    def list_credentials(self, user_id: str) -> List[Credential]:
        with self._lock:
            return [copy(c) for c in self.credentials.values() if c.user_id == user_id]
