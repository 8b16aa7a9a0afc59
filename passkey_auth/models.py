from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class CeremonyPurpose(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass
class User:
    id: str
    username: str


@dataclass
class Credential:
    id: bytes
    public_key: bytes
    sign_count: int
    user_id: str


@dataclass
class PendingChallenges:
    """At most one outstanding challenge per ceremony purpose."""

    registration: Optional[bytes] = None
    registration_expires_at: int = 0
    authentication: Optional[bytes] = None
    authentication_expires_at: int = 0


class UserView(BaseModel):
    id: str
    username: str

    @classmethod
    def of(cls, user: User) -> "UserView":
        return cls(id=user.id, username=user.username)


@dataclass
class ClientInfo:
    """Where a ceremony request came from (audit only)."""

    request_ip: Optional[str] = None
    user_agent: Optional[str] = None
