# passkey_auth/sql_storage.py
#
# SQLAlchemy backend for CredentialStore / UserStore.
#
# Schema:
#   users(id PK, username UNIQUE)
#   webauthn_credentials(id PK, public_key, sign_count, user_id FK ON DELETE CASCADE)
#
# The sign counter is advanced with a single conditional UPDATE; the row count
# tells us whether the monotonic check held at write time.
# Concurrent assertions against one credential serialize on that UPDATE.
import uuid
from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import BigInteger, Column, ForeignKey, LargeBinary, String, create_engine, event, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import CredentialNotFound, DuplicateCredential, PossibleCloneDetected, StoreError, UsernameTaken
from .models import Credential, User
from .storage import CredentialStore, UserStore

Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String, unique=True, nullable=False, index=True)

    credentials = relationship(
        "CredentialRow",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class CredentialRow(Base):
    __tablename__ = "webauthn_credentials"

    id = Column(LargeBinary, primary_key=True)
    public_key = Column(LargeBinary, nullable=False)
    sign_count = Column(BigInteger, nullable=False, default=0)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    user = relationship("UserRow", back_populates="credentials")


def _to_user(row: UserRow) -> User:
    return User(id=row.id, username=row.username)


def _to_credential(row: CredentialRow) -> Credential:
    return Credential(
        id=bytes(row.id),
        public_key=bytes(row.public_key),
        sign_count=int(row.sign_count),
        user_id=row.user_id,
    )


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise each checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, future=True, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(url, future=True, pool_pre_ping=True)


class SqlStore(CredentialStore, UserStore):
    def __init__(self, engine: Engine, create_schema: bool = True):
        self.engine = engine
        self._sessions = sessionmaker(engine, expire_on_commit=False, future=True)
        if create_schema:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, url: str) -> "SqlStore":
        return cls(create_db_engine(url))

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise StoreError(f"database error: {e.__class__.__name__}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # --- users

    def create_user(self, username: str) -> User:
        try:
            with self._sessions() as session, session.begin():
                row = UserRow(id=str(uuid.uuid4()), username=username)
                session.add(row)
                session.flush()
                return _to_user(row)
        except IntegrityError as e:
            raise UsernameTaken(f"username {username!r} taken") from e
        except SQLAlchemyError as e:
            raise StoreError(f"database error: {e.__class__.__name__}") from e

    def get_user(self, user_id: str) -> Optional[User]:
        with self._session() as session:
            row = session.get(UserRow, user_id)
            return _to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._session() as session:
            row = session.get(UserRow, user_id)
            if row is None:
                return False
            session.delete(row)
            return True

    # --- credentials

    def insert_credential(self, credential: Credential) -> None:
        try:
            with self._sessions() as session, session.begin():
                if session.get(CredentialRow, credential.id) is not None:
                    raise DuplicateCredential("credential id already registered")
                if session.get(UserRow, credential.user_id) is None:
                    raise StoreError(f"owner {credential.user_id} does not exist")
                session.add(
                    CredentialRow(
                        id=credential.id,
                        public_key=credential.public_key,
                        sign_count=credential.sign_count,
                        user_id=credential.user_id,
                    )
                )
        except IntegrityError as e:
            # lost a race against a concurrent insert of the same id
            raise DuplicateCredential("credential id already registered") from e
        except SQLAlchemyError as e:
            raise StoreError(f"database error: {e.__class__.__name__}") from e

    def find_credential(self, credential_id: bytes) -> Optional[Credential]:
        with self._session() as session:
            row = session.get(CredentialRow, credential_id)
            return _to_credential(row) if row else None

    def find_credential_with_owner(self, credential_id: bytes) -> Optional[Tuple[Credential, User]]:
        with self._session() as session:
            row = session.get(CredentialRow, credential_id)
            if row is None:
                return None
            return _to_credential(row), _to_user(row.user)

    def update_sign_count(self, credential_id: bytes, new_count: int) -> None:
        if new_count == 0:
            guard = CredentialRow.sign_count == 0
        else:
            guard = CredentialRow.sign_count < new_count

        with self._session() as session:
            result = session.execute(
                update(CredentialRow)
                .where(CredentialRow.id == credential_id)
                .where(guard)
                .values(sign_count=new_count)
            )
            if result.rowcount == 1:
                return

            current = session.execute(
                select(CredentialRow.sign_count).where(CredentialRow.id == credential_id)
            ).scalar_one_or_none()

        if current is None:
            raise CredentialNotFound("credential vanished before counter update")
        raise PossibleCloneDetected(stored_count=int(current), presented_count=new_count)

    def list_credentials(self, user_id: str) -> List[Credential]:
        with self._session() as session:
            rows = session.execute(select(CredentialRow).where(CredentialRow.user_id == user_id)).scalars().all()
            return [_to_credential(r) for r in rows]
