# passkey_auth/main.py
#
# -----------------------------------------------------------------------------
# Architectural notes (high level)
# -----------------------------------------------------------------------------
# This file is intentionally "thin" orchestration glue:
#   - It wires HTTP endpoints to the ceremonies implemented elsewhere.
#   - It MUST NOT implement crypto itself (WebAuthn verification lives in
#     verifier.py, cookie signing in tokens.py).
#   - Request-scoped state is a CeremonySession resolved from the signed
#     session cookie; nothing ceremony-related lives in module globals.
#
# Key modules / responsibilities:
#   - config.py          : environment-driven settings (ORIGIN/RP_ID/...)
#   - challenges.py      : CSPRNG challenge generation
#   - sessions.py        : session records + typed pending-challenge slots
#   - tokens.py          : Ed25519-signed session cookie
#   - storage.py         : CredentialStore / UserStore + in-memory backend
#   - sql_storage.py     : SQLAlchemy backend
#   - verifier.py        : py_webauthn adapter (trusted primitive)
#   - registration.py    : registration ceremony
#   - authentication.py  : authentication ceremony
#   - audit.py           : append-only hash-chained audit log
#
# Error surface:
#   CeremonyError subclasses are rendered by one exception handler as
#   {"detail": {"error", "reason", "message"}}. Authentication rejections all
#   render the same body, whatever the internal reason.
# -----------------------------------------------------------------------------

import time
from dataclasses import dataclass
from typing import Optional, Union

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .audit import AuditLog
from .authentication import AuthenticationCeremony
from .challenges import b64url_encode
from .config import Settings, get_settings
from .errors import CeremonyError, NotAuthenticated
from .models import ClientInfo, User, UserView
from .registration import RegistrationCeremony
from .sessions import CeremonySession, InMemorySessionStore, open_session
from .sql_storage import SqlStore
from .storage import InMemoryStore
from .tokens import InvalidToken, load_or_generate_signing_key, sign_token, verify_token
from .verifier import WebAuthnVerifier

MAX_USERNAME_LEN = 64


def _now_epoch() -> int:
    return int(time.time())


def build_store(settings: Settings):
    if settings.DATABASE_URL.startswith("memory://"):
        return InMemoryStore()
    return SqlStore.from_url(settings.DATABASE_URL)


@dataclass
class Services:
    settings: Settings
    store: Union[InMemoryStore, SqlStore]
    sessions: InMemorySessionStore
    signing_key: Ed25519PrivateKey
    audit: AuditLog
    registration: RegistrationCeremony
    authentication: AuthenticationCeremony


def build_services(
    settings: Settings,
    store=None,
    verifier: Optional[WebAuthnVerifier] = None,
    audit: Optional[AuditLog] = None,
) -> Services:
    store = store if store is not None else build_store(settings)
    verifier = verifier or WebAuthnVerifier.from_settings(settings)
    audit = audit or AuditLog(settings.AUDIT_DIR)

    return Services(
        settings=settings,
        store=store,
        sessions=InMemorySessionStore(
            ttl_seconds=settings.SESSION_TTL_SECONDS,
            challenge_ttl_seconds=settings.CHALLENGE_TTL_SECONDS,
        ),
        signing_key=load_or_generate_signing_key(settings.SERVER_ED25519_SK_B64),
        audit=audit,
        registration=RegistrationCeremony(store, verifier, audit, settings.CHALLENGE_BYTES),
        authentication=AuthenticationCeremony(store, verifier, audit, settings.CHALLENGE_BYTES),
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    store=None,
    verifier: Optional[WebAuthnVerifier] = None,
    audit: Optional[AuditLog] = None,
) -> FastAPI:
    settings = settings or get_settings()
    services = build_services(settings, store=store, verifier=verifier, audit=audit)
    public_key = services.signing_key.public_key()

    app = FastAPI(
        title="Passkey Auth Server",
        version="0.1.0",
    )
    app.state.services = services

    # -------------------------------------------------------------------------
    # Error rendering
    # -------------------------------------------------------------------------
    @app.exception_handler(CeremonyError)
    async def ceremony_error_handler(request: Request, exc: CeremonyError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.public_detail()})

    # -------------------------------------------------------------------------
    # Session plumbing
    # -------------------------------------------------------------------------
    def _issue_cookie(response: Response, session: CeremonySession) -> None:
        rec = session.record
        token = sign_token(
            services.signing_key,
            {
                "typ": "sess",
                "sid": rec.session_id,
                "issued_at": rec.issued_at,
                "expires_at": rec.expires_at,
            },
        )
        # one cookie per response: a rotation replaces the one set on resolve
        if "set-cookie" in response.headers:
            del response.headers["set-cookie"]
        response.set_cookie(
            settings.SESSION_COOKIE_NAME,
            token,
            max_age=settings.SESSION_TTL_SECONDS,
            httponly=True,
            secure=settings.SESSION_COOKIE_SECURE,
            samesite="lax",
        )

    def _session_id_from_cookie(request: Request) -> Optional[str]:
        token = request.cookies.get(settings.SESSION_COOKIE_NAME)
        if not token:
            return None
        try:
            claims = verify_token(public_key, token)
        except InvalidToken:
            return None
        if claims.get("typ") != "sess":
            return None
        try:
            if _now_epoch() >= int(claims.get("expires_at", 0)):
                return None
        except (TypeError, ValueError):
            return None
        sid = claims.get("sid")
        return sid if isinstance(sid, str) and sid else None

    def get_session(request: Request, response: Response) -> CeremonySession:
        session = open_session(services.sessions, _session_id_from_cookie(request))
        if session.is_new:
            _issue_cookie(response, session)
        return session

    def get_client(request: Request) -> ClientInfo:
        return ClientInfo(
            request_ip=(request.client.host if request.client else None),
            user_agent=request.headers.get("user-agent"),
        )

    def require_user(session: CeremonySession = Depends(get_session)) -> User:
        if not session.user_id:
            raise NotAuthenticated("no authenticated user in session")
        user = services.store.get_user(session.user_id)
        if user is None:
            # account deleted while the session was alive
            session.clear_authentication()
            raise NotAuthenticated("session user no longer exists")
        return user

    # -------------------------------------------------------------------------
    # Misc
    # -------------------------------------------------------------------------
    @app.get("/ping", response_class=PlainTextResponse)
    def ping():
        return "pong"

    @app.get("/.well-known/apple-app-site-association")
    def apple_app_site_association():
        if not settings.APPLE_APP_ID:
            raise HTTPException(404, "not configured")
        return {"webcredentials": {"apps": [settings.APPLE_APP_ID]}}

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------
    @app.get("/signup", status_code=201)
    def signup(
        response: Response,
        username: str = Query(...),
        session: CeremonySession = Depends(get_session),
    ):
        username = username.strip()
        if not username or len(username) > MAX_USERNAME_LEN:
            raise HTTPException(400, f"username must be 1..{MAX_USERNAME_LEN} characters")

        user = services.store.create_user(username)
        session.mark_authenticated(user.id)
        _issue_cookie(response, session)

        print(f"User {user.username} created", flush=True)
        return {"ok": True, "user": UserView.of(user).model_dump(), "next": "/registration/begin"}

    @app.get("/me")
    def me(user: User = Depends(require_user)):
        return UserView.of(user).model_dump()

    @app.get("/signout")
    def signout(session: CeremonySession = Depends(get_session)):
        if session.user_id:
            print(f"Signing out user {session.user_id}", flush=True)
        session.clear_authentication()
        return {"ok": True}

    @app.delete("/credential", status_code=204)
    def delete_credential(
        user: User = Depends(require_user),
        session: CeremonySession = Depends(get_session),
    ):
        services.store.delete_user(user.id)
        session.clear_authentication()
        print(f"User {user.username} deleted with all credentials", flush=True)
        return Response(status_code=204)

    # -------------------------------------------------------------------------
    # Registration ceremony
    # -------------------------------------------------------------------------
    @app.get("/registration/begin")
    def registration_begin(
        user: User = Depends(require_user),
        session: CeremonySession = Depends(get_session),
        client: ClientInfo = Depends(get_client),
    ):
        return services.registration.begin_registration(user, session, client)

    @app.post("/registration/finish")
    def registration_finish(
        body: dict = Body(...),
        user: User = Depends(require_user),
        session: CeremonySession = Depends(get_session),
        client: ClientInfo = Depends(get_client),
    ):
        store = services.store
        credential = services.registration.finish_registration(
            user,
            session,
            body,
            lambda credential_id: not store.credential_exists(credential_id),
            client,
        )
        return {"ok": True, "credential_id": b64url_encode(credential.id)}

    # -------------------------------------------------------------------------
    # Authentication ceremony
    # -------------------------------------------------------------------------
    @app.get("/authentication/begin")
    def authentication_begin(
        session: CeremonySession = Depends(get_session),
        client: ClientInfo = Depends(get_client),
    ):
        return services.authentication.begin_authentication(session, client)

    @app.post("/authentication/finish")
    def authentication_finish(
        response: Response,
        body: dict = Body(...),
        session: CeremonySession = Depends(get_session),
        client: ClientInfo = Depends(get_client),
    ):
        user = services.authentication.finish_authentication(session, body, client)

        session.mark_authenticated(user.id)
        _issue_cookie(response, session)

        return {"ok": True, "user": UserView.of(user).model_dump()}

    return app


app = create_app()
