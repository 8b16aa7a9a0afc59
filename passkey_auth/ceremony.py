# passkey_auth/ceremony.py
#
# Shared plumbing for the two ceremonies: collaborators + audit emission.
from typing import Optional

from .audit import AuditLog, build_common
from .models import ClientInfo
from .sessions import SessionBinding
from .storage import CredentialStore
from .verifier import WebAuthnVerifier


class Ceremony:
    name = "ceremony"

    def __init__(
        self,
        store: CredentialStore,
        verifier: WebAuthnVerifier,
        audit: Optional[AuditLog] = None,
        challenge_bytes: int = 32,
    ):
        self.store = store
        self.verifier = verifier
        self.audit = audit
        self.challenge_bytes = challenge_bytes

    def _audit(
        self,
        result: str,
        reason: str,
        *,
        session: SessionBinding,
        client: Optional[ClientInfo],
        **fields,
    ) -> None:
        if self.audit is None:
            return
        client = client or ClientInfo()
        common = build_common(
            ceremony=self.name,
            session_id=session.session_id,
            user_id=fields.pop("user_id", None),
            credential_id=fields.pop("credential_id", None),
            challenge=fields.pop("challenge", None),
            origin=self.verifier.origin,
            rp_id=self.verifier.rp_id,
            request_ip=client.request_ip,
            user_agent=client.user_agent,
        )
        event = {**common, "result": result, "reason": reason, **fields}
        try:
            self.audit.append_event(event)
        except OSError as e:
            # the ceremony outcome stands; a lost audit line is reported, not raised
            print(f"AUDIT_WRITE_FAIL {self.name} {result}/{reason}: {e}", flush=True)
