# passkey_auth/authentication.py
#
# Authentication ceremony:  Idle -> ChallengeIssued -> Verified | Failed
#
#   begin_authentication   identity-less: anyone may ask for a challenge; the
#                          browser picks a discoverable credential itself.
#   finish_authentication  consume the parked challenge FIRST, resolve the
#                          credential named by the assertion, verify the
#                          signature under its stored public key, apply the
#                          clone-detection rule, advance the counter atomically
#                          and hand back the owner for session promotion.
#
# Check order matters:
#   1. challenge present (ChallengeMissing)
#   2. credential known (CredentialNotFound)
#   3. origin / rp / challenge / signature / type (AuthenticationVerificationFailed)
#   4. counter strictly advances, or both zero (PossibleCloneDetected)
#   5. compare-and-set write in the store (PossibleCloneDetected on a lost race)
# The counter is only judged after the signature verified.
from typing import Any, Dict, Optional

from .ceremony import Ceremony
from .challenges import generate_challenge
from .errors import (
    AuthenticationVerificationFailed,
    ChallengeMissing,
    CredentialNotFound,
    PossibleCloneDetected,
    StoreError,
)
from .models import CeremonyPurpose, ClientInfo, User
from .sessions import SessionBinding
from .storage import sign_count_advances
from .verifier import CredentialJSON, VerificationError


class AuthenticationCeremony(Ceremony):
    name = "authentication"

    def begin_authentication(
        self,
        session: SessionBinding,
        client: Optional[ClientInfo] = None,
    ) -> Dict[str, Any]:
        challenge = generate_challenge(self.challenge_bytes)
        options = self.verifier.authentication_options(challenge)

        session.set_pending_challenge(CeremonyPurpose.AUTHENTICATION, challenge)

        self._audit(
            "issued",
            "authentication_challenge_issued",
            session=session,
            client=client,
            challenge=challenge,
        )
        return options

    def finish_authentication(
        self,
        session: SessionBinding,
        response: CredentialJSON,
        client: Optional[ClientInfo] = None,
    ) -> User:
        challenge = session.take_pending_challenge(CeremonyPurpose.AUTHENTICATION)
        if challenge is None:
            self._audit("denied", "challenge_missing", session=session, client=client)
            raise ChallengeMissing("no pending authentication challenge")

        try:
            credential_id = self.verifier.credential_id_of(response)
        except VerificationError as e:
            self._audit(
                "denied",
                "malformed_assertion",
                session=session,
                client=client,
                challenge=challenge,
                detail=str(e)[:200],
            )
            raise AuthenticationVerificationFailed(str(e)) from e

        found = self.store.find_credential_with_owner(credential_id)
        if found is None:
            self._audit(
                "denied",
                "credential_not_found",
                session=session,
                client=client,
                credential_id=credential_id,
                challenge=challenge,
            )
            raise CredentialNotFound("unknown credential")
        credential, owner = found

        try:
            assertion = self.verifier.verify_authentication(response, challenge, credential.public_key)
        except VerificationError as e:
            self._audit(
                "denied",
                "authentication_verification_failed",
                session=session,
                client=client,
                user_id=owner.id,
                credential_id=credential_id,
                challenge=challenge,
                detail=str(e)[:200],
            )
            raise AuthenticationVerificationFailed(str(e)) from e

        if not sign_count_advances(credential.sign_count, assertion.new_sign_count):
            self._flag_clone(session, client, owner, credential_id, credential.sign_count, assertion.new_sign_count)
            raise PossibleCloneDetected(
                stored_count=credential.sign_count,
                presented_count=assertion.new_sign_count,
            )

        try:
            self.store.update_sign_count(credential_id, assertion.new_sign_count)
        except PossibleCloneDetected as e:
            # another assertion advanced the counter between our read and write
            self._flag_clone(session, client, owner, credential_id, e.stored_count, e.presented_count)
            raise
        except CredentialNotFound:
            # credential (or its owner) deleted mid-ceremony
            self._audit(
                "denied",
                "credential_not_found",
                session=session,
                client=client,
                user_id=owner.id,
                credential_id=credential_id,
            )
            raise
        except StoreError as e:
            self._audit(
                "error",
                "store_error",
                session=session,
                client=client,
                user_id=owner.id,
                credential_id=credential_id,
                detail=str(e)[:200],
            )
            raise

        self._audit(
            "approved",
            "assertion_valid",
            session=session,
            client=client,
            user_id=owner.id,
            credential_id=credential_id,
            challenge=challenge,
            sign_count=assertion.new_sign_count,
            user_verified=assertion.user_verified,
        )
        return owner

    def _flag_clone(
        self,
        session: SessionBinding,
        client: Optional[ClientInfo],
        owner: User,
        credential_id: bytes,
        stored: int,
        presented: int,
    ) -> None:
        self._audit(
            "denied",
            "possible_clone",
            session=session,
            client=client,
            user_id=owner.id,
            credential_id=credential_id,
            stored_sign_count=stored,
            presented_sign_count=presented,
        )
