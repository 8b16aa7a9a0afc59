# passkey_auth/registration.py
#
# Registration ceremony:  Idle -> ChallengeIssued -> Verified | Failed
#
#   begin_registration   authenticated user asks to enrol a passkey; we mint a
#                        challenge, park it in the session (replacing any older
#                        registration challenge) and return creation options.
#   finish_registration  the authenticator's attestation comes back; we consume
#                        the parked challenge FIRST (single use, even if what
#                        follows fails), verify, check id uniqueness, insert.
#
# Nothing is written to the credential store unless every check passed.
from typing import Any, Callable, Dict, Optional

from .ceremony import Ceremony
from .challenges import generate_challenge
from .errors import ChallengeMissing, DuplicateCredential, RegistrationVerificationFailed, StoreError
from .models import CeremonyPurpose, ClientInfo, Credential, User
from .sessions import SessionBinding
from .verifier import CredentialJSON, VerificationError

# capability injected by the caller: True when no credential with this id exists yet
CredentialIdAvailable = Callable[[bytes], bool]


class RegistrationCeremony(Ceremony):
    name = "registration"

    def begin_registration(
        self,
        user: User,
        session: SessionBinding,
        client: Optional[ClientInfo] = None,
    ) -> Dict[str, Any]:
        challenge = generate_challenge(self.challenge_bytes)

        # ask the browser not to re-enrol an authenticator this user already has
        existing = [c.id for c in self.store.list_credentials(user.id)]
        options = self.verifier.registration_options(challenge, user, existing)

        session.set_pending_challenge(CeremonyPurpose.REGISTRATION, challenge)

        self._audit(
            "issued",
            "registration_challenge_issued",
            session=session,
            client=client,
            user_id=user.id,
            challenge=challenge,
        )
        return options

    def finish_registration(
        self,
        user: User,
        session: SessionBinding,
        response: CredentialJSON,
        is_credential_id_available: CredentialIdAvailable,
        client: Optional[ClientInfo] = None,
    ) -> Credential:
        # consumed on entry: a failed attempt cannot be retried with the same challenge
        challenge = session.take_pending_challenge(CeremonyPurpose.REGISTRATION)
        if challenge is None:
            self._audit("denied", "challenge_missing", session=session, client=client, user_id=user.id)
            raise ChallengeMissing("no pending registration challenge")

        try:
            registered = self.verifier.verify_registration(response, challenge)
        except VerificationError as e:
            self._audit(
                "denied",
                "registration_verification_failed",
                session=session,
                client=client,
                user_id=user.id,
                challenge=challenge,
                detail=str(e)[:200],
            )
            raise RegistrationVerificationFailed(str(e)) from e

        if not is_credential_id_available(registered.credential_id):
            self._audit(
                "denied",
                "duplicate_credential",
                session=session,
                client=client,
                user_id=user.id,
                credential_id=registered.credential_id,
                challenge=challenge,
            )
            raise DuplicateCredential("credential id already registered")

        credential = Credential(
            id=registered.credential_id,
            public_key=registered.public_key,
            sign_count=0,
            user_id=user.id,
        )

        try:
            self.store.insert_credential(credential)
        except DuplicateCredential:
            # the store is the second barrier (concurrent registration of the same id)
            self._audit(
                "denied",
                "duplicate_credential",
                session=session,
                client=client,
                user_id=user.id,
                credential_id=credential.id,
                challenge=challenge,
            )
            raise
        except StoreError as e:
            self._audit(
                "error",
                "store_error",
                session=session,
                client=client,
                user_id=user.id,
                credential_id=credential.id,
                detail=str(e)[:200],
            )
            raise

        self._audit(
            "approved",
            "credential_registered",
            session=session,
            client=client,
            user_id=user.id,
            credential_id=credential.id,
            challenge=challenge,
            fmt=registered.fmt,
        )
        return credential
