"""
passkey_auth/verifier.py

Adapter around the trusted WebAuthn primitive (py_webauthn).

The ceremonies never parse CBOR, COSE keys or signatures themselves. They hand
the client's PublicKeyCredential JSON plus the expected challenge to this
module, which calls py_webauthn with the configured origin and RP id.

What py_webauthn enforces for us (and we rely on):
  - clientDataJSON.type is "webauthn.create" / "webauthn.get"
  - clientDataJSON.challenge equals the expected challenge, byte for byte
  - clientDataJSON.origin equals expected_origin
  - authenticatorData.rpIdHash equals SHA-256(expected_rp_id)
  - user presence flag (and user verification when required)
  - attestation statement format ("none", "packed", ...) on registration
  - assertion signature under the stored COSE public key on authentication

Registration additionally loads the new credential public key, so a key with
an unsupported type or curve is refused before it can be stored.

What it does NOT decide for us:
  - the sign-count policy. We pass credential_current_sign_count=0 so the
    library never rejects on counters; the authentication ceremony applies the
    clone-detection rule itself, after the signature has been verified, so it
    can surface PossibleCloneDetected distinctly.

Every library failure is re-raised as VerificationError; the ceremonies map
it to the registration / authentication error of their taxonomy.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import (
    parse_authentication_credential_json,
    parse_registration_credential_json,
)
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.decode_credential_public_key import decode_credential_public_key
from webauthn.helpers.decoded_public_key_to_cryptography import decoded_public_key_to_cryptography
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from .config import Settings
from .models import User

CredentialJSON = Union[str, Dict[str, Any]]

_PRIMITIVE_ERRORS = (
    # base of every py_webauthn failure, unsupported key types and curves included
    WebAuthnException,
    # malformed base64 / missing members surface as plain Python errors
    ValueError,
    KeyError,
    TypeError,
)


class VerificationError(Exception):
    pass


@dataclass
class RegisteredCredential:
    credential_id: bytes
    public_key: bytes
    sign_count: int
    fmt: str = "none"


@dataclass
class VerifiedAssertion:
    credential_id: bytes
    new_sign_count: int
    user_verified: bool = False


class WebAuthnVerifier:
    def __init__(
        self,
        rp_id: str,
        rp_name: str,
        origin: str,
        *,
        supported_algorithms: Optional[Iterable[int]] = None,
        require_user_verification: bool = False,
        timeout_ms: int = 60000,
    ):
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self.supported_algorithms: List[COSEAlgorithmIdentifier] = [
            COSEAlgorithmIdentifier(a) for a in (supported_algorithms or (-8, -7, -257))
        ]
        self.require_user_verification = require_user_verification
        self.timeout_ms = timeout_ms

    @classmethod
    def from_settings(cls, settings: Settings) -> "WebAuthnVerifier":
        return cls(
            rp_id=settings.RP_ID,
            rp_name=settings.RP_NAME,
            origin=settings.ORIGIN,
            supported_algorithms=settings.SUPPORTED_ALGORITHMS,
            require_user_verification=settings.REQUIRE_USER_VERIFICATION,
            timeout_ms=settings.CEREMONY_TIMEOUT_MS,
        )

    @property
    def _user_verification(self) -> UserVerificationRequirement:
        if self.require_user_verification:
            return UserVerificationRequirement.REQUIRED
        return UserVerificationRequirement.PREFERRED

    # -------------------------------------------------------------------------
    # Options
    # -------------------------------------------------------------------------
    def registration_options(
        self,
        challenge: bytes,
        user: User,
        exclude_credential_ids: Iterable[bytes] = (),
    ) -> Dict[str, Any]:
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user.id.encode("utf-8"),
            user_name=user.username,
            user_display_name=user.username,
            challenge=challenge,
            timeout=self.timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                # discoverable credentials are what make identity-less login work
                resident_key=ResidentKeyRequirement.REQUIRED,
                user_verification=self._user_verification,
            ),
            exclude_credentials=[PublicKeyCredentialDescriptor(id=cid) for cid in exclude_credential_ids],
            supported_pub_key_algs=self.supported_algorithms,
        )
        return json.loads(options_to_json(options))

    def authentication_options(self, challenge: bytes) -> Dict[str, Any]:
        options = generate_authentication_options(
            rp_id=self.rp_id,
            challenge=challenge,
            timeout=self.timeout_ms,
            user_verification=self._user_verification,
        )
        return json.loads(options_to_json(options))

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------
    def verify_registration(self, response: CredentialJSON, expected_challenge: bytes) -> RegisteredCredential:
        try:
            credential = parse_registration_credential_json(response)
            verified = verify_registration_response(
                credential=credential,
                expected_challenge=expected_challenge,
                expected_origin=self.origin,
                expected_rp_id=self.rp_id,
                require_user_verification=self.require_user_verification,
                supported_pub_key_algs=self.supported_algorithms,
            )
            # "none" attestation never loads the key; refuse one that could not verify later
            decoded_public_key_to_cryptography(decode_credential_public_key(verified.credential_public_key))
        except _PRIMITIVE_ERRORS as e:
            raise VerificationError(f"{e.__class__.__name__}: {e!s}"[:200]) from e

        return RegisteredCredential(
            credential_id=bytes(verified.credential_id),
            public_key=bytes(verified.credential_public_key),
            sign_count=int(verified.sign_count),
            fmt=str(getattr(verified.fmt, "value", verified.fmt)),
        )

    def credential_id_of(self, response: CredentialJSON) -> bytes:
        """Extract rawId from an assertion without verifying anything."""
        try:
            credential = parse_authentication_credential_json(response)
        except _PRIMITIVE_ERRORS as e:
            raise VerificationError(f"{e.__class__.__name__}: {e!s}"[:200]) from e
        return bytes(credential.raw_id)

    def verify_authentication(
        self,
        response: CredentialJSON,
        expected_challenge: bytes,
        public_key: bytes,
    ) -> VerifiedAssertion:
        try:
            credential = parse_authentication_credential_json(response)
            verified = verify_authentication_response(
                credential=credential,
                expected_challenge=expected_challenge,
                expected_origin=self.origin,
                expected_rp_id=self.rp_id,
                credential_public_key=public_key,
                # counter policy lives in the ceremony (see module docstring)
                credential_current_sign_count=0,
                require_user_verification=self.require_user_verification,
            )
        except _PRIMITIVE_ERRORS as e:
            raise VerificationError(f"{e.__class__.__name__}: {e!s}"[:200]) from e

        return VerifiedAssertion(
            credential_id=bytes(verified.credential_id),
            new_sign_count=int(verified.new_sign_count),
            user_verified=bool(verified.user_verified),
        )
