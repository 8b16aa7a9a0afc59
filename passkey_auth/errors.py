# passkey_auth/errors.py
#
# Ceremony error taxonomy. Every failure a ceremony can surface is one of
# these; the HTTP layer maps them to status codes and public bodies.
#
# Authentication failures deliberately share one public body so that a
# caller cannot tell "unknown credential" from "bad signature" or
# "counter regression". The precise reason only reaches the audit log.

from typing import Any, Dict


class CeremonyError(Exception):
    status_code: int = 400
    error: str = "bad_request"
    reason: str = "ceremony_error"
    public_message: str = "Request could not be processed."

    def __init__(self, message: str = ""):
        super().__init__(message or self.public_message)

    def public_detail(self) -> Dict[str, Any]:
        return {
            "error": self.error,
            "reason": self.reason,
            "message": self.public_message,
        }


class ChallengeMissing(CeremonyError):
    status_code = 400
    reason = "challenge_missing"
    public_message = "No pending challenge for this session. Restart the ceremony."


class DuplicateCredential(CeremonyError):
    status_code = 409
    error = "conflict"
    reason = "duplicate_credential"
    public_message = "This credential is already registered."


class UsernameTaken(CeremonyError):
    status_code = 409
    error = "conflict"
    reason = "username_taken"
    public_message = "Username is not available."


class RegistrationVerificationFailed(CeremonyError):
    status_code = 400
    reason = "registration_verification_failed"
    public_message = "Registration response could not be verified."


class NotAuthenticated(CeremonyError):
    status_code = 401
    error = "not_authenticated"
    reason = "login_required"
    public_message = "Sign in first."


class _AuthenticationRejected(CeremonyError):
    """Base for every authentication rejection (shared public body)."""

    status_code = 401
    error = "not_authorized"
    public_message = "Authentication failed."

    def public_detail(self) -> Dict[str, Any]:
        return {
            "error": self.error,
            "reason": "authentication_failed",
            "message": self.public_message,
        }


class CredentialNotFound(_AuthenticationRejected):
    reason = "credential_not_found"


class AuthenticationVerificationFailed(_AuthenticationRejected):
    reason = "authentication_verification_failed"


class PossibleCloneDetected(_AuthenticationRejected):
    reason = "possible_clone"

    def __init__(self, message: str = "", *, stored_count: int = 0, presented_count: int = 0):
        super().__init__(
            message
            or f"sign count {presented_count} did not advance past stored {stored_count}"
        )
        self.stored_count = stored_count
        self.presented_count = presented_count


class StoreError(CeremonyError):
    status_code = 500
    error = "store_error"
    reason = "store_unavailable"
    public_message = "Credential storage failed."


class ServiceUnavailable(CeremonyError):
    status_code = 503
    error = "service_unavailable"
    reason = "randomness_unavailable"
    public_message = "Service temporarily unavailable."
