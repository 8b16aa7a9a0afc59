import json
from typing import Annotated, List
from urllib.parse import urlparse, urlunparse

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# COSE algorithm identifiers: EdDSA, ES256, RS256
DEFAULT_ALGORITHMS = [-8, -7, -257]

MIN_CHALLENGE_BYTES = 16


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ORIGIN: str = "http://localhost:8000"

    # relying party / display
    RP_ID: str = "localhost"
    RP_NAME: str = "Passkey Auth"

    # enforce origin↔rp_id relationship at config load time
    STRICT_RP_BINDING: bool = True

    SESSION_TTL_SECONDS: int = 900
    CHALLENGE_TTL_SECONDS: int = 300
    CHALLENGE_BYTES: int = 32

    # hints forwarded to the browser in ceremony options
    CEREMONY_TIMEOUT_MS: int = 60000
    REQUIRE_USER_VERIFICATION: bool = False
    SUPPORTED_ALGORITHMS: Annotated[List[int], NoDecode] = DEFAULT_ALGORITHMS

    # "memory://" selects the in-process store, anything else is a SQLAlchemy URL
    DATABASE_URL: str = "memory://"

    SESSION_COOKIE_NAME: str = "passkey_session"
    SESSION_COOKIE_SECURE: bool = False

    # raw 32-byte Ed25519 seed (base64) for signing session cookies.
    # Empty -> ephemeral key per process (sessions do not survive restarts).
    SERVER_ED25519_SK_B64: str = ""

    AUDIT_DIR: str = "audit"

    # iOS associated domains (webcredentials); empty disables the route
    APPLE_APP_ID: str = ""

    @field_validator("ORIGIN")
    @classmethod
    def normalize_origin(cls, v: str) -> str:
        """
        ORIGIN must be the exact absolute http(s) origin the browser reports
        in clientDataJSON.

        Normalization:
          - strip whitespace
          - strip trailing slash
          - require http/https
          - require hostname
          - lowercase hostname

        Note: we preserve an optional port if present.
        """
        v = (v or "").strip().rstrip("/")
        p = urlparse(v)

        if p.scheme not in ("http", "https"):
            raise ValueError("ORIGIN must start with http:// or https://")

        if not p.hostname:
            raise ValueError("ORIGIN must include a hostname")

        netloc = p.hostname.lower()
        if p.port:
            netloc = f"{netloc}:{p.port}"

        return urlunparse((p.scheme, netloc, "", "", "", ""))

    @field_validator("RP_ID")
    @classmethod
    def normalize_rp_id(cls, v: str) -> str:
        """
        RP_ID must be domain-only (WebAuthn rpId semantics).
        Accepts accidental full URLs and strips scheme/path/trailing slashes.
        """
        v = (v or "").strip()

        if "://" in v:
            p = urlparse(v)
            if p.hostname:
                v = p.hostname

        v = v.strip().rstrip("/").lower()

        if not v:
            raise ValueError("RP_ID cannot be empty")

        if "/" in v or ":" in v:
            # ":" would indicate a port; WebAuthn rpId must not include it
            raise ValueError("RP_ID must be a bare domain (no scheme, no port, no path)")

        return v

    @field_validator("STRICT_RP_BINDING", "REQUIRE_USER_VERIFICATION", "SESSION_COOKIE_SECURE", mode="before")
    @classmethod
    def normalize_flag(cls, v):
        # accept 0/1, "true"/"false" from env consistently
        if isinstance(v, bool):
            return v
        if isinstance(v, int):
            return bool(v)
        if isinstance(v, str):
            return v.strip().lower() not in ("0", "false", "no", "off", "")
        return True

    @field_validator("RP_NAME")
    @classmethod
    def normalize_rp_name(cls, v: str) -> str:
        return (v or "").strip() or "Passkey Auth"

    @field_validator("CHALLENGE_BYTES")
    @classmethod
    def check_challenge_bytes(cls, v: int) -> int:
        if v < MIN_CHALLENGE_BYTES:
            raise ValueError(f"CHALLENGE_BYTES must be at least {MIN_CHALLENGE_BYTES}")
        return v

    @field_validator("SUPPORTED_ALGORITHMS", mode="before")
    @classmethod
    def normalize_algorithms(cls, v):
        # ensure list[int] even if someone sets SUPPORTED_ALGORITHMS="-7,-257"
        if isinstance(v, str):
            if v.strip().startswith("["):
                return json.loads(v)
            parts = [int(p.strip()) for p in v.split(",") if p.strip()]
            return parts or list(DEFAULT_ALGORITHMS)
        return v

    @model_validator(mode="after")
    def check_rp_binding(self) -> "Settings":
        # WebAuthn expectation: origin host must equal rp_id or be a subdomain of it.
        if self.STRICT_RP_BINDING:
            origin_host = urlparse(self.ORIGIN).hostname or ""
            rp_id = self.RP_ID
            ok = (origin_host == rp_id) or origin_host.endswith("." + rp_id)
            if not ok:
                raise ValueError(
                    f"ORIGIN host '{origin_host}' does not match RP_ID '{rp_id}'. "
                    f"Set RP_ID to the ORIGIN hostname or a parent domain of it."
                )
        return self


def get_settings() -> Settings:
    return Settings()
