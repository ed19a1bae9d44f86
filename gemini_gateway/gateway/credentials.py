from __future__ import annotations

import json
import time
from typing import Any

import jwt
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError

from gemini_gateway.errors import ConfigurationError, CredentialError

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
ASSERTION_LIFETIME_SECONDS = 3600
JWT_BEARER_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"


class ServiceAccountCredential(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    client_email: str
    private_key: str
    token_uri: str = GOOGLE_TOKEN_URI
    project_id: str | None = None

    @field_validator("private_key", mode="before")
    @classmethod
    def _unescape_newlines(cls, value: Any) -> Any:
        # Keys pasted into env vars often carry literal "\n" sequences.
        if isinstance(value, str):
            return value.replace("\\n", "\n")
        return value


def load_service_account(raw: str | None) -> ServiceAccountCredential:
    if not raw or not raw.strip():
        raise ConfigurationError(
            "Missing GOOGLE_SERVICE_ACCOUNT_JSON environment variable"
        )
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise ConfigurationError(
            "Invalid GOOGLE_SERVICE_ACCOUNT_JSON: must be valid JSON"
        ) from exc
    if not isinstance(payload, dict):
        raise ConfigurationError(
            "Invalid GOOGLE_SERVICE_ACCOUNT_JSON: expected a JSON object"
        )
    try:
        return ServiceAccountCredential.model_validate(payload)
    except PydanticValidationError as exc:
        missing = sorted(
            str(error["loc"][0]) for error in exc.errors() if error.get("loc")
        )
        raise ConfigurationError(
            "Invalid GOOGLE_SERVICE_ACCOUNT_JSON: missing or invalid fields "
            + ", ".join(missing)
        ) from exc


def sign_assertion(
    credential: ServiceAccountCredential,
    scope: str,
    *,
    now: int | None = None,
) -> str:
    issued_at = int(time.time()) if now is None else int(now)
    claims = {
        "iss": credential.client_email,
        "sub": credential.client_email,
        "scope": scope,
        "aud": credential.token_uri,
        "iat": issued_at,
        "exp": issued_at + ASSERTION_LIFETIME_SECONDS,
    }
    try:
        return jwt.encode(
            claims,
            credential.private_key,
            algorithm="RS256",
            headers={"typ": "JWT"},
        )
    except (ValueError, TypeError, jwt.PyJWTError) as exc:
        raise CredentialError(
            f"Could not sign assertion for {credential.client_email}: {exc}"
        ) from exc
