from __future__ import annotations

import json

import jwt
import pytest

from client_test_utils import (
    TEST_CLIENT_EMAIL,
    TEST_TOKEN_URI,
    build_test_credential,
    private_key_pem,
    public_key_pem,
    service_account_info,
    service_account_json,
)
from gemini_gateway.config import GENERATIVE_LANGUAGE_SCOPE
from gemini_gateway.errors import ConfigurationError, CredentialError
from gemini_gateway.gateway.credentials import (
    GOOGLE_TOKEN_URI,
    ServiceAccountCredential,
    load_service_account,
    sign_assertion,
)


def test_signed_assertion_verifies_with_public_key() -> None:
    assertion = sign_assertion(
        build_test_credential(), GENERATIVE_LANGUAGE_SCOPE, now=1_700_000_000
    )

    claims = jwt.decode(
        assertion,
        public_key_pem(),
        algorithms=["RS256"],
        audience=TEST_TOKEN_URI,
        options={"verify_exp": False, "verify_iat": False},
    )
    assert claims["iss"] == TEST_CLIENT_EMAIL
    assert claims["sub"] == TEST_CLIENT_EMAIL
    assert claims["scope"] == GENERATIVE_LANGUAGE_SCOPE
    assert claims["iat"] == 1_700_000_000
    assert claims["exp"] - claims["iat"] == 3600
    assert jwt.get_unverified_header(assertion) == {"alg": "RS256", "typ": "JWT"}


def test_sign_assertion_defaults_to_current_time() -> None:
    assertion = sign_assertion(build_test_credential(), GENERATIVE_LANGUAGE_SCOPE)

    claims = jwt.decode(
        assertion, public_key_pem(), algorithms=["RS256"], audience=TEST_TOKEN_URI
    )
    assert claims["exp"] - claims["iat"] == 3600


def test_sign_assertion_rejects_malformed_private_key() -> None:
    credential = ServiceAccountCredential(
        client_email=TEST_CLIENT_EMAIL, private_key="not-a-pem-key"
    )

    with pytest.raises(CredentialError):
        sign_assertion(credential, GENERATIVE_LANGUAGE_SCOPE)


def test_load_service_account_unescapes_private_key_newlines() -> None:
    escaped = private_key_pem().replace("\n", "\\n")
    raw = json.dumps(service_account_info(private_key=escaped))

    credential = load_service_account(raw)

    assert credential.private_key == private_key_pem()
    assert credential.project_id == "test-project"


def test_load_service_account_defaults_token_uri() -> None:
    info = service_account_info()
    info.pop("token_uri")

    credential = load_service_account(json.dumps(info))

    assert credential.token_uri == GOOGLE_TOKEN_URI


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        (None, "Missing GOOGLE_SERVICE_ACCOUNT_JSON"),
        ("   ", "Missing GOOGLE_SERVICE_ACCOUNT_JSON"),
        ("{not json", "must be valid JSON"),
        ('["a", "b"]', "expected a JSON object"),
        ('{"client_email": "x@example.com"}', "private_key"),
    ],
)
def test_load_service_account_reports_configuration_errors(
    raw: str | None, message: str
) -> None:
    with pytest.raises(ConfigurationError, match=message):
        load_service_account(raw)


def test_load_service_account_accepts_full_json() -> None:
    credential = load_service_account(service_account_json())

    assert credential.client_email == TEST_CLIENT_EMAIL
    assert credential.token_uri == TEST_TOKEN_URI
