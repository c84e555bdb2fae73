"""
Shared test fixtures for the authorization engine test suite.

Key fixtures:
- make_token: A factory function to generate RS256-signed JWTs with any claims
- jwks_client: A fake signing-key provider that knows the test key's `kid`
- schemas: Small in-memory FHIR schemas (reference matrix + base resources)
- make_handler: A factory for SMARTHandler instances in signature or introspection mode

Testing approach:
- Unit tests (test_identity, test_scopes, test_references, test_access) call the
  module functions directly with hand-built inputs.
- test_auth.py and test_handler.py run the token pipeline against tokens signed
  with a throw-away RSA key; introspection goes through httpx.MockTransport.
- test_server.py sends real HTTP requests to the Starlette app through
  httpx.ASGITransport (in-memory, no network needed).
"""

import datetime
from types import SimpleNamespace

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from smart_authz.config import IntrospectionOptions, ScopeRule, SMARTConfig
from smart_authz.handler import SMARTHandler
from smart_authz.schema import FhirSchema, freeze_reference_matrix

ISSUER = "https://idp.example.com/oauth2/default"
AUDIENCE = "api://default"
API_URL = "https://fhir.example.com"
KID = "test-key-1"

READ_OPERATIONS = [
    "read",
    "vread",
    "search-type",
    "search-system",
    "history-instance",
    "history-type",
    "history-system",
]
WRITE_OPERATIONS = ["create", "update", "patch", "delete", "transaction", "batch"]

SCOPE_RULE = ScopeRule.model_validate(
    {
        "patient": {"read": READ_OPERATIONS, "write": ["create", "transaction"]},
        "user": {"read": READ_OPERATIONS, "write": WRITE_OPERATIONS},
        "system": {"read": READ_OPERATIONS, "write": WRITE_OPERATIONS},
    }
)

REFERENCE_MATRIX = {
    "Observation": {
        "Patient": ["subject", "performer"],
        "Practitioner": ["performer"],
        "RelatedPerson": ["performer"],
    },
    "Encounter": {
        "Patient": ["subject"],
        "Practitioner": ["participant.individual"],
    },
    "AllergyIntolerance": {
        "Patient": ["patient", "reaction.note.authorReference"],
        "Practitioner": ["reaction.note.authorReference"],
    },
    "List": {
        "Patient": ["subject", "entry.item"],
        "Practitioner": ["source", "entry.item"],
    },
}

BASE_RESOURCES = ("AllergyIntolerance", "Encounter", "List", "Observation", "Patient", "Practitioner")


# ---------------------------------------------------------------------------
# Signing key and fake JWKS client
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_private_key():
    """A key the JWKS endpoint doesn't publish (for forged-signature tests)."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


class FakeJwksClient:
    """Mimic jwt.PyJWKClient.get_signing_key() without any HTTP."""

    def __init__(self, keys):
        self._keys = keys
        self.requested_kids = []

    def get_signing_key(self, kid):
        self.requested_kids.append(kid)
        if kid not in self._keys:
            raise jwt.PyJWKClientError(f'Unable to find a signing key that matches: "{kid}"')
        return SimpleNamespace(key=self._keys[kid])


@pytest.fixture
def jwks_client(private_key):
    return FakeJwksClient({KID: private_key.public_key()})


# ---------------------------------------------------------------------------
# Token factory fixture
# ---------------------------------------------------------------------------


@pytest.fixture
def make_token(private_key):
    """
    Factory fixture to generate signed JWT access tokens.

    Usage in tests:
        def test_something(make_token):
            token = make_token(scope="user/Observation.read", fhir_user=f"{API_URL}/Practitioner/1")
    """

    def _make_token(
        sub: str = "test-user",
        scope="openid",
        iss: str = ISSUER,
        aud=AUDIENCE,
        fhir_user: str | None = None,
        patient: str | None = None,
        exp_hours: float = 1.0,
        nbf_hours: float | None = None,
        kid: str | None = KID,
        key=None,
        extra_claims: dict | None = None,
        include_sub: bool = True,
    ) -> str:
        now = datetime.datetime.now(datetime.timezone.utc)
        payload: dict = {
            "iss": iss,
            "aud": aud,
            "scp": scope,
            "iat": now,
            "exp": now + datetime.timedelta(hours=exp_hours),
        }
        if include_sub:
            payload["sub"] = sub
        if fhir_user is not None:
            payload["fhirUser"] = fhir_user
        if patient is not None:
            payload["ext"] = {"launch_response_patient": patient}
        if nbf_hours is not None:
            payload["nbf"] = now + datetime.timedelta(hours=nbf_hours)
        if extra_claims:
            payload.update(extra_claims)

        headers = {"kid": kid} if kid else None
        return jwt.encode(payload, key or private_key, algorithm="RS256", headers=headers)

    return _make_token


# ---------------------------------------------------------------------------
# Config, schema and handler fixtures
# ---------------------------------------------------------------------------


def make_config(**overrides) -> SMARTConfig:
    values = {
        "version": 1.0,
        "scope_key": "scp",
        "fhir_user_claim_path": "fhirUser",
        "launch_context_path_prefix": "ext.launch_response_",
        "scope_rule": SCOPE_RULE,
        "expected_aud_value": AUDIENCE,
        "expected_iss_value": ISSUER,
        "jwks_endpoint": "https://idp.example.com/oauth2/default/v1/keys",
    }
    values.update(overrides)
    return SMARTConfig(**values)


@pytest.fixture
def schemas():
    return {
        version: FhirSchema(
            version=version,
            reference_matrix=freeze_reference_matrix(REFERENCE_MATRIX),
            base_resources=BASE_RESOURCES,
        )
        for version in ("4.0.1", "3.0.1")
    }


@pytest.fixture
def introspection_options():
    return IntrospectionOptions(
        introspect_url="https://idp.example.com/oauth2/default/v1/introspect",
        client_id="authz-client",
        client_secret="s3cret",
    )


@pytest.fixture
def make_handler(jwks_client, schemas, introspection_options):
    """
    Factory for SMARTHandler instances.

    Signature mode with the fake JWKS client by default; pass
    ``introspection_response`` (an httpx.Response or a callable taking the
    httpx.Request) to build an introspection-mode handler instead.
    """

    def _make_handler(introspection_response=None, config_overrides: dict | None = None, **kwargs) -> SMARTHandler:
        overrides = dict(config_overrides or {})
        handler_kwargs = {"api_url": API_URL, "fhir_version": "4.0.1", "schemas": schemas}
        handler_kwargs.update(kwargs)

        if introspection_response is None:
            return SMARTHandler(config=make_config(**overrides), jwks_client=jwks_client, **handler_kwargs)

        def _respond(request: httpx.Request) -> httpx.Response:
            if callable(introspection_response):
                return introspection_response(request)
            return introspection_response

        overrides.setdefault("token_introspection", introspection_options)
        overrides.setdefault("jwks_endpoint", None)
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(_respond))
        return SMARTHandler(config=make_config(**overrides), http_client=http_client, **handler_kwargs)

    return _make_handler
