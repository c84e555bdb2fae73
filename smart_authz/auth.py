"""
Bearer token verification.

This module handles the Authentication (AuthN) layer:
- Extracts Bearer tokens from the HTTP Authorization header
- Decodes the JWT and checks the `iss` and `aud` claims before anything else
- Proves the token is genuine, in one of two modes chosen at construction:
    * signature: the `kid` header selects a public key from the issuer's JWKS
      endpoint, then PyJWT verifies the signature, `exp`, `nbf` and `iss`
    * introspection: the token is POSTed to the issuer's RFC 7662 introspection
      endpoint, which must answer `{"active": true}`

Every failure is logged with its specific cause and then raised as the same
UnauthorizedError("Invalid access token"). A caller probing with forged or
tampered tokens can't tell which check rejected them.

Token structure (JWT payload, claim names are configurable):
    {
        "iss": "https://idp.example.com/oauth2/default",
        "aud": "api://default",
        "sub": "00u1abcd",
        "scp": "openid fhirUser patient/Observation.read",
        "fhirUser": "https://fhir.example.com/Practitioner/123",
        "ext": {"launch_response_patient": "Patient/456"},
        "exp": 1738800000
    }
"""

import asyncio
import logging
from typing import Any, Optional, Pattern, Union

import httpx
import jwt

from smart_authz.config import IntrospectionOptions
from smart_authz.errors import INVALID_TOKEN_MESSAGE, ConfigurationError, UnauthorizedError

logger = logging.getLogger(__name__)

ExpectedAudience = Union[str, Pattern[str]]

# Tokens are issued by an external authorization server, so only asymmetric
# algorithms are accepted. This also rules out HS256 key-confusion attacks.
ALLOWED_ALGORITHMS = ["RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512"]

# Signing-key cache policy for the JWKS client
JWKS_MAX_CACHED_KEYS = 5
JWKS_CACHE_LIFESPAN_SECONDS = 600


def _invalid_token(reason: str, detail: str) -> UnauthorizedError:
    logger.warning(
        "Access token rejected: %s",
        detail,
        extra={"auth_data": {"decision": "rejected", "reason": reason}},
    )
    return UnauthorizedError(reason, message=INVALID_TOKEN_MESSAGE)


def extract_bearer_token(authorization_header: Optional[str]) -> str:
    """
    Extract the token from an "Authorization: Bearer <token>" header value.

    The scheme is matched case-insensitively (RFC 6750).

    Raises:
        UnauthorizedError: If the header is missing or not a Bearer header
    """
    if not authorization_header:
        raise _invalid_token("missing_authorization_header", "Missing Authorization header")

    parts = authorization_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise _invalid_token(
            "malformed_authorization_header",
            "Invalid Authorization header format, expected 'Bearer <token>'",
        )
    return parts[1].strip()


def audience_matches(aud_claim: Any, expected_aud_value: ExpectedAudience) -> bool:
    """True if any audience in the claim equals the expected string or matches the pattern."""
    if isinstance(aud_claim, str):
        audiences = [aud_claim]
    elif isinstance(aud_claim, list):
        audiences = aud_claim
    else:
        audiences = []

    for audience in audiences:
        if not isinstance(audience, str):
            continue
        if isinstance(expected_aud_value, str):
            if audience == expected_aud_value:
                return True
        elif expected_aud_value.search(audience):
            return True
    return False


def decode_jwt_token(
    token: str, expected_aud_value: ExpectedAudience, expected_iss_value: str
) -> dict[str, dict]:
    """
    Decode a JWT without verifying its signature and check `iss` and `aud`.

    Returns:
        {"header": {...}, "payload": {...}}

    Raises:
        UnauthorizedError: If the token can't be decoded or iss/aud don't match
    """
    try:
        header = jwt.get_unverified_header(token)
        payload = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError as e:
        raise _invalid_token("undecodable_token", f"access_token could not be decoded into an object ({e})") from e

    if payload.get("iss") != expected_iss_value:
        raise _invalid_token("unexpected_iss", "access_token has unexpected `iss`")

    if not audience_matches(payload.get("aud"), expected_aud_value):
        raise _invalid_token("unexpected_aud", "access_token has unexpected `aud`")

    return {"header": header, "payload": payload}


def get_jwks_client(jwks_uri: str, headers: Optional[dict[str, str]] = None) -> jwt.PyJWKClient:
    """Build the signing-key provider for a JWKS endpoint."""
    return jwt.PyJWKClient(
        jwks_uri,
        cache_keys=True,
        max_cached_keys=JWKS_MAX_CACHED_KEYS,
        lifespan=JWKS_CACHE_LIFESPAN_SECONDS,
        headers=headers,
    )


async def verify_jwt_token(
    token: str,
    expected_aud_value: ExpectedAudience,
    expected_iss_value: str,
    jwks_client,
) -> dict:
    """
    Verify a JWT against the issuer's published signing keys.

    ``jwks_client`` is anything with ``get_signing_key(kid)`` returning an object
    with a ``key`` attribute (``jwt.PyJWKClient`` in production). The lookup may
    hit the network, so it runs in a worker thread.

    Raises:
        UnauthorizedError: Unknown kid, bad signature, expired, not yet valid, wrong iss/aud
    """
    decoded = decode_jwt_token(token, expected_aud_value, expected_iss_value)
    kid = decoded["header"].get("kid")
    if not kid:
        raise _invalid_token("missing_kid", 'JWT verification failed. JWT "kid" attribute is required in the header')

    try:
        signing_key = await asyncio.to_thread(jwks_client.get_signing_key, kid)
        payload = jwt.decode(
            token,
            signing_key.key,
            algorithms=ALLOWED_ALGORITHMS,
            issuer=expected_iss_value,
            # The audience may be a pattern, which PyJWT can't express; checked below
            options={"verify_aud": False},
        )
    # A key of the wrong family for the header alg surfaces as TypeError or ValueError
    except (jwt.PyJWTError, TypeError, ValueError) as e:
        raise _invalid_token("signature_verification_failed", str(e)) from e

    if not audience_matches(payload.get("aud"), expected_aud_value):
        raise _invalid_token("unexpected_aud", "access_token has unexpected `aud`")

    return payload


async def introspect_jwt_token(
    token: str,
    expected_aud_value: ExpectedAudience,
    expected_iss_value: str,
    introspection: IntrospectionOptions,
    http_client: Optional[httpx.AsyncClient] = None,
) -> dict:
    """
    Ask the issuer's introspection endpoint whether the token is active.

    The `iss` and `aud` claims are still checked locally first. The call uses
    HTTP Basic authentication with the configured client credentials.

    Raises:
        UnauthorizedError: Transport failure, error status, malformed body or inactive token
    """
    payload = decode_jwt_token(token, expected_aud_value, expected_iss_value)["payload"]

    async def _post(client: httpx.AsyncClient) -> httpx.Response:
        return await client.post(
            introspection.introspect_url,
            data={"token": token},
            headers={"accept": "application/json", "cache-control": "no-cache"},
            auth=(introspection.client_id, introspection.client_secret),
        )

    try:
        if http_client is not None:
            response = await _post(http_client)
        else:
            async with httpx.AsyncClient() as client:
                response = await _post(client)
        response.raise_for_status()
        body = response.json()
    except httpx.HTTPStatusError as e:
        raise _invalid_token(
            "introspection_error_status",
            f"Status received from introspection call: {e.response.status_code} {e.response.text}",
        ) from e
    except httpx.HTTPError as e:
        raise _invalid_token("introspection_transport_error", str(e)) from e
    except ValueError as e:
        raise _invalid_token("introspection_malformed_response", str(e)) from e

    if not isinstance(body, dict) or body.get("active") is not True:
        raise _invalid_token("inactive_token", "Introspection reports the token is not active")

    return payload


class TokenVerifier:
    """
    Verifies access tokens in exactly one mode, fixed at construction.

    Args:
        expected_aud_value: Audience string or compiled pattern
        expected_iss_value: Exact issuer
        jwks_client: Signing-key provider (signature mode)
        introspection: Introspection endpoint and client credentials (introspection mode)
        http_client: Optional shared httpx.AsyncClient for introspection calls

    Raises:
        ConfigurationError: If neither or both modes are configured
    """

    def __init__(
        self,
        expected_aud_value: ExpectedAudience,
        expected_iss_value: str,
        jwks_client=None,
        introspection: Optional[IntrospectionOptions] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if (jwks_client is None) == (introspection is None):
            raise ConfigurationError(
                "Authorization configuration not properly set up. "
                "Exactly one of 'tokenIntrospection' or 'jwksEndpoint' must be present"
            )
        self.expected_aud_value = expected_aud_value
        self.expected_iss_value = expected_iss_value
        self._jwks_client = jwks_client
        self._introspection = introspection
        self._http_client = http_client

    async def verify(self, token: str) -> dict:
        """Return the verified claims of ``token``."""
        if self._introspection is not None:
            return await introspect_jwt_token(
                token,
                self.expected_aud_value,
                self.expected_iss_value,
                self._introspection,
                self._http_client,
            )
        return await verify_jwt_token(token, self.expected_aud_value, self.expected_iss_value, self._jwks_client)
