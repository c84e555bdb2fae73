"""
Configuration for the authorization engine.

Two layers:

- ``SMARTConfig``: the authorization configuration handed to ``SMARTHandler``
  (scope rules, expected issuer/audience, JWKS endpoint or introspection
  credentials). Stored as a JSON document with camelCase keys, e.g.:

    {
        "version": 1.0,
        "scopeKey": "scp",
        "fhirUserClaimPath": "fhirUser",
        "launchContextPathPrefix": "ext.launch_response_",
        "scopeRule": {"patient": {"read": [...], "write": [...]}, ...},
        "expectedAudValue": "api://default",
        "expectedIssValue": "https://idp.example.com/oauth2/default",
        "jwksEndpoint": "https://idp.example.com/oauth2/default/v1/keys"
    }

- ``Settings``: process-level settings read from environment variables with
  the SMART_ prefix (pydantic-settings), pointing at the JSON file above and at
  the static FHIR schema directory.
"""

from pathlib import Path
from typing import Optional, Pattern, Union

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings

from smart_authz.errors import ConfigurationError


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class AccessRule(_CamelModel):
    """Operations allowed for the read and write access types of one scope type."""

    read: tuple[str, ...] = ()
    write: tuple[str, ...] = ()


class ScopeRule(_CamelModel):
    """Rule table: scope type -> access rule."""

    patient: AccessRule = AccessRule()
    user: AccessRule = AccessRule()
    system: AccessRule = AccessRule()


class IntrospectionOptions(_CamelModel):
    introspect_url: str
    client_id: str
    client_secret: str


class SMARTConfig(_CamelModel):
    """
    Authorization configuration.

    Exactly one of ``jwks_endpoint`` / ``token_introspection`` must be set;
    ``SMARTHandler`` enforces this together with the version check.

    ``expected_aud_value`` is either an exact audience string or a compiled
    ``re.Pattern`` (only when constructed from Python).
    """

    version: float
    scope_key: str
    fhir_user_claim_path: str
    launch_context_path_prefix: str
    scope_rule: ScopeRule
    expected_aud_value: Union[str, Pattern[str]]
    expected_iss_value: str
    jwks_endpoint: Optional[str] = None
    jwks_headers: Optional[dict[str, str]] = None
    token_introspection: Optional[IntrospectionOptions] = None


def load_smart_config(path: Path) -> SMARTConfig:
    """
    Read a SMARTConfig from a JSON file.

    Raises:
        ConfigurationError: If the file can't be read or doesn't validate
    """
    try:
        return SMARTConfig.model_validate_json(Path(path).read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigurationError(f"Cannot read authorization config {path}: {e}") from e
    except ValidationError as e:
        raise ConfigurationError(f"Invalid authorization config {path}: {e}") from e


class Settings(BaseSettings):
    """
    Service configuration with environment variable bindings.

    Each field maps to an environment variable with the SMART_ prefix.
    For example, `api_url` reads from SMART_API_URL, `schema_dir` reads
    from SMART_SCHEMA_DIR. List fields take JSON, e.g.
    SMART_ADMIN_ACCESS_TYPES='["Practitioner"]'.
    """

    # --- Server settings ---
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "info"

    # --- Authorization settings ---

    # Base URL of the FHIR server this engine guards. Requests that don't
    # carry their own fhirServiceBaseUrl are evaluated against it.
    api_url: str = "http://localhost:3000"

    fhir_version: str = "4.0.1"

    # A fhirUser of one of these types may read and write without meeting
    # the reference criteria.
    admin_access_types: list[str] = ["Practitioner"]

    # A fhirUser of one of these types may run bulk data operations with user scopes.
    bulk_data_access_types: list[str] = ["Practitioner"]

    is_user_scope_allowed_for_system_export: bool = False

    auth_config_path: Path = Path("smart-auth-config.json")

    # Directory holding fhirResourceReferencesMatrix.v{version}.json and
    # baseResources.v{version}.json for each supported FHIR version.
    schema_dir: Path = Path("schema")

    model_config = {
        "env_prefix": "SMART_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


settings = Settings()
