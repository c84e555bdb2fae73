"""
SMARTHandler: the authorization facade used by the FHIR API layer.

Every request goes through ``verify_access_token`` first, which yields a
UserIdentity. The other operations take that identity and render one decision:

    verify_access_token                      token + operation -> UserIdentity
    is_access_bulk_data_job_allowed          only the job owner may see a bulk export job
    get_search_filter_based_on_identity      constraints the data layer adds to searches
    is_bundle_request_authorized             every entry of a batch/transaction, all or nothing
    get_allowed_resource_types_for_operation resource types the scopes allow for an operation
    authorize_and_filter_read_response       drop unreadable search hits / deny a read
    is_write_request_authorized              may the caller write this resource body

All denials raise UnauthorizedError; setup mistakes raise ConfigurationError.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional, Sequence

import httpx

from smart_authz.access import has_access_to_resource, has_system_access, is_fhir_user_admin
from smart_authz.auth import TokenVerifier, get_jwks_client
from smart_authz.config import SMARTConfig
from smart_authz.errors import ConfigurationError, UnauthorizedError
from smart_authz.identity import FhirIdentity, get_fhir_resource, get_fhir_user
from smart_authz.references import ReferenceGraphMatcher
from smart_authz.schema import FhirSchema
from smart_authz.scopes import (
    SEARCH_OPERATIONS,
    WRITE_OPERATIONS,
    BulkDataAuth,
    convert_scope_to_smart_scope,
    filter_out_unusable_scope,
    get_scopes,
    get_valid_operations_for_scope_type_and_access_type,
    is_scope_sufficient,
    is_scope_type_available,
)

logger = logging.getLogger(__name__)

HANDLER_VERSION = 1.0


@dataclass(frozen=True)
class UserIdentity:
    """
    Verified token claims plus what the engine derived from them.

    Attributes:
        claims: The verified token payload
        scopes: Every scope in the token
        usable_scopes: The scopes usable for the request that produced this identity
        fhir_user_object: Caller identity, set only when a user/ scope is usable
        patient_launch_context: Launched patient, set only when a patient/ scope is usable
    """

    claims: Mapping[str, Any]
    scopes: tuple[str, ...]
    usable_scopes: tuple[str, ...]
    fhir_user_object: Optional[FhirIdentity] = None
    patient_launch_context: Optional[FhirIdentity] = None

    @property
    def sub(self) -> Optional[str]:
        return self.claims.get("sub")


@dataclass(frozen=True)
class VerifyAccessTokenRequest:
    access_token: str
    operation: str
    resource_type: Optional[str] = None
    bulk_data_auth: Optional[BulkDataAuth] = None
    fhir_service_base_url: Optional[str] = None


@dataclass(frozen=True)
class AccessBulkDataJobRequest:
    user_identity: UserIdentity
    job_owner_id: str


@dataclass(frozen=True)
class GetSearchFilterBasedOnIdentityRequest:
    user_identity: UserIdentity
    operation: str
    resource_type: Optional[str] = None
    fhir_service_base_url: Optional[str] = None


@dataclass(frozen=True)
class BundleEntryRequest:
    operation: str
    resource_type: str
    resource: Optional[Mapping[str, Any]] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class AuthorizationBundleRequest:
    user_identity: UserIdentity
    requests: Sequence[BundleEntryRequest]
    fhir_service_base_url: Optional[str] = None


@dataclass(frozen=True)
class AllowedResourceTypesForOperationRequest:
    user_identity: UserIdentity
    operation: str


@dataclass(frozen=True)
class ReadResponseAuthorizedRequest:
    user_identity: UserIdentity
    operation: str
    read_response: Mapping[str, Any]
    fhir_service_base_url: Optional[str] = None


@dataclass(frozen=True)
class WriteRequestAuthorizedRequest:
    user_identity: UserIdentity
    operation: str
    resource_body: Mapping[str, Any]
    fhir_service_base_url: Optional[str] = None


@dataclass(frozen=True)
class SearchFilter:
    key: str
    value: list[str] = field(default_factory=list)
    comparison_operator: str = "=="
    logical_operator: str = "OR"

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "value": list(self.value),
            "comparisonOperator": self.comparison_operator,
            "logicalOperator": self.logical_operator,
        }


def _resource_type_of(resource: Any) -> Optional[str]:
    return resource.get("resourceType") if isinstance(resource, Mapping) else None


def get_claim(claims: Mapping[str, Any], path: str) -> Any:
    """Look up a dotted claim path such as ``ext.launch_response_patient``.

    A claim whose name itself contains dots (e.g. a namespaced
    ``https://fhir.example.com/fhirUser``) is matched as-is first.
    """
    if path in claims:
        return claims[path]
    value: Any = claims
    for key in path.split("."):
        if not isinstance(value, Mapping) or key not in value:
            return None
        value = value[key]
    return value


class SMARTHandler:
    """
    Args:
        config: Authorization configuration
        api_url: Base URL of this FHIR server; used to tell local requestors from
            foreign ones when a request carries no fhir_service_base_url
        fhir_version: FHIR version of this server ("4.0.1" or "3.0.1")
        schemas: Loaded static FHIR data, keyed by version
        admin_access_types: fhirUser types that may read and write without
            meeting the reference criteria
        bulk_data_access_types: fhirUser types that may run bulk data operations
        is_user_scope_allowed_for_system_export: let user/*.read scopes run system exports
        jwks_client: Signing-key provider override (defaults to a PyJWKClient on
            config.jwks_endpoint)
        http_client: Shared httpx.AsyncClient for introspection calls

    Raises:
        ConfigurationError: Version mismatch, missing/ambiguous verification mode,
            or no schema loaded for fhir_version
    """

    version = HANDLER_VERSION

    def __init__(
        self,
        config: SMARTConfig,
        api_url: str,
        fhir_version: str,
        schemas: Mapping[str, FhirSchema],
        admin_access_types: Sequence[str] = ("Practitioner",),
        bulk_data_access_types: Sequence[str] = ("Practitioner",),
        is_user_scope_allowed_for_system_export: bool = False,
        jwks_client=None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if config.version != self.version:
            raise ConfigurationError("Authorization configuration version does not match handler version")
        if bool(config.jwks_endpoint) == bool(config.token_introspection):
            raise ConfigurationError(
                "Authorization configuration not properly set up. "
                "Exactly one of 'tokenIntrospection' or 'jwksEndpoint' must be present"
            )
        if fhir_version not in schemas:
            raise ConfigurationError(f"No FHIR schema loaded for version {fhir_version}")

        self.config = config
        self.api_url = api_url
        self.fhir_version = fhir_version
        self.admin_access_types = tuple(admin_access_types)
        self.bulk_data_access_types = tuple(bulk_data_access_types)
        self.is_user_scope_allowed_for_system_export = is_user_scope_allowed_for_system_export
        self.base_resources = schemas[fhir_version].base_resources
        self.matcher = ReferenceGraphMatcher({version: schema.reference_matrix for version, schema in schemas.items()})

        if jwks_client is None and config.jwks_endpoint:
            jwks_client = get_jwks_client(config.jwks_endpoint, config.jwks_headers)
        self.token_verifier = TokenVerifier(
            config.expected_aud_value,
            config.expected_iss_value,
            jwks_client=jwks_client,
            introspection=config.token_introspection,
            http_client=http_client,
        )

    def _resolve_base_url(self, fhir_service_base_url: Optional[str]) -> str:
        """A request's own base URL wins over the server's configured api_url."""
        if fhir_service_base_url:
            return fhir_service_base_url
        return self.api_url

    def _has_access(self, user_identity: UserIdentity, resource: Mapping, base_url: str) -> bool:
        return has_access_to_resource(
            self.matcher,
            user_identity.fhir_user_object,
            user_identity.patient_launch_context,
            resource,
            user_identity.usable_scopes,
            self.admin_access_types,
            base_url,
            self.fhir_version,
        )

    async def verify_access_token(self, request: VerifyAccessTokenRequest) -> UserIdentity:
        claims = await self.token_verifier.verify(request.access_token)

        fhir_user_claim = get_claim(claims, self.config.fhir_user_claim_path)
        patient_context_claim = get_claim(claims, f"{self.config.launch_context_path_prefix}patient")
        base_url = self._resolve_base_url(request.fhir_service_base_url)

        scopes = get_scopes(claims.get(self.config.scope_key))
        usable_scopes = filter_out_unusable_scope(
            scopes,
            self.config.scope_rule,
            request.operation,
            self.is_user_scope_allowed_for_system_export,
            request.resource_type,
            request.bulk_data_auth,
            patient_context_claim,
            fhir_user_claim,
        )

        if not usable_scopes:
            logger.warning(
                "User supplied scopes are insufficient",
                extra={
                    "auth_data": {
                        "subject": claims.get("sub"),
                        "usable_scopes": usable_scopes,
                        "operation": request.operation,
                        "resource_type": request.resource_type,
                        "decision": "denied",
                        "reason": "insufficient_scope",
                    }
                },
            )
            raise UnauthorizedError("insufficient_scope")

        if request.bulk_data_auth:
            self._check_bulk_data_requestor(claims, usable_scopes, fhir_user_claim, base_url)

        fhir_user_object = None
        if fhir_user_claim and any(scope.startswith("user/") for scope in usable_scopes):
            fhir_user_object = get_fhir_user(fhir_user_claim)

        patient_launch_context = None
        if patient_context_claim and any(scope.startswith("patient/") for scope in usable_scopes):
            patient_launch_context = get_fhir_resource(patient_context_claim, base_url)

        logger.info(
            "Access token verified",
            extra={
                "auth_data": {
                    "subject": claims.get("sub"),
                    "usable_scopes": usable_scopes,
                    "operation": request.operation,
                    "resource_type": request.resource_type,
                    "decision": "authenticated",
                }
            },
        )
        return UserIdentity(
            claims=claims,
            scopes=tuple(scopes),
            usable_scopes=tuple(usable_scopes),
            fhir_user_object=fhir_user_object,
            patient_launch_context=patient_launch_context,
        )

    def _check_bulk_data_requestor(
        self, claims: Mapping, usable_scopes: Sequence[str], fhir_user_claim: Any, base_url: str
    ) -> None:
        if not claims.get("sub"):
            logger.error(
                "A JWT token is without a `sub` claim; we cannot process the bulk action without one.",
                extra={"auth_data": {"decision": "denied", "reason": "missing_sub"}},
            )
            raise UnauthorizedError("missing_sub")

        if any(scope.startswith("system") for scope in usable_scopes):
            return

        # Relying on a user scope: the requestor must be local and of a bulk data type
        fhir_user = get_fhir_user(fhir_user_claim)
        if fhir_user.hostname != base_url or fhir_user.resource_type not in self.bulk_data_access_types:
            logger.warning(
                "Requestor may not run bulk data operations",
                extra={
                    "auth_data": {
                        "subject": claims.get("sub"),
                        "requestor_type": fhir_user.resource_type,
                        "decision": "denied",
                        "reason": "bulk_data_requestor_not_allowed",
                    }
                },
            )
            raise UnauthorizedError("bulk_data_requestor_not_allowed")

    async def is_access_bulk_data_job_allowed(self, request: AccessBulkDataJobRequest) -> None:
        if request.user_identity.sub != request.job_owner_id:
            logger.warning(
                "User does not have permission to access this Bulk Data Export job",
                extra={
                    "auth_data": {
                        "subject": request.user_identity.sub,
                        "decision": "denied",
                        "reason": "not_job_owner",
                    }
                },
            )
            raise UnauthorizedError("not_job_owner")

    async def get_search_filter_based_on_identity(
        self, request: GetSearchFilterBasedOnIdentityRequest
    ) -> list[SearchFilter]:
        identity = request.user_identity
        base_url = self._resolve_base_url(request.fhir_service_base_url)

        if has_system_access(identity.usable_scopes, None):
            return []

        if identity.fhir_user_object and is_fhir_user_admin(
            identity.fhir_user_object, self.admin_access_types, base_url
        ):
            return []

        # dicts as insertion-ordered sets
        references: dict[str, None] = {}
        ids: dict[str, None] = {}
        for requestor in (identity.fhir_user_object, identity.patient_launch_context):
            if requestor is None:
                continue
            references[requestor.reference] = None
            if requestor.hostname == base_url:
                references[requestor.relative_reference] = None
            if request.resource_type and request.resource_type == requestor.resource_type:
                ids[requestor.id] = None

        filters = []
        if references:
            filters.append(SearchFilter(key="_references", value=list(references)))
        if ids:
            filters.append(SearchFilter(key="id", value=list(ids)))
        logger.debug(
            "Search filters derived from identity",
            extra={
                "auth_data": {
                    "subject": identity.sub,
                    "operation": request.operation,
                    "resource_type": request.resource_type,
                    "filter_keys": [f.key for f in filters],
                }
            },
        )
        return filters

    async def is_bundle_request_authorized(self, request: AuthorizationBundleRequest) -> None:
        identity = request.user_identity
        usable_scopes = tuple(
            scope
            for scope in identity.scopes
            if is_scope_type_available(scope, identity.patient_launch_context, identity.fhir_user_object)
        )

        for entry in request.requests:
            if not any(
                is_scope_sufficient(
                    scope,
                    self.config.scope_rule,
                    entry.operation,
                    self.is_user_scope_allowed_for_system_export,
                    entry.resource_type,
                )
                for scope in usable_scopes
            ):
                logger.error(
                    "User supplied scopes are insufficient",
                    extra={
                        "auth_data": {
                            "subject": identity.sub,
                            "usable_scopes": list(usable_scopes),
                            "operation": entry.operation,
                            "resource_type": entry.resource_type,
                            "entry_id": entry.id,
                            "decision": "denied",
                            "reason": "bundle_entry_insufficient_scope",
                        }
                    },
                )
                raise UnauthorizedError("bundle_entry_insufficient_scope")

        bundle_identity = replace(identity, usable_scopes=usable_scopes)
        write_checks = [
            self.is_write_request_authorized(
                WriteRequestAuthorizedRequest(
                    user_identity=bundle_identity,
                    operation=entry.operation,
                    resource_body=entry.resource,
                    fhir_service_base_url=request.fhir_service_base_url,
                )
            )
            for entry in request.requests
            if entry.operation in WRITE_OPERATIONS
        ]
        try:
            await asyncio.gather(*write_checks)
        except UnauthorizedError as e:
            raise UnauthorizedError("bundle_entry_not_authorized") from e

    async def get_allowed_resource_types_for_operation(
        self, request: AllowedResourceTypesForOperationRequest
    ) -> list[str]:
        allowed_resources: dict[str, None] = {}
        for scope in request.user_identity.scopes:
            try:
                smart_scope = convert_scope_to_smart_scope(scope)
            except ValueError:
                # openid, profile, launch/patient etc. don't grant resource types
                continue
            valid_operations = get_valid_operations_for_scope_type_and_access_type(
                smart_scope.scope_type, smart_scope.access_type, self.config.scope_rule
            )
            if request.operation not in valid_operations:
                continue
            if smart_scope.resource_type == "*":
                return list(self.base_resources)
            if smart_scope.resource_type in self.base_resources:
                allowed_resources[smart_scope.resource_type] = None
        return list(allowed_resources)

    async def authorize_and_filter_read_response(self, request: ReadResponseAuthorizedRequest) -> Mapping[str, Any]:
        identity = request.user_identity
        base_url = self._resolve_base_url(request.fhir_service_base_url)
        read_response = request.read_response

        if request.operation in SEARCH_OPERATIONS:
            all_entries = read_response.get("entry") or []
            entries = [
                entry
                for entry in all_entries
                if isinstance(entry, Mapping) and self._has_access(identity, entry.get("resource"), base_url)
            ]
            total = read_response.get("total")
            if not total:
                total = len(entries)
            else:
                total -= len(all_entries) - len(entries)
            if len(entries) != len(all_entries):
                logger.info(
                    "Search results filtered by access",
                    extra={
                        "auth_data": {
                            "subject": identity.sub,
                            "operation": request.operation,
                            "dropped_entries": len(all_entries) - len(entries),
                            "decision": "filtered",
                        }
                    },
                )
            return {**read_response, "entry": entries, "total": total}

        if self._has_access(identity, read_response, base_url):
            return read_response

        logger.warning(
            "User does not have permission for requested resource",
            extra={
                "auth_data": {
                    "subject": identity.sub,
                    "operation": request.operation,
                    "resource_type": _resource_type_of(read_response),
                    "decision": "denied",
                    "reason": "no_access_to_resource",
                }
            },
        )
        raise UnauthorizedError("no_access_to_resource")

    async def is_write_request_authorized(self, request: WriteRequestAuthorizedRequest) -> None:
        base_url = self._resolve_base_url(request.fhir_service_base_url)
        if self._has_access(request.user_identity, request.resource_body, base_url):
            return

        logger.warning(
            "User does not have permission for requested operation",
            extra={
                "auth_data": {
                    "subject": request.user_identity.sub,
                    "operation": request.operation,
                    "resource_type": _resource_type_of(request.resource_body),
                    "decision": "denied",
                    "reason": "write_not_authorized",
                }
            },
        )
        raise UnauthorizedError("write_not_authorized")
