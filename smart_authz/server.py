"""
HTTP decision service exposing SMARTHandler to a FHIR API gateway.

Every /authorization/* route:

    1. Extracts the Bearer token from the Authorization header
    2. Verifies it with SMARTHandler.verify_access_token, using the body's
       operation / resourceType / bulkDataAuth / fhirServiceBaseUrl
    3. Renders the route's decision on the verified identity

Routes:
    POST /authorization/verify-token            -> the verified identity
    POST /authorization/search-filter           -> {"filters": [...]}
    POST /authorization/read-response           -> the (filtered) readResponse
    POST /authorization/write                   -> {"authorized": true}
    POST /authorization/bundle                  -> {"authorized": true}
    POST /authorization/allowed-resource-types  -> {"resourceTypes": [...]}
    POST /authorization/bulk-data-job           -> {"authorized": true}
    GET  /health, GET /ready                    -> Kubernetes probes

Denials are 401 with an opaque message; the specific cause only goes to the logs.

Running the server:
    uv run python -m smart_authz.server
"""

import json
import logging
import sys
import uuid
from typing import Any, Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from smart_authz.auth import extract_bearer_token
from smart_authz.config import load_smart_config, settings
from smart_authz.errors import ConfigurationError, UnauthorizedError
from smart_authz.handler import (
    AccessBulkDataJobRequest,
    AllowedResourceTypesForOperationRequest,
    AuthorizationBundleRequest,
    BundleEntryRequest,
    GetSearchFilterBasedOnIdentityRequest,
    ReadResponseAuthorizedRequest,
    SMARTHandler,
    UserIdentity,
    VerifyAccessTokenRequest,
    WriteRequestAuthorizedRequest,
)
from smart_authz.identity import FhirIdentity
from smart_authz.schema import base_resources_path, load_fhir_schemas, reference_matrix_path
from smart_authz.scopes import BulkDataAuth

# ---------------------------------------------------------------------------
# Structured JSON Logging
# ---------------------------------------------------------------------------
# One JSON object per line on stdout. Decision records carry their structured
# fields (subject, operation, decision, reason, ...) in extra={"auth_data": {...}}.


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06 10:30:00,123", "level": "WARNING",
         "logger": "smart_authz.handler", "message": "User supplied scopes are insufficient",
         "subject": "00u1abcd", "operation": "read", "decision": "denied",
         "reason": "insufficient_scope"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "auth_data"):
            log_entry.update(record.auth_data)
        return json.dumps(log_entry, default=str)


handler = logging.StreamHandler(sys.stdout)
handler.setFormatter(JSONLogFormatter())

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    handlers=[handler],
)
logger = logging.getLogger("smart-authz-server")


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------


def _identity_to_dict(identity: Optional[FhirIdentity]) -> Optional[dict]:
    if identity is None:
        return None
    return {"hostname": identity.hostname, "resourceType": identity.resource_type, "id": identity.id}


def _user_identity_to_dict(user_identity: UserIdentity) -> dict:
    return {
        "sub": user_identity.sub,
        "scopes": list(user_identity.scopes),
        "usableScopes": list(user_identity.usable_scopes),
        "fhirUserObject": _identity_to_dict(user_identity.fhir_user_object),
        "patientLaunchContext": _identity_to_dict(user_identity.patient_launch_context),
    }


def _bulk_data_auth(body: dict) -> Optional[BulkDataAuth]:
    raw = body.get("bulkDataAuth")
    if not isinstance(raw, dict):
        return None
    return BulkDataAuth(operation=raw.get("operation", ""), export_type=raw.get("exportType", "system"))


class BadRequest(Exception):
    pass


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        raise BadRequest("Request body must be JSON") from e
    if not isinstance(body, dict):
        raise BadRequest("Request body must be a JSON object")
    return body


async def _authenticate(request: Request, body: dict) -> UserIdentity:
    """Verify the request's Bearer token for the operation described in the body."""
    request_id = str(uuid.uuid4())[:8]
    smart_handler: SMARTHandler = request.app.state.smart_handler
    token = extract_bearer_token(request.headers.get("authorization"))
    try:
        return await smart_handler.verify_access_token(
            VerifyAccessTokenRequest(
                access_token=token,
                operation=body.get("operation", ""),
                resource_type=body.get("resourceType"),
                bulk_data_auth=_bulk_data_auth(body),
                fhir_service_base_url=body.get("fhirServiceBaseUrl"),
            )
        )
    except UnauthorizedError as e:
        logger.warning(
            "Authentication failed",
            extra={
                "auth_data": {
                    "request_id": request_id,
                    "path": request.url.path,
                    "decision": "rejected",
                    "reason": e.reason,
                }
            },
        )
        raise


# ---------------------------------------------------------------------------
# Authorization routes
# ---------------------------------------------------------------------------


async def verify_token(request: Request) -> Response:
    body = await _json_body(request)
    user_identity = await _authenticate(request, body)
    return JSONResponse(_user_identity_to_dict(user_identity))


async def search_filter(request: Request) -> Response:
    body = await _json_body(request)
    user_identity = await _authenticate(request, body)
    filters = await request.app.state.smart_handler.get_search_filter_based_on_identity(
        GetSearchFilterBasedOnIdentityRequest(
            user_identity=user_identity,
            operation=body.get("operation", ""),
            resource_type=body.get("resourceType"),
            fhir_service_base_url=body.get("fhirServiceBaseUrl"),
        )
    )
    return JSONResponse({"filters": [f.to_dict() for f in filters]})


async def read_response(request: Request) -> Response:
    body = await _json_body(request)
    user_identity = await _authenticate(request, body)
    raw_response = body.get("readResponse")
    if not isinstance(raw_response, dict):
        raise BadRequest("readResponse must be a JSON object")
    filtered = await request.app.state.smart_handler.authorize_and_filter_read_response(
        ReadResponseAuthorizedRequest(
            user_identity=user_identity,
            operation=body.get("operation", ""),
            read_response=raw_response,
            fhir_service_base_url=body.get("fhirServiceBaseUrl"),
        )
    )
    return JSONResponse(filtered)


async def write(request: Request) -> Response:
    body = await _json_body(request)
    user_identity = await _authenticate(request, body)
    await request.app.state.smart_handler.is_write_request_authorized(
        WriteRequestAuthorizedRequest(
            user_identity=user_identity,
            operation=body.get("operation", ""),
            resource_body=body.get("resourceBody"),
            fhir_service_base_url=body.get("fhirServiceBaseUrl"),
        )
    )
    return JSONResponse({"authorized": True})


async def bundle(request: Request) -> Response:
    body = await _json_body(request)
    user_identity = await _authenticate(request, body)
    raw_entries = body.get("requests")
    if not isinstance(raw_entries, list) or not all(isinstance(e, dict) for e in raw_entries):
        raise BadRequest("requests must be a list of objects")
    await request.app.state.smart_handler.is_bundle_request_authorized(
        AuthorizationBundleRequest(
            user_identity=user_identity,
            requests=[
                BundleEntryRequest(
                    operation=entry.get("operation", ""),
                    resource_type=entry.get("resourceType", ""),
                    resource=entry.get("resource"),
                    id=entry.get("id"),
                )
                for entry in raw_entries
            ],
            fhir_service_base_url=body.get("fhirServiceBaseUrl"),
        )
    )
    return JSONResponse({"authorized": True})


async def allowed_resource_types(request: Request) -> Response:
    body = await _json_body(request)
    user_identity = await _authenticate(request, body)
    resource_types = await request.app.state.smart_handler.get_allowed_resource_types_for_operation(
        AllowedResourceTypesForOperationRequest(
            user_identity=user_identity,
            operation=body.get("targetOperation", body.get("operation", "")),
        )
    )
    return JSONResponse({"resourceTypes": resource_types})


async def bulk_data_job(request: Request) -> Response:
    body = await _json_body(request)
    user_identity = await _authenticate(request, body)
    await request.app.state.smart_handler.is_access_bulk_data_job_allowed(
        AccessBulkDataJobRequest(user_identity=user_identity, job_owner_id=body.get("jobOwnerId", ""))
    )
    return JSONResponse({"authorized": True})


# ---------------------------------------------------------------------------
# Health and Readiness Endpoints
# ---------------------------------------------------------------------------
# Unauthenticated: the kubelet that calls these has no token.


async def health_check(request: Request) -> Response:
    """Liveness probe: is the server process alive and responsive?"""
    return JSONResponse({"status": "healthy"})


async def readiness_check(request: Request) -> Response:
    """Readiness probe: are the static FHIR schema files in place?"""
    fhir_version = request.app.state.smart_handler.fhir_version
    schema_files = [
        reference_matrix_path(settings.schema_dir, fhir_version),
        base_resources_path(settings.schema_dir, fhir_version),
    ]
    if not all(path.exists() for path in schema_files):
        return JSONResponse(
            {"status": "not_ready", "reason": "schema files missing"},
            status_code=503,
        )
    return JSONResponse({"status": "ready"})


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


async def _unauthorized(request: Request, exc: UnauthorizedError) -> Response:
    return JSONResponse({"error": "Unauthorized", "message": exc.message}, status_code=exc.status_code)


async def _configuration_error(request: Request, exc: ConfigurationError) -> Response:
    logger.error("Configuration error: %s", exc)
    return JSONResponse({"error": "Configuration error"}, status_code=500)


async def _bad_request(request: Request, exc: BadRequest) -> Response:
    return JSONResponse({"error": "Bad request", "message": str(exc)}, status_code=400)


def build_handler_from_settings() -> SMARTHandler:
    """Construct the SMARTHandler described by the SMART_* environment."""
    return SMARTHandler(
        config=load_smart_config(settings.auth_config_path),
        api_url=settings.api_url,
        fhir_version=settings.fhir_version,
        schemas=load_fhir_schemas(settings.schema_dir),
        admin_access_types=settings.admin_access_types,
        bulk_data_access_types=settings.bulk_data_access_types,
        is_user_scope_allowed_for_system_export=settings.is_user_scope_allowed_for_system_export,
    )


def create_app(smart_handler: Optional[SMARTHandler] = None) -> Starlette:
    """Build the ASGI app; tests pass a preconfigured handler."""
    routes = [
        Route("/authorization/verify-token", verify_token, methods=["POST"]),
        Route("/authorization/search-filter", search_filter, methods=["POST"]),
        Route("/authorization/read-response", read_response, methods=["POST"]),
        Route("/authorization/write", write, methods=["POST"]),
        Route("/authorization/bundle", bundle, methods=["POST"]),
        Route("/authorization/allowed-resource-types", allowed_resource_types, methods=["POST"]),
        Route("/authorization/bulk-data-job", bulk_data_job, methods=["POST"]),
        Route("/health", health_check, methods=["GET"]),
        Route("/ready", readiness_check, methods=["GET"]),
    ]
    exception_handlers: dict[Any, Any] = {
        UnauthorizedError: _unauthorized,
        ConfigurationError: _configuration_error,
        BadRequest: _bad_request,
    }
    app = Starlette(routes=routes, exception_handlers=exception_handlers)
    app.state.smart_handler = smart_handler or build_handler_from_settings()
    return app


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    logger.info(
        "Starting SMART authorization service on %s:%d (fhir_version=%s)",
        settings.host,
        settings.port,
        settings.fhir_version,
    )
    uvicorn.run(
        create_app(),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )
