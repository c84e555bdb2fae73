"""
SMART-on-FHIR clinical scope parsing and scope/operation matching.

Clinical scopes follow the SMART v1 grammar:

    <scopeType>/<resourceType>.<accessType>

    scopeType     patient | user | system
    resourceType  a FHIR resource type (e.g. Observation) or *
    accessType    read | write | *

Examples:
    "patient/Observation.read"  -> a launched app may read the patient's Observations
    "user/*.write"              -> a clinician may write any resource they can reach
    "system/*.read"             -> a backend service may read everything

Which FHIR interactions each access type unlocks is not hard-coded here. It is
looked up in the configured ScopeRule table, for example:

    {"user": {"read": ["read", "vread", "search-type"], "write": ["create", "update"]}}

Scopes that don't follow the clinical grammar (openid, profile, fhirUser,
launch/patient, offline_access, ...) are never sufficient for an operation, but
they are not errors either.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from smart_authz.config import ScopeRule

logger = logging.getLogger(__name__)

FHIR_SCOPE_REGEX = re.compile(
    r"^(?P<scopeType>patient|user|system)/"
    r"(?P<scopeResourceType>[A-Z][a-zA-Z]+|\*)\."
    r"(?P<accessType>read|write|\*)$"
)

SEARCH_OPERATIONS = (
    "search-type",
    "search-system",
    "history-type",
    "history-instance",
    "history-system",
)

WRITE_OPERATIONS = ("create", "update", "patch", "delete")

# These operations have no resource type of their own
SYSTEM_WIDE_OPERATIONS = ("search-system", "history-system")
BUNDLE_OPERATIONS = ("transaction", "batch")


@dataclass(frozen=True)
class BulkDataAuth:
    """
    Bulk data request context.

    Attributes:
        operation: initiate-export, get-status-export or cancel-export
        export_type: system, group or patient
    """

    operation: str
    export_type: str = "system"


@dataclass(frozen=True)
class ClinicalSmartScope:
    scope_type: str
    resource_type: str
    access_type: str


def get_scopes(scopes) -> list[str]:
    """Normalize a raw scope claim into a list of scope strings."""
    if isinstance(scopes, list):
        return [s for s in scopes if isinstance(s, str)]
    if isinstance(scopes, str):
        return scopes.split()
    return []


def convert_scope_to_smart_scope(scope: str) -> ClinicalSmartScope:
    """
    Parse a clinical scope string.

    Raises:
        ValueError: If ``scope`` is not a SMART clinical scope
    """
    match = FHIR_SCOPE_REGEX.fullmatch(scope)
    if match is None:
        raise ValueError(f"Not a SmartScope: {scope}")
    return ClinicalSmartScope(
        scope_type=match.group("scopeType"),
        resource_type=match.group("scopeResourceType"),
        access_type=match.group("accessType"),
    )


def get_valid_operations_for_scope_type_and_access_type(
    scope_type: str, access_type: str, scope_rule: ScopeRule
) -> list[str]:
    rule = getattr(scope_rule, scope_type)
    valid_operations: list[str] = []
    if access_type in ("*", "read"):
        valid_operations.extend(rule.read)
    if access_type in ("*", "write"):
        valid_operations.extend(rule.write)
    return valid_operations


def _get_valid_operations_for_scope(
    smart_scope: ClinicalSmartScope,
    scope_rule: ScopeRule,
    operation: str,
    resource_type: Optional[str],
) -> list[str]:
    if resource_type:
        if smart_scope.resource_type in ("*", resource_type):
            return get_valid_operations_for_scope_type_and_access_type(
                smart_scope.scope_type, smart_scope.access_type, scope_rule
            )
        return []
    # search-system and history-system span every type, so they need a * scope
    if (operation in SYSTEM_WIDE_OPERATIONS and smart_scope.resource_type == "*") or (
        operation in BUNDLE_OPERATIONS
    ):
        return get_valid_operations_for_scope_type_and_access_type(
            smart_scope.scope_type, smart_scope.access_type, scope_rule
        )
    return []


def _is_smart_scope_sufficient_for_bulk_data_access(
    bulk_data_auth: BulkDataAuth,
    smart_scope: ClinicalSmartScope,
    is_user_scope_allowed_for_system_export: bool,
) -> bool:
    scope_type = smart_scope.scope_type
    has_read_permissions = smart_scope.access_type in ("read", "*")
    all_resources = smart_scope.resource_type == "*"
    user_allowed = scope_type == "user" and is_user_scope_allowed_for_system_export

    if bulk_data_auth.operation == "initiate-export":
        if bulk_data_auth.export_type == "system":
            return (scope_type == "system" or user_allowed) and all_resources and has_read_permissions
        if bulk_data_auth.export_type == "group":
            return scope_type == "system" and all_resources and has_read_permissions
        return False

    return (
        bulk_data_auth.operation in ("get-status-export", "cancel-export")
        and (scope_type == "system" or user_allowed)
        and all_resources
        and has_read_permissions
    )


def is_scope_sufficient(
    scope: str,
    scope_rule: ScopeRule,
    operation: str,
    is_user_scope_allowed_for_system_export: bool,
    resource_type: Optional[str] = None,
    bulk_data_auth: Optional[BulkDataAuth] = None,
) -> bool:
    """Does this single scope cover ``operation`` on ``resource_type``?"""
    try:
        smart_scope = convert_scope_to_smart_scope(scope)
    except ValueError as e:
        logger.debug(str(e))
        return False

    if bulk_data_auth:
        return _is_smart_scope_sufficient_for_bulk_data_access(
            bulk_data_auth, smart_scope, is_user_scope_allowed_for_system_export
        )

    valid_operations = _get_valid_operations_for_scope(smart_scope, scope_rule, operation, resource_type)
    return operation in valid_operations


def is_scope_type_available(scope: str, patient_context=None, fhir_user=None) -> bool:
    """system scopes are always available; user and patient scopes need their claim."""
    return (
        (bool(patient_context) and scope.startswith("patient/"))
        or (bool(fhir_user) and scope.startswith("user/"))
        or scope.startswith("system/")
    )


def filter_out_unusable_scope(
    scopes: list[str],
    scope_rule: ScopeRule,
    operation: str,
    is_user_scope_allowed_for_system_export: bool,
    resource_type: Optional[str] = None,
    bulk_data_auth: Optional[BulkDataAuth] = None,
    patient_context=None,
    fhir_user=None,
) -> list[str]:
    """Keep only the scopes usable for this request, in their original order."""
    return [
        scope
        for scope in scopes
        if is_scope_type_available(scope, patient_context, fhir_user)
        and is_scope_sufficient(
            scope,
            scope_rule,
            operation,
            is_user_scope_allowed_for_system_export,
            resource_type,
            bulk_data_auth,
        )
    ]
