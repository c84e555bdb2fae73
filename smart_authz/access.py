"""
Per-resource access decisions.

A caller may access a resource through any one of three channels:

1. **System**: a usable ``system/*`` or ``system/<Type>`` scope for the resource's type
2. **fhirUser**: the caller is an admin on this server, or the resource references them
3. **Patient launch context**: the resource references the launched patient

The channels are OR-ed; none takes precedence over another.
"""

from typing import Mapping, Optional, Sequence

from smart_authz.identity import FhirIdentity
from smart_authz.references import ReferenceGraphMatcher


def has_system_access(usable_scopes: Sequence[str], resource_type: Optional[str]) -> bool:
    """
    Is there a usable system scope for ``resource_type``?

    ``usable_scopes`` should be the usable set computed for this request. With no
    resource type (system-wide searches) any usable system scope qualifies.
    """
    if not resource_type:
        return any(scope.startswith("system/") for scope in usable_scopes)
    targets = ("system/*", f"system/{resource_type}")
    # "system/Medication" must not match "system/MedicationRequest.read"
    return any(scope in targets or scope.startswith(tuple(f"{t}." for t in targets)) for scope in usable_scopes)


def is_fhir_user_admin(fhir_user: FhirIdentity, admin_access_types: Sequence[str], api_url: str) -> bool:
    return fhir_user.hostname == api_url and fhir_user.resource_type in admin_access_types


def has_reference_to_resource(
    matcher: ReferenceGraphMatcher,
    requestor: FhirIdentity,
    source_resource: Mapping,
    api_url: str,
    fhir_version: str,
) -> bool:
    if requestor.hostname != api_url:
        # A requestor from another FHIR server must be referenced by its absolute URL
        return matcher.is_requestor_referenced(
            [requestor.reference], requestor.resource_type, source_resource, fhir_version
        )
    is_self = (
        requestor.resource_type == source_resource.get("resourceType")
        and requestor.id == source_resource.get("id")
    )
    return is_self or matcher.is_requestor_referenced(
        [requestor.relative_reference, requestor.reference],
        requestor.resource_type,
        source_resource,
        fhir_version,
    )


def has_access_to_resource(
    matcher: ReferenceGraphMatcher,
    fhir_user: Optional[FhirIdentity],
    patient_launch_context: Optional[FhirIdentity],
    source_resource: Mapping,
    usable_scopes: Sequence[str],
    admin_access_types: Sequence[str],
    api_url: str,
    fhir_version: str,
) -> bool:
    if not isinstance(source_resource, Mapping):
        return False
    resource_type = source_resource.get("resourceType")
    if not isinstance(resource_type, str) or not resource_type:
        # untyped resources are only reachable through system/*
        resource_type = "*"
    if has_system_access(usable_scopes, resource_type):
        return True
    if fhir_user is not None and (
        is_fhir_user_admin(fhir_user, admin_access_types, api_url)
        or has_reference_to_resource(matcher, fhir_user, source_resource, api_url, fhir_version)
    ):
        return True
    return patient_launch_context is not None and has_reference_to_resource(
        matcher, patient_launch_context, source_resource, api_url, fhir_version
    )
