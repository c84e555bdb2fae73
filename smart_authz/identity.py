"""
Parsing of FHIR reference strings into caller and resource identities.

Two grammars are supported:

    FHIR_USER_REGEX      https://fhir.example.com/r4/Practitioner/abc-123
                         (scheme-qualified hostname required, person-like types only)
    FHIR_RESOURCE_REGEX  Patient/123  or  https://fhir.example.com/r4/Patient/123
                         (hostname optional, any capitalized resource type)

The hostname group is greedy and may contain "/", so any path prefix of the
server base URL (e.g. "/r4") stays part of the hostname.
"""

import logging
import re
from dataclasses import dataclass

from smart_authz.errors import UnauthorizedError

logger = logging.getLogger(__name__)

FHIR_USER_REGEX = re.compile(
    r"^(?P<hostname>(http|https)://([A-Za-z0-9\-\\.:%$_/])+)/"
    r"(?P<resourceType>Person|Practitioner|RelatedPerson|Patient)/"
    r"(?P<id>[A-Za-z0-9\-.]+)$"
)
FHIR_RESOURCE_REGEX = re.compile(
    r"^((?P<hostname>(http|https)://([A-Za-z0-9\-\\.:%$_/])+)/)?"
    r"(?P<resourceType>[A-Z][a-zA-Z]+)/"
    r"(?P<id>[A-Za-z0-9\-.]+)$"
)


@dataclass(frozen=True)
class FhirIdentity:
    """A parsed reference: where it lives, what type it is and its id."""

    hostname: str
    resource_type: str
    id: str

    @property
    def reference(self) -> str:
        """Absolute reference, e.g. ``https://host/Patient/123``."""
        return f"{self.hostname}/{self.resource_type}/{self.id}"

    @property
    def relative_reference(self) -> str:
        """Relative reference, e.g. ``Patient/123``."""
        return f"{self.resource_type}/{self.id}"


def get_fhir_user(fhir_user_value: str) -> FhirIdentity:
    """
    Parse the caller identity claim (fhirUser).

    Raises:
        UnauthorizedError: If the value does not match FHIR_USER_REGEX
    """
    match = FHIR_USER_REGEX.fullmatch(fhir_user_value) if isinstance(fhir_user_value, str) else None
    if match is None:
        logger.warning(
            "Requester's identity is in the incorrect format",
            extra={"auth_data": {"decision": "denied", "reason": "malformed_fhir_user"}},
        )
        raise UnauthorizedError("malformed_fhir_user")
    return FhirIdentity(
        hostname=match.group("hostname"),
        resource_type=match.group("resourceType"),
        id=match.group("id"),
    )


def get_fhir_resource(resource_value: str, default_hostname: str) -> FhirIdentity:
    """
    Parse a resource reference, filling in ``default_hostname`` for relative ones.

    Raises:
        UnauthorizedError: If the value does not match FHIR_RESOURCE_REGEX
    """
    match = FHIR_RESOURCE_REGEX.fullmatch(resource_value) if isinstance(resource_value, str) else None
    if match is None:
        logger.warning(
            "Resource is in the incorrect format",
            extra={"auth_data": {"decision": "denied", "reason": "malformed_resource_reference"}},
        )
        raise UnauthorizedError("malformed_resource_reference")
    return FhirIdentity(
        hostname=match.group("hostname") or default_hostname,
        resource_type=match.group("resourceType"),
        id=match.group("id"),
    )
