"""SMART-on-FHIR authorization decision engine."""

from smart_authz.errors import ConfigurationError, UnauthorizedError
from smart_authz.handler import SMARTHandler, UserIdentity

__all__ = ["ConfigurationError", "SMARTHandler", "UnauthorizedError", "UserIdentity"]
