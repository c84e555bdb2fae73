"""
Decide whether a FHIR resource references a requestor.

The reference matrix lists, for each (source type, requestor type) pair, every
path inside the source resource where a reference to the requestor may appear.
Any segment of a path may hold a list, e.g. for AllergyIntolerance:

    reaction.note.authorReference

    {"resourceType": "AllergyIntolerance",
     "reaction": [{"note": [{"authorReference": {"reference": "Patient/1"}}]},
                  {"note": [{"authorReference": {"reference": "Practitioner/7"}}]}]}

Each path is walked breadth-first, one segment per layer, expanding lists as
they are met, and the leaves are compared against the requestor ids.
"""

import logging
from typing import Any, Iterable, Mapping

from smart_authz.errors import ConfigurationError
from smart_authz.schema import SUPPORTED_FHIR_VERSIONS, ReferenceMatrix

logger = logging.getLogger(__name__)


def _child(node: Any, key: str) -> Any:
    return node.get(key) if isinstance(node, Mapping) else None


def _leaf_values(resource: Mapping, path: str) -> list:
    components = path.split(".")
    next_queue = [_child(resource, components[0])]
    for component in components[1:]:
        root_queue, next_queue = next_queue, []
        for node in root_queue:
            if not node:
                continue
            if isinstance(node, list):
                next_queue.extend(_child(item, component) for item in node)
            else:
                next_queue.append(_child(node, component))

    leaves = []
    for value in next_queue:
        if isinstance(value, list):
            leaves.extend(value)
        else:
            leaves.append(value)
    return leaves


class ReferenceGraphMatcher:
    """Reference lookups against the version-keyed reference matrices."""

    def __init__(self, matrices: Mapping[str, ReferenceMatrix]):
        self._matrices = dict(matrices)

    def _matrix_for(self, fhir_version: str) -> ReferenceMatrix:
        if fhir_version not in SUPPORTED_FHIR_VERSIONS or fhir_version not in self._matrices:
            raise ConfigurationError(f"Unsupported FHIR version detected: {fhir_version}")
        return self._matrices[fhir_version]

    def is_requestor_referenced(
        self,
        requestor_ids: Iterable[str],
        requestor_resource_type: str,
        source_resource: Mapping,
        fhir_version: str,
    ) -> bool:
        matrix = self._matrix_for(fhir_version)
        source_type = source_resource.get("resourceType") if isinstance(source_resource, Mapping) else None
        if not isinstance(source_type, str):
            return False
        candidates = set(requestor_ids)
        possible_paths = matrix.get(source_type, {}).get(requestor_resource_type, ())

        for path in possible_paths:
            for leaf in _leaf_values(source_resource, path):
                reference = _child(leaf, "reference")
                if isinstance(reference, str) and reference in candidates:
                    logger.debug(
                        "Requestor referenced by resource",
                        extra={"auth_data": {"path": path, "requestor_type": requestor_resource_type}},
                    )
                    return True
        return False
