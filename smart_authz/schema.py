"""
Static per-version FHIR data: the reference matrix and base resource types.

Both are read from JSON files in a schema directory:

    schema/
        fhirResourceReferencesMatrix.v4.0.1.json
        fhirResourceReferencesMatrix.v3.0.1.json
        baseResources.v4.0.1.json
        baseResources.v3.0.1.json

The reference matrix maps source type -> requestor type -> dot paths:

    {"Observation": {"Patient": ["subject", "performer"], ...}, ...}

Everything is frozen after loading and shared read-only between requests.

The matrices shipped in this repo's schema/ directory are placeholders that only
cover the core clinical types (Observation, Encounter, Condition, ...). A
resource type missing from the matrix is never matched by reference, so patient
and user scopes can't reach it. Point SMART_SCHEMA_DIR at the full generated
matrices in production; loading a sparse matrix logs a warning.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from smart_authz.errors import ConfigurationError

logger = logging.getLogger(__name__)

SUPPORTED_FHIR_VERSIONS = ("4.0.1", "3.0.1")

# Below this share of base types covered by the matrix, loading warns
MIN_MATRIX_COVERAGE = 0.5

ReferenceMatrix = Mapping[str, Mapping[str, tuple[str, ...]]]


@dataclass(frozen=True)
class FhirSchema:
    version: str
    reference_matrix: ReferenceMatrix
    base_resources: tuple[str, ...]


def reference_matrix_path(schema_dir: Path, version: str) -> Path:
    return Path(schema_dir) / f"fhirResourceReferencesMatrix.v{version}.json"


def base_resources_path(schema_dir: Path, version: str) -> Path:
    return Path(schema_dir) / f"baseResources.v{version}.json"


def freeze_reference_matrix(raw: Mapping) -> ReferenceMatrix:
    """Turn a decoded matrix into nested read-only mappings of tuples."""
    return MappingProxyType(
        {
            source_type: MappingProxyType(
                {requestor_type: tuple(paths) for requestor_type, paths in by_requestor.items()}
            )
            for source_type, by_requestor in raw.items()
        }
    )


def _read_json(path: Path):
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot load FHIR schema file {path}: {e}") from e


def load_fhir_schema(schema_dir: Path, version: str) -> FhirSchema:
    """
    Load the static data for one FHIR version.

    Raises:
        ConfigurationError: If the version is unsupported or a file is missing/invalid
    """
    if version not in SUPPORTED_FHIR_VERSIONS:
        raise ConfigurationError(f"Unsupported FHIR version: {version}")

    raw_matrix = _read_json(reference_matrix_path(schema_dir, version))
    raw_resources = _read_json(base_resources_path(schema_dir, version))
    if (
        not isinstance(raw_matrix, dict)
        or not isinstance(raw_resources, list)
        or not all(isinstance(r, str) for r in raw_resources)
    ):
        raise ConfigurationError(f"Malformed FHIR schema files for version {version} in {schema_dir}")

    covered = len(set(raw_matrix) & set(raw_resources))
    if raw_resources and covered < MIN_MATRIX_COVERAGE * len(raw_resources):
        logger.warning(
            "Reference matrix for FHIR %s covers %d of %d base resource types; "
            "the rest are only reachable through system scopes",
            version,
            covered,
            len(raw_resources),
            extra={"auth_data": {"fhir_version": version, "covered_types": covered}},
        )

    return FhirSchema(
        version=version,
        reference_matrix=freeze_reference_matrix(raw_matrix),
        base_resources=tuple(raw_resources),
    )


def load_fhir_schemas(schema_dir: Path) -> dict[str, FhirSchema]:
    """Load every supported FHIR version from ``schema_dir``."""
    return {version: load_fhir_schema(schema_dir, version) for version in SUPPORTED_FHIR_VERSIONS}
