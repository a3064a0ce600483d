"""
Error registry management for loading and accessing error definitions.

Loads ``error_registry.yaml`` shipped next to this module.
"""

import yaml
from pathlib import Path
from typing import Dict, Optional

from buddylynk_types.errors import ErrorDefinition


REGISTRY_PATH = Path(__file__).parent / "error_registry.yaml"

_error_registry: Optional[Dict[str, ErrorDefinition]] = None


def load_error_registry(path: Path = REGISTRY_PATH) -> Dict[str, ErrorDefinition]:
    """
    Load error registry from YAML file.

    Returns:
        Dictionary mapping error codes to ErrorDefinition objects

    Raises:
        FileNotFoundError: If the registry file is missing
        ValueError: If YAML is malformed or validation fails
    """
    global _error_registry

    if _error_registry is not None:
        return _error_registry

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not data or "errors" not in data:
        raise ValueError("Invalid error registry format: missing 'errors' key")

    registry = {}
    for error_dict in data["errors"]:
        try:
            error_def = ErrorDefinition.model_validate(error_dict)
        except Exception as e:
            raise ValueError(
                f"Failed to parse error definition for {error_dict.get('code', 'unknown')}: {e}"
            )
        if error_def.code in registry:
            raise ValueError(f"Duplicate error code in registry: {error_def.code}")
        registry[error_def.code] = error_def

    _error_registry = registry
    return _error_registry


def get_error_definition(error_code: str) -> ErrorDefinition:
    """
    Get error definition by code.

    Unknown codes resolve to a generic internal error instead of raising.
    """
    registry = load_error_registry()

    if error_code not in registry:
        return ErrorDefinition(
            code="UNKNOWN",
            http_status=500,
            category="internal",
            severity="error",
            title="Unknown Error",
            message=f"An error occurred (code: {error_code})",
            internal_description=f"Unknown error code: {error_code}",
        )

    return registry[error_code]


def get_all_error_codes() -> list[str]:
    return list(load_error_registry().keys())
