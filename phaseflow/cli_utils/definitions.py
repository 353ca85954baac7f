"""Loading workflow definitions from YAML or JSON files."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import ValidationError

from ..contracts import WorkflowDefinition
from ..errors import ConfigurationError


def _read_document(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        data = json.loads(text)
    else:
        data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} does not contain a workflow mapping")
    return data


def load_definition(path: Path | str) -> WorkflowDefinition:
    """Parse a workflow definition file.

    Raises:
        ConfigurationError: The file is not a well-formed definition.
    """
    path = Path(path)
    try:
        data = _read_document(path)
        return WorkflowDefinition.model_validate(data)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot parse {path}: {e}") from e
    except ValidationError as e:
        raise ConfigurationError(f"Invalid workflow definition in {path}: {e}") from e


def looks_like_definition(path: Path) -> bool:
    """Cheap check used by discovery: a mapping with ``id`` and ``phases`` keys."""
    try:
        data = _read_document(path)
    except (OSError, ValueError, yaml.YAMLError, ConfigurationError):
        return False
    return "id" in data and "phases" in data
