"""Declarative object file loading with validation.

A spec file holds one managed object:

```yaml
kind: ComputeCluster
metadata:
  name: my-cluster
  organizationId: org-1
  projectId: project-1
spec:
  regionId: region-1
  workloadPools:
    - name: default
      replicas: 3
      flavorId: flavor-1
      imageId: image-1
```

Control fields and status are owned by the controller and ignored when
present in a file.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import ManagedObject, get_object_class

logger = logging.getLogger(__name__)

SPEC_FILE_SUFFIXES = (".yaml", ".yml")

# Owned by the controller, never taken from a file
CONTROLLER_OWNED_KEYS = ("control", "status")


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def _read(spec_path: Path) -> dict[str, Any]:
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    return raw_data


def parse_object(raw_data: dict[str, Any], source: str = "<input>") -> ManagedObject:
    """Validate a mapping into the managed object its ``kind`` names.

    Raises:
        SpecLoadError: If the kind is unknown or validation fails.
    """
    kind = raw_data.get("kind")
    if not isinstance(kind, str):
        raise SpecLoadError(f"Spec must declare a kind: {source}")

    try:
        object_class = get_object_class(kind)
    except ValueError as e:
        raise SpecLoadError(str(e)) from e

    data = {k: v for k, v in raw_data.items() if k not in CONTROLLER_OWNED_KEYS}

    try:
        return object_class.model_validate(data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e


def load_spec(spec_path: Path) -> ManagedObject:
    """Load and validate one managed object from YAML.

    Args:
        spec_path: Path of the spec file.

    Returns:
        Validated ComputeCluster or ComputeInstance.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    obj = parse_object(_read(spec_path), str(spec_path))
    logger.info(
        "Loaded spec",
        extra={"kind": obj.KIND, "object": obj.metadata.name, "path": str(spec_path)},
    )
    return obj


def load_specs(specs_dir: Path) -> list[ManagedObject]:
    """Load every spec file in a directory, in file name order.

    Raises:
        SpecLoadError: If the directory is missing or any file is invalid.
    """
    if not specs_dir.is_dir():
        raise SpecLoadError(f"Specs directory not found: {specs_dir}")

    paths = sorted(p for p in specs_dir.iterdir() if p.suffix in SPEC_FILE_SUFFIXES)
    return [load_spec(path) for path in paths]
