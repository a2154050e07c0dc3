"""YAML loading of declared records and persistence of cluster state.

A declaration holds only user-supplied fields. A state file holds the
full record returned by the last successful lifecycle call and is removed
when the cluster is found gone or deleted.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_RECORD_FILE_SIZE_BYTES
from .errors import ClusterValidationError
from .models import VaultClusterRecord

logger = logging.getLogger(__name__)


class RecordLoadError(ClusterValidationError):
    """Raised when a record file cannot be loaded or fails validation."""

    pass


def _read_mapping(path: Path) -> dict[str, Any]:
    # Check file size before reading
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise RecordLoadError(f"Failed to stat record file {path}: {e}") from e

    if file_size > MAX_RECORD_FILE_SIZE_BYTES:
        raise RecordLoadError(
            f"Record file exceeds maximum size of {MAX_RECORD_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        raw_data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise RecordLoadError(f"Failed to read record file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise RecordLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise RecordLoadError(f"Record file must contain a YAML mapping: {path}")

    # Kubernetes-style wrapper: apiVersion, kind, metadata, spec
    if "apiVersion" in raw_data and "spec" in raw_data:
        raw_data = raw_data["spec"]
        if not isinstance(raw_data, dict):
            raise RecordLoadError(f"Spec section must be a mapping: {path}")
    return raw_data


def _format_errors(path: Path, error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        lines.append(f"  - {loc}: {item['msg']}")
    return f"Validation failed for {path}:\n" + "\n".join(lines)


def load_declaration(path: Path) -> VaultClusterRecord:
    """Load a declared cluster from YAML.

    Computed fields present in the file are ignored.

    Raises:
        RecordLoadError: If the file is missing, malformed, or invalid.
    """
    if not path.exists():
        raise RecordLoadError(f"Record file not found: {path}")

    data = _read_mapping(path)
    try:
        record = VaultClusterRecord.declare(data)
    except ValidationError as e:
        raise RecordLoadError(_format_errors(path, e)) from e

    logger.info("Loaded declaration for cluster '%s' from %s", record.cluster_id, path)
    return record


def load_state(path: Path) -> VaultClusterRecord | None:
    """Load the persisted record, or None if no state exists."""
    if not path.exists():
        return None

    data = _read_mapping(path)
    try:
        return VaultClusterRecord.model_validate(data)
    except ValidationError as e:
        raise RecordLoadError(_format_errors(path, e)) from e


def save_state(path: Path, record: VaultClusterRecord) -> None:
    """Write the record, replacing any previous state atomically."""
    content = yaml.safe_dump(record.model_dump(), sort_keys=False)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(content, encoding="utf-8")
    os.replace(tmp_path, path)
    logger.info("Saved state for cluster '%s' to %s", record.cluster_id, path)


def remove_state(path: Path) -> bool:
    """Remove persisted state.

    Returns:
        True if a state file was removed.
    """
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    logger.info("Removed state file %s", path)
    return True
