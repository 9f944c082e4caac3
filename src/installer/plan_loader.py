"""Plan file loading with validation.

SECURITY: The plan file is size-checked before it is read and parsed with
``yaml.safe_load``. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_PLAN_FILE_SIZE_BYTES
from .plan import InstallPlan

logger = logging.getLogger(__name__)


class PlanLoadError(Exception):
    """Raised when plan loading or validation fails."""

    pass


def load_plan(plan_path: Path) -> InstallPlan:
    """Load and validate an install plan from YAML.

    Both a flat document and a Kubernetes-style wrapper
    (``apiVersion``/``kind``/``spec``) are accepted.

    Args:
        plan_path: Path to the plan file.

    Returns:
        Validated plan.

    Raises:
        PlanLoadError: If the plan cannot be loaded or fails validation.
    """
    if not plan_path.exists():
        raise PlanLoadError(f"Plan file not found: {plan_path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = plan_path.stat().st_size
    except OSError as e:
        raise PlanLoadError(f"Failed to stat plan file {plan_path}: {e}") from e

    if file_size > MAX_PLAN_FILE_SIZE_BYTES:
        raise PlanLoadError(
            f"Plan file exceeds maximum size of {MAX_PLAN_FILE_SIZE_BYTES} bytes: {plan_path}"
        )

    try:
        content = plan_path.read_text(encoding="utf-8")
    except OSError as e:
        raise PlanLoadError(f"Failed to read plan file {plan_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise PlanLoadError(f"Invalid YAML in {plan_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise PlanLoadError(f"Plan file must contain a YAML mapping: {plan_path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        plan_data = raw_data.get("spec") or {}
        if not isinstance(plan_data, dict):
            raise PlanLoadError(f"Spec section must be a mapping: {plan_path}")
        metadata = raw_data.get("metadata") or {}
        if "name" not in plan_data and isinstance(metadata, dict) and metadata.get("name"):
            plan_data = {**plan_data, "name": metadata["name"]}
    else:
        plan_data = raw_data

    try:
        plan = InstallPlan.model_validate(plan_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise PlanLoadError(f"Validation failed for {plan_path}:\n{error_list}") from e

    logger.info(
        "Loaded plan '%s' from %s",
        plan.name,
        plan_path,
        extra={"platforms": sorted(plan.platforms())},
    )
    return plan
