"""Override file loading with validation.

The override file tunes inventory schedules and page sizes without
redeploying. All file operations enforce a size limit, and every schedule
is parsed at load time so a bad expression fails startup instead of a job.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from .config import MAX_OVERRIDES_FILE_SIZE_BYTES, MAX_PAGE_SIZE
from .scheduler import ScheduleError, parse_schedule

logger = logging.getLogger(__name__)


class OverrideLoadError(Exception):
    """Raised when the override file cannot be loaded or fails validation."""

    pass


class ResourceOverride(BaseModel):
    model_config = {"extra": "forbid"}

    schedule: str | None = None
    enabled: bool = True


class InventoryOverrides(BaseModel):
    model_config = {"extra": "forbid", "populate_by_name": True}

    default_schedule: str | None = Field(None, alias="defaultSchedule")
    site_page_size: int | None = Field(None, alias="sitePageSize", ge=1, le=MAX_PAGE_SIZE)
    cloud_page_size: int | None = Field(None, alias="cloudPageSize", ge=1, le=MAX_PAGE_SIZE)
    resources: dict[str, ResourceOverride] = Field(default_factory=dict)


class Overrides(BaseModel):
    """Top-level override document."""

    model_config = {"extra": "forbid"}

    inventory: InventoryOverrides = Field(default_factory=InventoryOverrides)

    def schedule_for(self, resource_type: str, default: str) -> str:
        resource = self.inventory.resources.get(resource_type)
        if resource is not None and resource.schedule:
            return resource.schedule
        return self.inventory.default_schedule or default

    def enabled(self, resource_type: str) -> bool:
        resource = self.inventory.resources.get(resource_type)
        return resource is None or resource.enabled


def load_overrides(path: Path, known_resources: Iterable[str]) -> Overrides:
    """Load and validate an override file.

    Args:
        path: YAML file to load.
        known_resources: Resource names accepted under ``inventory.resources``.

    Returns:
        Validated overrides.

    Raises:
        OverrideLoadError: If the file is missing, too large, malformed,
            names an unknown resource or holds a bad schedule.
    """
    if not path.exists():
        raise OverrideLoadError(f"Overrides file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise OverrideLoadError(f"Failed to stat overrides file {path}: {e}") from e

    if file_size > MAX_OVERRIDES_FILE_SIZE_BYTES:
        raise OverrideLoadError(
            f"Overrides file exceeds maximum size of {MAX_OVERRIDES_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise OverrideLoadError(f"Failed to read overrides file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise OverrideLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise OverrideLoadError(f"Overrides file must contain a YAML mapping: {path}")

    try:
        overrides = Overrides.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        raise OverrideLoadError(f"Validation failed for {path}:\n" + "\n".join(errors)) from e

    known = set(known_resources)
    unknown = sorted(set(overrides.inventory.resources) - known)
    if unknown:
        raise OverrideLoadError(f"Unknown resources in {path}: {unknown}. Valid resources: {sorted(known)}")

    schedules = [overrides.inventory.default_schedule] + [
        resource.schedule for resource in overrides.inventory.resources.values()
    ]
    for schedule in schedules:
        if schedule is None:
            continue
        try:
            parse_schedule(schedule)
        except ScheduleError as e:
            raise OverrideLoadError(f"Invalid schedule in {path}: {e}") from e

    logger.info("Loaded overrides from %s", path)
    return overrides
