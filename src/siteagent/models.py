"""Pydantic models for messages exchanged with the cloud and the Site Controller.

Resource-specific payloads (VPC, Instance, ...) are carried as opaque
dictionaries. Only the envelope fields the agent reads or writes are typed:
transaction identity, retry options, workflow status and inventory paging.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

_MODEL_CONFIG = {"extra": "ignore", "populate_by_name": True}


class WorkflowStatus(str, Enum):
    """Outcome of a resource operation as reported to the cloud."""

    UNSPECIFIED = "WORKFLOW_STATUS_UNSPECIFIED"
    SUCCESS = "WORKFLOW_STATUS_SUCCESS"
    FAILURE = "WORKFLOW_STATUS_FAILURE"


class ObjectStatus(str, Enum):
    """State of the target object after the operation."""

    UNSPECIFIED = "OBJECT_STATUS_UNSPECIFIED"
    CREATED = "OBJECT_STATUS_CREATED"
    UPDATED = "OBJECT_STATUS_UPDATED"
    DELETED = "OBJECT_STATUS_DELETED"
    IN_PROGRESS = "OBJECT_STATUS_IN_PROGRESS"


class InventoryStatus(str, Enum):
    """Status carried on every inventory page."""

    UNSPECIFIED = "INVENTORY_STATUS_UNSPECIFIED"
    SUCCESS = "INVENTORY_STATUS_SUCCESS"
    FAILED = "INVENTORY_STATUS_FAILED"


class TransactionID(BaseModel):
    """Correlation identifier attached to every operation.

    Passed unchanged from the subscribe-side activity to the publish call.
    """

    model_config = _MODEL_CONFIG

    resource_id: str = Field(alias="resourceId")
    timestamp: datetime | None = None


class WorkflowOptions(BaseModel):
    """Per-request retry overrides sent by the cloud.

    Any field left unset falls back to the agent's default activity policy.
    Intervals are in seconds.
    """

    model_config = _MODEL_CONFIG

    initial_interval: float | None = Field(None, alias="initialInterval", gt=0)
    backoff_coefficient: float | None = Field(None, alias="backoffCoefficient", ge=1.0)
    maximum_interval: float | None = Field(None, alias="maximumInterval", gt=0)
    maximum_attempts: int | None = Field(None, alias="maximumAttempts", ge=0)
    start_to_close_timeout: float | None = Field(None, alias="startToCloseTimeout", gt=0)


class ResourceRequest(BaseModel):
    """Envelope for a cloud-issued operation request.

    ``payload`` is the resource-specific message forwarded to the Site
    Controller as-is.
    """

    model_config = _MODEL_CONFIG

    resource_version: int = Field(0, alias="resourceVersion", ge=0)
    payload: dict[str, Any] = Field(default_factory=dict)
    options: WorkflowOptions | None = None


class ResourceInfo(BaseModel):
    """Response object published to the cloud for one operation."""

    model_config = _MODEL_CONFIG

    resource_type: str = Field(alias="resourceType")
    status: WorkflowStatus = WorkflowStatus.FAILURE
    object_status: ObjectStatus = Field(ObjectStatus.UNSPECIFIED, alias="objectStatus")
    status_msg: str = Field("", alias="statusMsg")
    resource: dict[str, Any] | None = None


class InventoryPage(BaseModel):
    """Paging metadata for one published inventory message."""

    model_config = _MODEL_CONFIG

    current_page: int = Field(alias="currentPage", ge=1)
    total_pages: int = Field(alias="totalPages", ge=0)
    page_size: int = Field(alias="pageSize", ge=1)
    total_items: int = Field(alias="totalItems", ge=0)
    item_ids: list[str] = Field(default_factory=list, alias="itemIds")
    is_last: bool = Field(False, alias="isLast")


class InventoryMessage(BaseModel):
    """One page of a resource inventory snapshot."""

    model_config = _MODEL_CONFIG

    resource_type: str = Field(alias="resourceType")
    site_id: str = Field(alias="siteId")
    items: list[dict[str, Any]] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    inventory_status: InventoryStatus = Field(InventoryStatus.SUCCESS, alias="inventoryStatus")
    status_msg: str = Field("", alias="statusMsg")
    inventory_page: InventoryPage | None = Field(None, alias="inventoryPage")


def to_wire(model: BaseModel) -> dict[str, Any]:
    """Serialize a model with camelCase keys for the cloud side."""
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)
