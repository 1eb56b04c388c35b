"""Resource operation protocol.

The orchestrator only depends on ``WorkflowMetadata``. Each resource type
contributes one ``OperationBinding`` per operation it supports, and a
single concrete ``ResourceOperation`` turns a binding into a fresh
per-invocation protocol object. Bindings form a closed table built at
import time; there is no dynamic dispatch on activity names.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, assert_never

from .health import WorkflowStatistics
from .models import ObjectStatus, ResourceInfo, ResourceRequest, TransactionID, WorkflowStatus


class OperationKind(str, Enum):
    """Operations a resource type can expose to the cloud."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REBOOT = "reboot"


def success_object_status(kind: OperationKind) -> ObjectStatus:
    """Object status recorded when an operation of ``kind`` succeeds."""
    match kind:
        case OperationKind.CREATE:
            return ObjectStatus.CREATED
        case OperationKind.UPDATE:
            return ObjectStatus.UPDATED
        case OperationKind.DELETE:
            return ObjectStatus.DELETED
        case OperationKind.REBOOT:
            return ObjectStatus.IN_PROGRESS
        case _:
            assert_never(kind)


@dataclass(frozen=True)
class OperationBinding:
    """Static description of one (resource, operation) pair.

    Attributes:
        resource_type: Catalogue name, e.g. ``vpc``.
        kind: Operation kind.
        method: Site Controller RPC method name.
        publish_workflow: Cloud workflow receiving the result.
        success_status: Object status reported on success.
        workflow_name: Subscribe-side workflow the cloud dispatches, e.g. ``CreateVpc``.
    """

    resource_type: str
    kind: OperationKind
    method: str
    publish_workflow: str
    success_status: ObjectStatus
    workflow_name: str


@dataclass(frozen=True)
class ActivityContext:
    """Per-attempt context handed to the controller call."""

    resource_id: str
    resource_version: int = 0
    transaction_id: TransactionID | None = None
    attempt: int = 1

    def metadata(self) -> list[tuple[str, str]]:
        """gRPC metadata carrying optimistic-concurrency expectations."""
        return [
            ("x-resource-id", self.resource_id),
            ("x-resource-version", str(self.resource_version)),
        ]


class WorkflowMetadata(Protocol):
    """Capability set the orchestrator needs from one resource operation."""

    @property
    def resource_type(self) -> str: ...

    @property
    def activity_type(self) -> OperationKind: ...

    async def do_site_controller_op(
        self, ctx: ActivityContext, client: Any, request: ResourceRequest
    ) -> dict[str, Any]: ...

    def response_state(self, status: WorkflowStatus, object_status: ObjectStatus, message: str) -> None: ...

    def record_result(self, result: dict[str, Any]) -> None: ...

    def response(self) -> ResourceInfo: ...

    def statistics(self) -> WorkflowStatistics: ...

    def activity_publish(self) -> str: ...


class ResourceOperation:
    """The single WorkflowMetadata implementation, parameterized by a binding.

    Constructed fresh for each invocation; only the statistics object is
    shared across invocations of the same resource type.
    """

    def __init__(self, binding: OperationBinding, statistics: WorkflowStatistics) -> None:
        self._binding = binding
        self._statistics = statistics
        self._response = ResourceInfo(resource_type=binding.resource_type)

    @property
    def binding(self) -> OperationBinding:
        return self._binding

    @property
    def resource_type(self) -> str:
        return self._binding.resource_type

    @property
    def activity_type(self) -> OperationKind:
        return self._binding.kind

    async def do_site_controller_op(
        self, ctx: ActivityContext, client: Any, request: ResourceRequest
    ) -> dict[str, Any]:
        return await client.invoke(self._binding.method, request.payload, metadata=ctx.metadata())

    def response_state(self, status: WorkflowStatus, object_status: ObjectStatus, message: str) -> None:
        self._response.status = status
        self._response.object_status = object_status
        self._response.status_msg = message

    def record_result(self, result: dict[str, Any]) -> None:
        """Mark the response successful and attach the controller's object."""
        self.response_state(WorkflowStatus.SUCCESS, self._binding.success_status, "")
        self._response.resource = result or None

    def response(self) -> ResourceInfo:
        return self._response

    def statistics(self) -> WorkflowStatistics:
        return self._statistics

    def activity_publish(self) -> str:
        return self._binding.publish_workflow
