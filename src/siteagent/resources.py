"""Resource catalogue and resource managers.

Every resource type the site manages is one ``ResourceDefinition``. From it
the catalogue derives one ``OperationBinding`` per supported operation and
one inventory binding, so the set of (resource, operation) pairs is fixed
at import time.

Controller messages are dictionaries. Enumeration methods return a list of
ids (each id either a string or ``{"value": ...}``) and fetch-by-ids methods
take ``{"ids": [...]}`` and return a list of objects. The lists are read from
``ids`` and ``items`` or, when the controller's message names them after the
resource, from the message's only list field.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, assert_never

from .health import WorkflowStatistics
from .inventory import InventorySyncEngine, ManageInventoryConfig
from .metrics import SiteAgentMetrics
from .models import ResourceRequest, TransactionID, WorkflowOptions
from .orchestrator import Orchestrator
from .protocol import OperationBinding, OperationKind, ResourceOperation, success_object_status
from .site_client import ControllerClient

logger = logging.getLogger(__name__)

CRUD = (OperationKind.CREATE, OperationKind.UPDATE, OperationKind.DELETE)


@dataclass(frozen=True)
class ResourceDefinition:
    """One managed resource type.

    Attributes:
        name: Catalogue key, used in logs, metrics and overrides.
        cloud_name: Name used by the cloud's workflows (``Update<cloud_name>Info``).
        controller_name: Name used by Site Controller methods (``Create<controller_name>``).
        operations: Operations the cloud may request.
        controller_plural: Plural for fetch-by-ids, defaults to ``controller_name + "s"``.
        method_names: Per-operation controller method overrides.
        find_ids_method: Override for the enumeration method.
        find_by_ids_method: Override for the fetch-by-ids method.
        inventory_workflow: Override for the inventory publish workflow.
    """

    name: str
    cloud_name: str
    controller_name: str
    operations: tuple[OperationKind, ...] = CRUD
    controller_plural: str | None = None
    method_names: dict[OperationKind, str] = field(default_factory=dict, hash=False)
    find_ids_method: str | None = None
    find_by_ids_method: str | None = None
    inventory_workflow: str | None = None

    def controller_method(self, kind: OperationKind) -> str:
        if kind in self.method_names:
            return self.method_names[kind]
        match kind:
            case OperationKind.CREATE:
                return f"Create{self.controller_name}"
            case OperationKind.UPDATE:
                return f"Update{self.controller_name}"
            case OperationKind.DELETE:
                return f"Delete{self.controller_name}"
            case OperationKind.REBOOT:
                return f"Reboot{self.controller_name}"
            case _:
                assert_never(kind)

    def publish_workflow(self, kind: OperationKind) -> str:
        if kind is OperationKind.REBOOT:
            return f"Update{self.cloud_name}RebootInfo"
        return f"Update{self.cloud_name}Info"

    def binding(self, kind: OperationKind) -> OperationBinding:
        if kind not in self.operations:
            raise KeyError(f"{self.name} does not support {kind.value}")
        return OperationBinding(
            resource_type=self.name,
            kind=kind,
            method=self.controller_method(kind),
            publish_workflow=self.publish_workflow(kind),
            success_status=success_object_status(kind),
            workflow_name=f"{kind.value.capitalize()}{self.cloud_name}",
        )

    def bindings(self) -> list[OperationBinding]:
        return [self.binding(kind) for kind in self.operations]

    @property
    def ids_method(self) -> str:
        return self.find_ids_method or f"Find{self.controller_name}Ids"

    @property
    def by_ids_method(self) -> str:
        plural = self.controller_plural or f"{self.controller_name}s"
        return self.find_by_ids_method or f"Find{plural}ByIds"

    @property
    def inventory_publish_workflow(self) -> str:
        return self.inventory_workflow or f"Update{self.cloud_name}Inventory"


CATALOGUE: tuple[ResourceDefinition, ...] = (
    ResourceDefinition("vpc", "Vpc", "Vpc"),
    ResourceDefinition("vpc_prefix", "VpcPrefix", "VpcPrefix", controller_plural="VpcPrefixes"),
    ResourceDefinition(
        "subnet",
        "Subnet",
        "NetworkSegment",
        operations=(OperationKind.CREATE, OperationKind.DELETE),
    ),
    ResourceDefinition(
        "instance",
        "Instance",
        "Instance",
        operations=(OperationKind.CREATE, OperationKind.DELETE, OperationKind.REBOOT),
        method_names={
            OperationKind.CREATE: "AllocateInstance",
            OperationKind.DELETE: "ReleaseInstance",
            OperationKind.REBOOT: "InvokeInstancePower",
        },
    ),
    ResourceDefinition(
        "infiniband_partition",
        "InfiniBandPartition",
        "IBPartition",
        operations=(OperationKind.CREATE, OperationKind.DELETE),
    ),
    ResourceDefinition("ssh_key_group", "SSHKeyGroup", "TenantKeyset"),
    ResourceDefinition(
        "tenant",
        "Tenant",
        "Tenant",
        operations=(OperationKind.CREATE, OperationKind.UPDATE),
        find_ids_method="FindTenantOrganizationIds",
        find_by_ids_method="FindTenantsByOrganizationIds",
    ),
    ResourceDefinition("instance_type", "InstanceType", "InstanceType"),
    ResourceDefinition("network_security_group", "NetworkSecurityGroup", "NetworkSecurityGroup"),
    ResourceDefinition("expected_machine", "ExpectedMachine", "ExpectedMachine"),
    ResourceDefinition("sku", "Sku", "Sku", operations=(), find_ids_method="GetAllSkuIds"),
    ResourceDefinition("dpu_extension_service", "DpuExtensionService", "DpuExtensionService"),
    ResourceDefinition("nvlink_logical_partition", "NVLinkLogicalPartition", "NvlinkLogicalPartition"),
    ResourceDefinition("machine", "Machine", "Machine", operations=(OperationKind.UPDATE,)),
    ResourceDefinition("operating_system", "OsImage", "OsImage"),
)


def get_definition(name: str) -> ResourceDefinition:
    for definition in CATALOGUE:
        if definition.name == name:
            return definition
    raise KeyError(f"Unknown resource '{name}'. Valid resources: {resource_names()}")


def resource_names() -> list[str]:
    return [definition.name for definition in CATALOGUE]


def iter_bindings() -> Iterator[OperationBinding]:
    for definition in CATALOGUE:
        yield from definition.bindings()


def workflow_table() -> dict[str, OperationBinding]:
    """Subscribe-side workflow name to binding."""
    table: dict[str, OperationBinding] = {}
    for binding in iter_bindings():
        if binding.workflow_name in table:
            raise ValueError(f"Duplicate workflow name: {binding.workflow_name}")
        table[binding.workflow_name] = binding
    return table


def _normalize_id(raw: Any) -> str:
    if isinstance(raw, dict):
        return str(raw.get("value", ""))
    return str(raw)


def _list_field(response: dict[str, Any], key: str) -> list[Any]:
    """Read ``key``, or the response's only list when the message names it differently."""
    if key in response:
        return list(response[key])
    lists = [value for value in response.values() if isinstance(value, list)]
    return list(lists[0]) if len(lists) == 1 else []


class ResourceManager:
    """Runs one resource type's operations and owns its statistics."""

    def __init__(
        self,
        definition: ResourceDefinition,
        orchestrator: Orchestrator,
        *,
        metrics: SiteAgentMetrics | None = None,
    ) -> None:
        self.definition = definition
        self._orchestrator = orchestrator
        self._metrics = metrics
        self.statistics = WorkflowStatistics(resource_type=definition.name)

    @property
    def name(self) -> str:
        return self.definition.name

    def new_operation(self, kind: OperationKind) -> ResourceOperation:
        return ResourceOperation(self.definition.binding(kind), self.statistics)

    async def run_workflow(
        self,
        kind: OperationKind,
        transaction_id: TransactionID,
        request: ResourceRequest | dict[str, Any] | None,
        options: WorkflowOptions | None = None,
    ) -> tuple[ResourceOperation, Exception | None, Exception | None]:
        """Run the workflow for one operation.

        Returns:
            The operation (its ``response()`` holds what was published), the
            activity error and the publish error.
        """
        operation = self.new_operation(kind)
        activity_error, publish_error = await self._orchestrator.do_workflow(
            transaction_id, request, operation, options
        )
        return operation, activity_error, publish_error

    async def run_activity(
        self,
        kind: OperationKind,
        transaction_id: TransactionID,
        request: ResourceRequest | dict[str, Any] | None,
    ) -> tuple[ResourceOperation, dict[str, Any]]:
        """Run a single activity attempt without publishing.

        Raises:
            ActivityError: InvalidRequest for absent input, or a categorized
                controller error.
        """
        operation = self.new_operation(kind)
        result = await self._orchestrator.execute_activity(transaction_id, request, operation)
        return operation, result

    async def create(self, transaction_id: TransactionID, request: Any, options: WorkflowOptions | None = None):
        return await self.run_workflow(OperationKind.CREATE, transaction_id, request, options)

    async def update(self, transaction_id: TransactionID, request: Any, options: WorkflowOptions | None = None):
        return await self.run_workflow(OperationKind.UPDATE, transaction_id, request, options)

    async def delete(self, transaction_id: TransactionID, request: Any, options: WorkflowOptions | None = None):
        return await self.run_workflow(OperationKind.DELETE, transaction_id, request, options)

    async def reboot(self, transaction_id: TransactionID, request: Any, options: WorkflowOptions | None = None):
        return await self.run_workflow(OperationKind.REBOOT, transaction_id, request, options)

    async def find_ids(self, client: ControllerClient) -> list[str]:
        response = await client.invoke(self.definition.ids_method, {})
        return [_normalize_id(raw) for raw in _list_field(response, "ids")]

    async def find_by_ids(self, client: ControllerClient, ids: list[str]) -> list[dict[str, Any]]:
        response = await client.invoke(self.definition.by_ids_method, {"ids": ids})
        return _list_field(response, "items")

    def inventory_engine(self, config: ManageInventoryConfig) -> InventorySyncEngine[str, dict[str, Any]]:
        return InventorySyncEngine(
            config,
            find_ids=self.find_ids,
            find_by_ids=self.find_by_ids,
            item_id=lambda item: _normalize_id(item.get("id")),
            metrics=self._metrics,
        )
