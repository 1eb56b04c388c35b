"""Tests for the resource catalogue and resource managers."""

import pytest
import pytest_asyncio
from site_mock import FakeDialer, FakeSiteController, RecordingWorkflowClient

from conftest import SITE_ID
from siteagent.errors import ERR_TYPE_INVALID_REQUEST, ActivityError
from siteagent.models import ObjectStatus, TransactionID, WorkflowStatus
from siteagent.orchestrator import Orchestrator
from siteagent.protocol import OperationKind
from siteagent.publisher import Publisher
from siteagent.resources import (
    CATALOGUE,
    ResourceManager,
    get_definition,
    iter_bindings,
    resource_names,
    workflow_table,
)
from siteagent.site_client import SiteControllerConnector


class TestCatalogue:
    """Tests for the static resource catalogue."""

    def test_every_resource_present(self) -> None:
        """Test that all managed resource types are catalogued once."""
        names = resource_names()

        assert len(names) == 15
        assert len(set(names)) == 15
        assert {"vpc", "instance", "infiniband_partition", "sku", "operating_system"} <= set(names)

    def test_workflow_table_is_unique(self) -> None:
        """Test that every subscribe-side workflow name maps to one binding."""
        table = workflow_table()

        assert len(table) == len(list(iter_bindings()))
        assert table["CreateVpc"].method == "CreateVpc"
        assert table["CreateInfiniBandPartition"].method == "CreateIBPartition"
        assert table["DeleteSubnet"].method == "DeleteNetworkSegment"

    def test_instance_methods(self) -> None:
        """Test per-operation controller method overrides."""
        instance = get_definition("instance")

        assert instance.binding(OperationKind.CREATE).method == "AllocateInstance"
        assert instance.binding(OperationKind.DELETE).method == "ReleaseInstance"
        reboot = instance.binding(OperationKind.REBOOT)
        assert reboot.method == "InvokeInstancePower"
        assert reboot.publish_workflow == "UpdateInstanceRebootInfo"
        assert reboot.success_status == ObjectStatus.IN_PROGRESS

    def test_success_status_per_kind(self) -> None:
        """Test the object status recorded for each successful operation."""
        vpc = get_definition("vpc")

        assert vpc.binding(OperationKind.CREATE).success_status == ObjectStatus.CREATED
        assert vpc.binding(OperationKind.UPDATE).success_status == ObjectStatus.UPDATED
        assert vpc.binding(OperationKind.DELETE).success_status == ObjectStatus.DELETED

    def test_unsupported_operation(self) -> None:
        """Test that an operation outside a resource's set raises KeyError."""
        with pytest.raises(KeyError):
            get_definition("subnet").binding(OperationKind.UPDATE)

    def test_inventory_methods(self) -> None:
        """Test enumeration and fetch method names, including overrides."""
        assert get_definition("vpc").ids_method == "FindVpcIds"
        assert get_definition("vpc").by_ids_method == "FindVpcsByIds"
        assert get_definition("vpc_prefix").by_ids_method == "FindVpcPrefixesByIds"
        assert get_definition("sku").ids_method == "GetAllSkuIds"
        assert get_definition("tenant").by_ids_method == "FindTenantsByOrganizationIds"
        assert get_definition("sku").inventory_publish_workflow == "UpdateSkuInventory"

    def test_inventory_only_resource(self) -> None:
        """Test that a resource with no operations contributes no workflows."""
        assert get_definition("sku").bindings() == []

    def test_unknown_resource(self) -> None:
        """Test that an unknown name lists the valid ones."""
        with pytest.raises(KeyError, match="Valid resources"):
            get_definition("gpu")

    def test_definitions_are_hashable(self) -> None:
        """Test that definitions can be used as keys."""
        assert len({definition: True for definition in CATALOGUE}) == 15


class Harness:
    def __init__(self, site_controller_config) -> None:
        self.controller = FakeSiteController()
        self.workflows = RecordingWorkflowClient()
        self.connector = SiteControllerConnector(site_controller_config, dial=FakeDialer(self.controller))
        publisher = Publisher(
            self.workflows, site_id=SITE_ID, publish_queue="cloud-queue", subscribe_namespace=SITE_ID
        )
        self.orchestrator = Orchestrator(self.connector, publisher)

    def manager(self, name: str) -> ResourceManager:
        return ResourceManager(get_definition(name), self.orchestrator)


@pytest_asyncio.fixture
async def harness(site_controller_config):
    h = Harness(site_controller_config)
    await h.connector.create_client()
    yield h
    await h.connector.close()


class TestResourceManager:
    """Tests for ResourceManager."""

    @pytest.mark.asyncio
    async def test_reboot_instance(self, harness: Harness) -> None:
        """Test that reboot calls the power method and reports IN_PROGRESS."""
        manager = harness.manager("instance")

        operation, activity_error, publish_error = await manager.reboot(
            TransactionID(resourceId="inst-1"), {"payload": {"machineId": "m-1"}}
        )

        assert activity_error is None and publish_error is None
        assert harness.controller.call_count("InvokeInstancePower") == 1
        assert operation.response().object_status == ObjectStatus.IN_PROGRESS
        assert harness.workflows.workflows_named("UpdateInstanceRebootInfo")

    @pytest.mark.asyncio
    async def test_statistics_shared_across_invocations(self, harness: Harness) -> None:
        """Test that every invocation updates the resource's counters."""
        manager = harness.manager("vpc")
        tx = TransactionID(resourceId="vpc-1")

        await manager.create(tx, {"payload": {"name": "a"}})
        await manager.update(tx, {"payload": {"name": "b"}})

        assert manager.statistics.activities_succeeded == 2
        assert manager.statistics.publish_succeeded == 2

    @pytest.mark.asyncio
    async def test_run_activity_invalid_request(self, harness: Harness) -> None:
        """Test that a single activity rejects absent input before any RPC."""
        manager = harness.manager("infiniband_partition")

        with pytest.raises(ActivityError) as exc_info:
            await manager.run_activity(OperationKind.CREATE, TransactionID(resourceId="ibp-1"), None)

        assert exc_info.value.error_type == ERR_TYPE_INVALID_REQUEST
        assert harness.controller.calls == []

    @pytest.mark.asyncio
    async def test_run_activity_success(self, harness: Harness) -> None:
        """Test a single activity attempt without publishing."""
        manager = harness.manager("vpc")

        operation, result = await manager.run_activity(
            OperationKind.DELETE, TransactionID(resourceId="vpc-1"), {"payload": {"id": "vpc-1"}}
        )

        assert result == {"id": "vpc-1"}
        assert operation.response().status == WorkflowStatus.SUCCESS
        assert harness.workflows.started == []

    @pytest.mark.asyncio
    async def test_find_ids_normalizes(self, harness: Harness) -> None:
        """Test that ids wrapped as {"value": ...} are unwrapped."""
        harness.controller.set_response("FindVpcIds", {"ids": ["a", {"value": "b"}]})

        ids = await harness.manager("vpc").find_ids(harness.controller)

        assert ids == ["a", "b"]

    @pytest.mark.asyncio
    async def test_find_by_ids(self, harness: Harness) -> None:
        """Test that fetch-by-ids sends the requested ids."""
        harness.controller.set_inventory(["a", "b", "c"])

        items = await harness.manager("vpc").find_by_ids(harness.controller, ["a", "c"])

        assert items == [{"id": "a"}, {"id": "c"}]
        assert harness.controller.calls_to("FindVpcsByIds")[0].request == {"ids": ["a", "c"]}

    @pytest.mark.asyncio
    async def test_resource_named_lists(self, harness: Harness) -> None:
        """Test lists named after the resource, as protobuf responses carry them."""
        harness.controller.set_response("FindVpcIds", {"vpcIds": [{"value": "a"}, {"value": "b"}]})
        harness.controller.set_response("FindVpcsByIds", {"vpcs": [{"id": {"value": "a"}, "name": "one"}]})
        manager = harness.manager("vpc")

        ids = await manager.find_ids(harness.controller)
        items = await manager.find_by_ids(harness.controller, ids)

        assert ids == ["a", "b"]
        assert items == [{"id": {"value": "a"}, "name": "one"}]
