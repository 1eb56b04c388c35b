"""Tests for the subscribe-side worker."""

from __future__ import annotations

import pytest
from site_mock import FakeWorkerFactory, RecordingConnector
from temporalio.exceptions import ApplicationError

from siteagent.config import TemporalConfig
from siteagent.errors import ERR_TYPE_DENIED, ActivityError
from siteagent.health import WorkflowStatistics
from siteagent.models import ObjectStatus, WorkflowStatus
from siteagent.protocol import OperationBinding, OperationKind, ResourceOperation
from siteagent.subscriber import SubscribeWorker

VPC_CREATE = OperationBinding(
    resource_type="vpc",
    kind=OperationKind.CREATE,
    method="CreateVpc",
    publish_workflow="UpdateVpcInfo",
    success_status=ObjectStatus.CREATED,
    workflow_name="CreateVpc",
)


class RecordingDispatch:
    """Dispatcher returning a prepared outcome and recording its arguments."""

    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.activity_error: Exception | None = None
        self.publish_error: Exception | None = None

    async def __call__(self, workflow_name, transaction_id, request):
        self.calls.append((workflow_name, transaction_id, request))
        operation = ResourceOperation(VPC_CREATE, WorkflowStatistics(resource_type="vpc"))
        if self.activity_error is None:
            operation.record_result({"id": "vpc-1"})
        else:
            operation.response_state(WorkflowStatus.FAILURE, ObjectStatus.UNSPECIFIED, str(self.activity_error))
        return operation, self.activity_error, self.publish_error


class Harness:
    def __init__(self, temporal_config: TemporalConfig) -> None:
        self.dispatch = RecordingDispatch()
        self.connect = RecordingConnector()
        self.workers = FakeWorkerFactory()
        self.subscriber = SubscribeWorker(
            temporal_config,
            self.dispatch,
            ["CreateVpc", "DeleteVpc", "RebootInstance"],
            client_factory=self.connect,
            worker_factory=self.workers,
        )


@pytest.fixture
def harness(temporal_config: TemporalConfig) -> Harness:
    return Harness(temporal_config)


class TestSubscribeWorkerLifecycle:
    """Tests for start() and close()."""

    @pytest.mark.asyncio
    async def test_start_polls_subscribe_queue(self, harness: Harness, temporal_config: TemporalConfig) -> None:
        """Test that the worker runs on the subscribe namespace and queue with every activity."""
        await harness.subscriber.start()

        worker = harness.workers.workers[0]
        assert harness.connect.namespaces == [temporal_config.subscribe_namespace]
        assert worker.task_queue == "site-queue"
        assert len(worker.activities) == 3
        assert harness.subscriber.activity_names == ["CreateVpc", "DeleteVpc", "RebootInstance"]
        assert harness.subscriber.running is True
        await harness.subscriber.close()

    @pytest.mark.asyncio
    async def test_close_shuts_worker_down(self, harness: Harness) -> None:
        """Test that close stops polling and clears the worker."""
        await harness.subscriber.start()
        worker = harness.workers.workers[0]

        await harness.subscriber.close()

        assert worker.ran is True
        assert worker.shut_down is True
        assert harness.subscriber.running is False

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, harness: Harness) -> None:
        """Test that a running worker is not started twice."""
        await harness.subscriber.start()
        await harness.subscriber.start()

        assert len(harness.workers.workers) == 1
        await harness.subscriber.close()

    @pytest.mark.asyncio
    async def test_connect_failure_raises_and_stays_stopped(self, harness: Harness) -> None:
        """Test that an unreachable workflow engine surfaces to the caller."""
        harness.connect.fail_with(ConnectionError("refused"))

        with pytest.raises(ConnectionError):
            await harness.subscriber.start()

        assert harness.workers.workers == []
        assert harness.subscriber.running is False
        await harness.subscriber.close()


class TestSubscribeActivities:
    """Tests for the per-workflow activities."""

    @pytest.mark.asyncio
    async def test_activity_dispatches_and_returns_response(self, harness: Harness) -> None:
        """Test that an activity hands its arguments to the dispatcher."""
        result = await harness.subscriber.activity("CreateVpc")(
            {"resourceId": "vpc-1"}, {"payload": {"name": "v"}}
        )

        assert harness.dispatch.calls == [("CreateVpc", {"resourceId": "vpc-1"}, {"payload": {"name": "v"}})]
        assert result["status"] == WorkflowStatus.SUCCESS.value
        assert result["resource"] == {"id": "vpc-1"}

    @pytest.mark.asyncio
    async def test_failed_operation_is_non_retryable(self, harness: Harness) -> None:
        """Test that a failed operation is raised with its error category."""
        harness.dispatch.activity_error = ActivityError("denied", ERR_TYPE_DENIED, non_retryable=True)

        with pytest.raises(ApplicationError) as exc_info:
            await harness.subscriber.activity("DeleteVpc")({"resourceId": "vpc-1"}, {"payload": {"a": 1}})

        assert exc_info.value.non_retryable is True
        assert exc_info.value.type == ERR_TYPE_DENIED

    @pytest.mark.asyncio
    async def test_publish_failure_still_returns(self, harness: Harness, caplog) -> None:
        """Test that an undelivered result is logged and the response returned."""
        harness.dispatch.publish_error = ConnectionError("cloud unreachable")

        result = await harness.subscriber.activity("CreateVpc")({"resourceId": "vpc-1"})

        assert result["status"] == WorkflowStatus.SUCCESS.value
        assert harness.dispatch.calls[0][2] is None
        assert "Result not delivered to cloud" in caplog.text
