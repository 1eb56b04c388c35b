"""Site Controller and workflow engine fakes for testing.

This package stands in for the two external collaborators of the agent so
that the orchestrator, connector and inventory engine can be exercised
without a network.

Key Features:
- In-memory Site Controller with per-method responses and error injection
- gRPC errors carrying real status codes
- Dialer that counts client creations and can fail on demand
- Workflow client that records every started workflow
- Subscribe worker and connect function that run without a workflow engine

Usage:
    from site_mock import FakeDialer, FakeSiteController, RecordingWorkflowClient

    controller = FakeSiteController()
    dialer = FakeDialer(controller)
    connector = SiteControllerConnector(config, dial=dialer)
    await connector.create_client()

    assert controller.call_count("CreateVpc") == 1
"""

from .controller import FakeDialer, FakeSiteController, RecordedCall
from .errors import FakeRpcError, rpc_error
from .workflow import FakeWorker, FakeWorkerFactory, RecordingConnector, RecordingWorkflowClient, StartedWorkflow

__all__ = [
    "FakeDialer",
    "FakeRpcError",
    "FakeSiteController",
    "FakeWorker",
    "FakeWorkerFactory",
    "RecordingConnector",
    "RecordedCall",
    "RecordingWorkflowClient",
    "StartedWorkflow",
    "rpc_error",
]
