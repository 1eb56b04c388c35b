"""Publish channel from the site to the cloud workflow engine.

Results and inventory pages are delivered by starting a cloud-side workflow
on the publish task queue. The workflow id is deterministic so that the
workflow engine deduplicates repeated deliveries.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from pydantic import BaseModel
from temporalio.client import Client, TLSConfig
from temporalio.common import WorkflowIDReusePolicy

from .certs import CertificateReadError
from .config import TemporalConfig
from .errors import PublishError
from .metrics import SiteAgentMetrics
from .models import InventoryMessage, TransactionID, to_wire

logger = logging.getLogger(__name__)


class WorkflowClient(Protocol):
    """Minimal workflow-engine client the publisher depends on."""

    async def start_workflow(
        self, workflow: str, *args: Any, workflow_id: str, task_queue: str
    ) -> str: ...

    async def close(self) -> None: ...


async def connect_temporal_client(config: TemporalConfig, namespace: str) -> Client:
    """Connect to one workflow-engine namespace, with mutual TLS when enabled.

    Raises:
        CertificateReadError: If TLS is enabled and its files cannot be read.
    """
    tls: TLSConfig | bool = False
    if config.enable_tls:
        try:
            tls = TLSConfig(
                server_root_ca_cert=config.ca_cert_path.read_bytes() if config.ca_cert_path else None,
                client_cert=config.client_cert_path.read_bytes() if config.client_cert_path else None,
                client_private_key=config.client_key_path.read_bytes() if config.client_key_path else None,
                domain=config.server_name or None,
            )
        except OSError as e:
            raise CertificateReadError(f"Unable to read workflow engine TLS material: {e}") from e

    logger.info(
        "Connecting to workflow engine",
        extra={"target": config.target, "namespace": namespace, "tls": config.enable_tls},
    )
    return await Client.connect(config.target, namespace=namespace, tls=tls)


class TemporalWorkflowClient:
    """WorkflowClient backed by a Temporal client."""

    def __init__(self, client: Client) -> None:
        self._client: Client | None = client

    @classmethod
    async def connect(cls, config: TemporalConfig) -> TemporalWorkflowClient:
        """Connect to the publish namespace."""
        return cls(await connect_temporal_client(config, config.publish_namespace))

    async def start_workflow(
        self, workflow: str, *args: Any, workflow_id: str, task_queue: str
    ) -> str:
        if self._client is None:
            raise PublishError("Workflow client is closed")
        handle = await self._client.start_workflow(
            workflow,
            args=list(args),
            id=workflow_id,
            task_queue=task_queue,
            id_reuse_policy=WorkflowIDReusePolicy.ALLOW_DUPLICATE,
        )
        return handle.id

    async def close(self) -> None:
        # Temporal clients have no explicit close; dropping the reference releases the connection
        self._client = None


class Publisher:
    """Delivers operation results and inventory pages to the cloud."""

    def __init__(
        self,
        client: WorkflowClient | None,
        *,
        site_id: str,
        publish_queue: str,
        subscribe_namespace: str,
        metrics: SiteAgentMetrics | None = None,
    ) -> None:
        self._client = client
        self.site_id = site_id
        self.publish_queue = publish_queue
        self.subscribe_namespace = subscribe_namespace
        self._metrics = metrics

    @property
    def connected(self) -> bool:
        return self._client is not None

    def set_client(self, client: WorkflowClient) -> WorkflowClient | None:
        """Replace the workflow client, returning the previous one for cleanup."""
        old, self._client = self._client, client
        return old

    async def _start(self, workflow_name: str, workflow_id: str, *args: Any) -> str:
        client = self._client
        if client is None:
            raise PublishError("Publish channel is not connected")
        try:
            return await client.start_workflow(
                workflow_name, *args, workflow_id=workflow_id, task_queue=self.publish_queue
            )
        except PublishError:
            raise
        except Exception as e:
            raise PublishError(f"Failed to start {workflow_name}: {e}") from e

    async def publish(
        self, workflow_name: str, transaction_id: TransactionID, payload: BaseModel
    ) -> str:
        """Publish one operation result. Returns the workflow id."""
        workflow_id = await self._start(
            workflow_name,
            transaction_id.resource_id,
            self.subscribe_namespace,
            to_wire(transaction_id),
            to_wire(payload),
        )
        logger.info(
            "Published result",
            extra={"workflow": workflow_name, "workflow_id": workflow_id},
        )
        return workflow_id

    async def publish_inventory(self, workflow_name: str, message: InventoryMessage) -> str:
        """Publish one inventory page. Returns the workflow id."""
        page = message.inventory_page.current_page if message.inventory_page else 0
        workflow_id = f"inventory-{message.resource_type}-{self.site_id}-{page}"
        try:
            await self._start(workflow_name, workflow_id, self.site_id, to_wire(message))
        except PublishError:
            if self._metrics is not None:
                self._metrics.record_publish(message.resource_type, "failure")
            raise
        if self._metrics is not None:
            self._metrics.record_publish(message.resource_type, "success")
            self._metrics.record_inventory_page(message.resource_type)
        return workflow_id

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
