"""Site agent composition root.

Every component receives the handles it needs through its constructor;
there is no process-wide registry. ``SiteAgent`` builds the graph once:
connector, publisher, subscribe worker, orchestrator, resource managers,
inventory engines and the scheduler that drives them.

Startup steps (publish channel, subscribe worker, one inventory job per
resource) are registered on the orchestrator and run by ``invoke`` at
start, so one failing step is logged without blocking the others.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .certs import CertificateFingerprints, CertificateReadError, CertificateWatcher, compute_fingerprints
from .config import Config, TemporalConfig
from .inventory import InventoryCycleResult, InventorySyncEngine, ManageInventoryConfig
from .metrics import SiteAgentMetrics
from .models import ResourceRequest, TransactionID, WorkflowOptions
from .orchestrator import Orchestrator
from .overrides import Overrides
from .protocol import OperationBinding, ResourceOperation
from .publisher import Publisher, TemporalWorkflowClient, WorkflowClient, connect_temporal_client
from .resources import CATALOGUE, ResourceManager, workflow_table
from .scheduler import InventoryScheduler
from .site_client import DialFunc, SiteControllerConnector, dial_site_controller
from .subscriber import ClientFactory, SubscribeWorker, WorkerFactory, temporal_worker

logger = logging.getLogger(__name__)

WorkflowClientFactory = Callable[[TemporalConfig], Awaitable[WorkflowClient]]


class SiteAgent:
    """Wires and runs every site agent component.

    Usage:
        agent = SiteAgent(Config.from_env())
        await agent.start()
        await agent.run()  # returns after shutdown()
    """

    def __init__(
        self,
        config: Config,
        *,
        metrics: SiteAgentMetrics | None = None,
        overrides: Overrides | None = None,
        workflow_client: WorkflowClient | None = None,
        workflow_client_factory: WorkflowClientFactory = TemporalWorkflowClient.connect,
        subscribe_client_factory: ClientFactory = connect_temporal_client,
        worker_factory: WorkerFactory = temporal_worker,
        dial: DialFunc = dial_site_controller,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.metrics = metrics or SiteAgentMetrics()
        self.overrides = overrides or Overrides()
        self._workflow_client_factory = workflow_client_factory

        self.connector = SiteControllerConnector(config.site_controller, metrics=self.metrics, dial=dial)
        self.publisher = Publisher(
            workflow_client,
            site_id=config.site_id,
            publish_queue=config.temporal.publish_queue,
            subscribe_namespace=config.temporal.subscribe_namespace,
            metrics=self.metrics,
        )
        self.orchestrator = Orchestrator(self.connector, self.publisher, metrics=self.metrics, sleep=sleep)
        self.managers: dict[str, ResourceManager] = {
            definition.name: ResourceManager(definition, self.orchestrator, metrics=self.metrics)
            for definition in CATALOGUE
        }
        self._workflows: dict[str, OperationBinding] = workflow_table()

        site_page_size = self.overrides.inventory.site_page_size or config.inventory.site_page_size
        cloud_page_size = self.overrides.inventory.cloud_page_size or config.inventory.cloud_page_size
        self.engines: dict[str, InventorySyncEngine[str, dict[str, Any]]] = {
            name: manager.inventory_engine(
                ManageInventoryConfig(
                    site_id=config.site_id,
                    resource_type=name,
                    workflow_name=manager.definition.inventory_publish_workflow,
                    connector=self.connector,
                    publisher=self.publisher,
                    site_page_size=site_page_size,
                    cloud_page_size=cloud_page_size,
                )
            )
            for name, manager in self.managers.items()
        }
        self.scheduler = InventoryScheduler(sleep=sleep)
        self.subscriber = SubscribeWorker(
            config.temporal,
            self.dispatch,
            self.workflow_names,
            client_factory=subscribe_client_factory,
            worker_factory=worker_factory,
        )

        self._publish_watcher: CertificateWatcher | None = None
        self._publish_watch_task: asyncio.Task[None] | None = None
        self._shutdown_event = asyncio.Event()
        self._started = False

        self.orchestrator.add_workflow(self._register_publisher, "publisher")
        self.orchestrator.add_workflow(self.subscriber.start, "subscriber")
        for name in self.engines:
            self.orchestrator.add_workflow(self._inventory_registration(name), f"inventory-{name}")

    @property
    def workflow_names(self) -> list[str]:
        return sorted(self._workflows)

    async def start(self) -> None:
        """Connect, start background loops and schedule inventory jobs.

        Connection failures are logged and left to the reload loop and the
        activity retry policies; they do not stop startup.
        """
        if self._started:
            return
        self._started = True
        logger.info("Starting site agent", extra={"site_id": self.config.site_id})

        try:
            await self.connector.create_client()
        except Exception as e:
            logger.error("Site Controller unavailable at startup", extra={"error": str(e)})
        self.connector.start_reload_loop()

        failures = await self.orchestrator.invoke()
        if failures:
            logger.warning("Site agent started with failed registrations", extra={"failures": failures})

        if self.config.metrics_port > 0:
            self.metrics.serve(self.config.metrics_port)

        self.scheduler.start()

    async def connect(self) -> None:
        """Connect both channels, raising on the first failure."""
        await self.connector.create_client()
        if not self.publisher.connected:
            await self._connect_publisher()

    def _inventory_registration(self, resource_type: str) -> Callable[[], None]:
        def register() -> None:
            if not self.overrides.enabled(resource_type):
                logger.info("Inventory disabled by overrides", extra={"resource_type": resource_type})
                return
            self.scheduler.register(
                resource_type,
                self.overrides.schedule_for(resource_type, self.config.temporal.inventory_schedule),
                self.engines[resource_type].collect_and_publish_inventory,
            )

        return register

    async def _register_publisher(self) -> None:
        if self.config.temporal.enable_tls:
            self._start_publish_watcher()
        if not self.publisher.connected:
            await self._connect_publisher()

    async def _connect_publisher(self) -> None:
        client = await self._workflow_client_factory(self.config.temporal)
        old = self.publisher.set_client(client)
        if old is not None:
            await old.close()

    async def _reload_workflow_clients(self) -> None:
        await self._connect_publisher()
        if self.subscriber.running:
            await self.subscriber.close()
            await self.subscriber.start()

    def _publish_fingerprints(self) -> CertificateFingerprints:
        temporal = self.config.temporal
        return compute_fingerprints(temporal.client_cert_path, temporal.client_key_path, temporal.ca_cert_path)

    def _start_publish_watcher(self) -> None:
        try:
            initial = self._publish_fingerprints()
        except CertificateReadError as e:
            logger.warning("Workflow engine certificates unreadable", extra={"error": str(e)})
            return
        self._publish_watcher = CertificateWatcher(
            name="workflow-engine",
            read_fingerprints=self._publish_fingerprints,
            on_change=self._reload_workflow_clients,
            interval_seconds=self.config.site_controller.cert_check_interval_seconds,
        )
        self._publish_watch_task = asyncio.get_running_loop().create_task(
            self._publish_watcher.run(initial)
        )

    async def dispatch(
        self,
        workflow_name: str,
        transaction_id: TransactionID | dict[str, Any],
        request: ResourceRequest | dict[str, Any] | None,
        options: WorkflowOptions | None = None,
    ) -> tuple[ResourceOperation, Exception | None, Exception | None]:
        """Route a subscribe-side workflow to its resource manager.

        Raises:
            KeyError: If ``workflow_name`` is not in the catalogue.
        """
        binding = self._workflows.get(workflow_name)
        if binding is None:
            raise KeyError(f"Unknown workflow: {workflow_name}")
        if isinstance(transaction_id, dict):
            transaction_id = TransactionID.model_validate(transaction_id)

        manager = self.managers[binding.resource_type]
        return await manager.run_workflow(binding.kind, transaction_id, request, options)

    async def run_inventory(self, resource_type: str) -> InventoryCycleResult:
        """Run one inventory cycle outside the schedule."""
        return await self.engines[resource_type].collect_and_publish_inventory()

    def get_state(self) -> list[str]:
        lines = self.connector.get_state()
        lines.append(f"Subscribe Worker: {'running' if self.subscriber.running else 'stopped'}")
        for name, manager in self.managers.items():
            stats = manager.statistics.snapshot()
            lines.append(
                f"{name}: started={stats['activities_started']} "
                f"succeeded={stats['activities_succeeded']} failed={stats['activities_failed']} "
                f"published={stats['publish_succeeded']} publish_failed={stats['publish_failed']}"
            )
        return lines

    async def run(self) -> None:
        """Block until ``shutdown()`` is called, then release resources."""
        await self._shutdown_event.wait()
        await self.close()

    def shutdown(self) -> None:
        """Request graceful shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def close(self) -> None:
        await self.subscriber.close()
        await self.scheduler.stop()
        if self._publish_watcher is not None:
            self._publish_watcher.stop()
        if self._publish_watch_task is not None:
            await asyncio.gather(self._publish_watch_task, return_exceptions=True)
        await self.connector.close()
        await self.publisher.close()
        logger.info("Site agent stopped")
