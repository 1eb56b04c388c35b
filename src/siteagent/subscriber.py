"""Subscribe side: the cloud-to-site request channel.

The cloud requests a resource operation by scheduling an activity named
after the operation's workflow (``CreateVpc``, ``RebootInstance``, ...) on
the site's namespace and task queue. ``SubscribeWorker`` runs a Temporal
worker there with one activity per workflow name. Each activity hands its
arguments to the agent's dispatcher, which runs the Site Controller call
under its retry policy and publishes the result back to the cloud.

The dispatcher has already retried and published by the time an activity
returns, so a failed operation is raised as a non-retryable application
error.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

from temporalio import activity
from temporalio.client import Client
from temporalio.exceptions import ApplicationError
from temporalio.worker import Worker

from .config import TemporalConfig
from .models import ResourceRequest, TransactionID, to_wire
from .protocol import ResourceOperation
from .publisher import connect_temporal_client

logger = logging.getLogger(__name__)

Dispatch = Callable[
    [str, TransactionID | dict[str, Any], ResourceRequest | dict[str, Any] | None],
    Awaitable[tuple[ResourceOperation, Exception | None, Exception | None]],
]
ClientFactory = Callable[[TemporalConfig, str], Awaitable[Any]]


class WorkerRunner(Protocol):
    async def run(self) -> None: ...

    async def shutdown(self) -> None: ...


WorkerFactory = Callable[[Any, str, Sequence[Callable[..., Any]]], WorkerRunner]


def temporal_worker(client: Client, task_queue: str, activities: Sequence[Callable[..., Any]]) -> Worker:
    return Worker(client, task_queue=task_queue, activities=list(activities))


class SubscribeWorker:
    """Receives resource operation requests from the cloud.

    Usage:
        worker = SubscribeWorker(config.temporal, agent.dispatch, agent.workflow_names)
        await worker.start()
        ...
        await worker.close()
    """

    def __init__(
        self,
        config: TemporalConfig,
        dispatch: Dispatch,
        workflow_names: Sequence[str],
        *,
        client_factory: ClientFactory = connect_temporal_client,
        worker_factory: WorkerFactory = temporal_worker,
    ) -> None:
        self._config = config
        self._dispatch = dispatch
        self._client_factory = client_factory
        self._worker_factory = worker_factory
        self._activities: dict[str, Callable[..., Any]] = {
            name: self._build_activity(name) for name in workflow_names
        }
        self._worker: WorkerRunner | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def activity_names(self) -> list[str]:
        return sorted(self._activities)

    def activity(self, workflow_name: str) -> Callable[..., Any]:
        return self._activities[workflow_name]

    def _build_activity(self, workflow_name: str) -> Callable[..., Any]:
        async def run_operation(
            transaction_id: dict[str, Any], request: dict[str, Any] | None = None
        ) -> dict[str, Any]:
            operation, activity_error, publish_error = await self._dispatch(
                workflow_name, transaction_id, request
            )
            if publish_error is not None:
                logger.warning(
                    "Result not delivered to cloud",
                    extra={"workflow": workflow_name, "error": str(publish_error)},
                )
            if activity_error is not None:
                raise ApplicationError(
                    str(activity_error) or type(activity_error).__name__,
                    type=getattr(activity_error, "error_type", None) or type(activity_error).__name__,
                    non_retryable=True,
                )
            return to_wire(operation.response())

        run_operation.__name__ = f"run_{workflow_name}"
        return activity.defn(name=workflow_name)(run_operation)

    async def start(self) -> None:
        """Connect to the subscribe namespace and start polling its task queue.

        Raises:
            Any connection error; the worker is left stopped.
        """
        if self.running:
            return
        client = await self._client_factory(self._config, self._config.subscribe_namespace)
        self._worker = self._worker_factory(client, self._config.subscribe_queue, list(self._activities.values()))
        self._task = asyncio.get_running_loop().create_task(self._run(self._worker), name="subscribe-worker")
        logger.info(
            "Subscribe worker started",
            extra={
                "namespace": self._config.subscribe_namespace,
                "task_queue": self._config.subscribe_queue,
                "activities": len(self._activities),
            },
        )

    async def _run(self, worker: WorkerRunner) -> None:
        try:
            await worker.run()
        except Exception as e:
            logger.error("Subscribe worker stopped unexpectedly", extra={"error": str(e)})
            raise

    async def close(self) -> None:
        """Stop polling and wait for in-flight activities to finish."""
        if self._worker is not None and self.running:
            await self._worker.shutdown()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            logger.info("Subscribe worker stopped")
        self._worker = None
        self._task = None
