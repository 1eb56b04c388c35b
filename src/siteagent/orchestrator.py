"""Durable orchestrator for resource operations.

A workflow pairs one activity (the Site Controller call, retried under its
RetryPolicy) with one publish step that delivers the response object to the
cloud. The two outcomes are tracked and returned separately: publishing is
attempted after every activity, successful or not, and a failed publish
never re-runs the activity.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from .errors import invalid_request, wrap_error
from .metrics import SiteAgentMetrics
from .models import ObjectStatus, ResourceRequest, TransactionID, WorkflowOptions, WorkflowStatus
from .protocol import ActivityContext, WorkflowMetadata
from .publisher import Publisher
from .retry import DEFAULT_ACTIVITY_POLICY, DEFAULT_PUBLISH_POLICY, RetryPolicy, execute_with_retry
from .site_client import SiteControllerConnector

logger = logging.getLogger(__name__)

LegacyWorkflow = Callable[[], Awaitable[Any] | Any]


def coerce_request(request: ResourceRequest | dict[str, Any] | None) -> ResourceRequest:
    """Validate raw activity input.

    Raises:
        ActivityError: Non-retryable InvalidRequest for absent, empty or
            malformed input.
    """
    if request is None:
        raise invalid_request()
    if isinstance(request, dict):
        if not request:
            raise invalid_request()
        try:
            request = ResourceRequest.model_validate(request)
        except ValidationError as e:
            raise invalid_request(f"invalid request: {e.errors()[0]['msg']}") from e
    if not request.payload:
        raise invalid_request()
    return request


def request_options(request: ResourceRequest | dict[str, Any] | None) -> WorkflowOptions | None:
    """Options carried on the request itself.

    Raises:
        ValidationError: If a raw request carries malformed options.
    """
    if isinstance(request, ResourceRequest):
        return request.options
    if isinstance(request, dict) and request.get("options"):
        return WorkflowOptions.model_validate(request["options"])
    return None


class Orchestrator:
    """Runs activities against the Site Controller and publishes their results."""

    def __init__(
        self,
        connector: SiteControllerConnector,
        publisher: Publisher,
        *,
        metrics: SiteAgentMetrics | None = None,
        activity_policy: RetryPolicy = DEFAULT_ACTIVITY_POLICY,
        publish_policy: RetryPolicy = DEFAULT_PUBLISH_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._connector = connector
        self._publisher = publisher
        self._metrics = metrics
        self._activity_policy = activity_policy
        self._publish_policy = publish_policy
        self._sleep = sleep
        self._workflows: list[tuple[str, LegacyWorkflow]] = []

    async def do_activity(
        self,
        resource_version: int,
        resource_id: str,
        request: ResourceRequest,
        protocol: WorkflowMetadata,
        *,
        transaction_id: TransactionID | None = None,
        attempt: int = 1,
    ) -> dict[str, Any]:
        """Run the protocol's Site Controller call once through the live client.

        Returns the raw controller response. Errors are categorized with
        ``wrap_error`` before being raised; the caller records the failure
        on the response object.
        """
        stats = protocol.statistics()
        stats.activities_started += 1
        extra = {
            "resource_type": protocol.resource_type,
            "activity": protocol.activity_type.value,
            "resource_id": resource_id,
            "attempt": attempt,
        }
        logger.debug("Starting activity", extra=extra)

        ctx = ActivityContext(
            resource_id=resource_id,
            resource_version=resource_version,
            transaction_id=transaction_id,
            attempt=attempt,
        )
        try:
            client = self._connector.get_client()
            result = await protocol.do_site_controller_op(ctx, client, request)
        except Exception as e:
            self._connector.update_client_state(e)
            stats.activities_failed += 1
            self._record_activity(protocol.resource_type, "failure")
            logger.warning("Activity failed", extra={**extra, "error": str(e)})
            wrapped = wrap_error(e)
            if wrapped is e:
                raise
            raise wrapped from e

        self._connector.update_client_state(None)
        stats.activities_succeeded += 1
        self._record_activity(protocol.resource_type, "success")
        logger.info("Activity succeeded", extra=extra)
        return result

    async def execute_activity(
        self,
        transaction_id: TransactionID,
        request: ResourceRequest | dict[str, Any] | None,
        protocol: WorkflowMetadata,
        *,
        attempt: int = 1,
    ) -> dict[str, Any]:
        """Validate input, run one activity attempt and record the response state.

        Invalid input fails before any RPC with a non-retryable error.
        """
        try:
            validated = coerce_request(request)
            result = await self.do_activity(
                validated.resource_version,
                transaction_id.resource_id,
                validated,
                protocol,
                transaction_id=transaction_id,
                attempt=attempt,
            )
        except Exception as e:
            protocol.response_state(WorkflowStatus.FAILURE, ObjectStatus.UNSPECIFIED, str(e))
            raise

        protocol.record_result(result)
        return result

    async def do_workflow(
        self,
        transaction_id: TransactionID,
        request: ResourceRequest | dict[str, Any] | None,
        protocol: WorkflowMetadata,
        options: WorkflowOptions | None = None,
    ) -> tuple[Exception | None, Exception | None]:
        """Run the activity under its retry policy, then always publish the response.

        Returns:
            ``(activity_error, publish_error)``; either may be None.
        """
        extra = {
            "resource_type": protocol.resource_type,
            "activity": protocol.activity_type.value,
            "resource_id": transaction_id.resource_id,
        }

        activity_error: Exception | None = None
        try:
            policy = self._activity_policy.with_options(options or request_options(request))
        except ValueError as e:
            policy = None
            activity_error = invalid_request(f"Invalid workflow options: {e}")
            protocol.response_state(WorkflowStatus.FAILURE, ObjectStatus.UNSPECIFIED, str(activity_error))

        if policy is not None:
            try:
                await execute_with_retry(
                    lambda attempt: self.execute_activity(transaction_id, request, protocol, attempt=attempt),
                    policy,
                    operation_name="Activity",
                    log_extra=extra,
                    sleep=self._sleep,
                )
            except Exception as e:
                activity_error = e
                # Timed-out attempts are cancelled before they record their own failure
                protocol.response_state(
                    WorkflowStatus.FAILURE, ObjectStatus.UNSPECIFIED, str(e) or type(e).__name__
                )

        publish_error = await self._publish_response(transaction_id, protocol, extra)
        self._set_resource_health(protocol.resource_type)

        if activity_error is None and publish_error is None:
            logger.info("Workflow completed", extra=extra)
        else:
            logger.error(
                "Workflow completed with errors",
                extra={
                    **extra,
                    "activity_error": str(activity_error) if activity_error else None,
                    "publish_error": str(publish_error) if publish_error else None,
                },
            )
        return activity_error, publish_error

    async def _publish_response(
        self, transaction_id: TransactionID, protocol: WorkflowMetadata, extra: dict[str, Any]
    ) -> Exception | None:
        stats = protocol.statistics()
        workflow_name = protocol.activity_publish()
        try:
            await execute_with_retry(
                lambda attempt: self._publisher.publish(workflow_name, transaction_id, protocol.response()),
                self._publish_policy,
                operation_name="Publish",
                log_extra={**extra, "workflow": workflow_name},
                sleep=self._sleep,
            )
        except Exception as e:
            stats.publish_failed += 1
            self._record_publish(protocol.resource_type, "failure")
            return e

        stats.publish_succeeded += 1
        self._record_publish(protocol.resource_type, "success")
        return None

    def add_workflow(self, workflow: LegacyWorkflow, name: str | None = None) -> None:
        """Register a zero-argument workflow entry point for ``invoke``."""
        self._workflows.append((name or getattr(workflow, "__name__", repr(workflow)), workflow))

    async def invoke(self) -> int:
        """Run registered workflows in registration order.

        A failing workflow is logged and does not stop the others.

        Returns:
            Number of workflows that failed.
        """
        failures = 0
        for name, workflow in self._workflows:
            try:
                result = workflow()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                failures += 1
                logger.error("Workflow registration failed", extra={"workflow": name, "error": str(e)})
        return failures

    def _record_activity(self, resource_type: str, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_activity(resource_type, outcome)

    def _record_publish(self, resource_type: str, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_publish(resource_type, outcome)

    def _set_resource_health(self, resource_type: str) -> None:
        if self._metrics is not None:
            self._metrics.set_resource_health(resource_type, self._connector.state.health)
