"""Connectivity health and workflow statistics.

State here is read by the metrics exporter and the status endpoint while
activities update it. The last error is stored as an immutable snapshot
replaced wholesale, so a reader always sees a consistent error/timestamp
pair.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum
from typing import Any


class HealthStatus(IntEnum):
    """Connectivity state of a component, exported as a gauge value."""

    NOT_KNOWN = 0
    HEALTHY = 1
    UNHEALTHY = 2


@dataclass(frozen=True)
class ErrorSnapshot:
    """Last error observed by a component."""

    error: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class ComponentState:
    """Health, call counters and last error for one connection."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._health = HealthStatus.NOT_KNOWN
        self._last_error: ErrorSnapshot | None = None
        self.succeeded = 0
        self.failed = 0
        self.connection_attempts = 0
        self.connection_successes = 0
        self.connected_at: datetime | None = None

    @property
    def health(self) -> HealthStatus:
        return self._health

    def set_health(self, status: HealthStatus) -> None:
        self._health = status

    @property
    def last_error(self) -> ErrorSnapshot | None:
        return self._last_error

    def record_success(self) -> None:
        self.succeeded += 1

    def record_failure(self, err: BaseException | str) -> None:
        self.failed += 1
        self._last_error = ErrorSnapshot(error=str(err))

    def record_connection_attempt(self) -> None:
        self.connection_attempts += 1

    def record_connection_success(self) -> None:
        self.connection_successes += 1
        self.connected_at = datetime.now(UTC)

    def status_lines(self) -> list[str]:
        """Human-readable status, one fact per line."""
        last = self._last_error.error if self._last_error else ""
        return [
            f"{self.name} Connection Attempted: {self.connection_attempts}",
            f"{self.name} Connection Succeeded: {self.connection_successes}",
            f"{self.name} Succeeded: {self.succeeded}",
            f"{self.name} Failed: {self.failed}",
            f"{self.name} Status: {self._health.name}",
            f"{self.name} Last Error: {last}",
        ]


@dataclass
class WorkflowStatistics:
    """Per-resource-type activity and publish counters."""

    resource_type: str
    activities_started: int = 0
    activities_succeeded: int = 0
    activities_failed: int = 0
    publish_succeeded: int = 0
    publish_failed: int = 0

    def snapshot(self) -> dict[str, Any]:
        return {
            "resource_type": self.resource_type,
            "activities_started": self.activities_started,
            "activities_succeeded": self.activities_succeeded,
            "activities_failed": self.activities_failed,
            "publish_succeeded": self.publish_succeeded,
            "publish_failed": self.publish_failed,
        }
