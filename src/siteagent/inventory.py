"""Generic paginated inventory discovery.

One engine instance per resource type. A cycle enumerates every id from the
Site Controller, fetches the objects in chunks of ``site_page_size``
(sequentially, to bound controller load), splits each chunk into
cloud-sized pages and publishes them as they are produced.

An aborted cycle leaves already-published pages in place; the next
scheduled run corrects them. The engine publishes one FAILED status page
on the way out so the cloud can tell a stale snapshot from a quiet one.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from .metrics import SiteAgentMetrics
from .models import InventoryMessage, InventoryPage, InventoryStatus, to_wire
from .publisher import Publisher
from .site_client import ControllerClient, SiteControllerConnector

logger = logging.getLogger(__name__)

IdT = TypeVar("IdT")
ItemT = TypeVar("ItemT")


@dataclass(frozen=True)
class ManageInventoryConfig:
    """Immutable per-resource inventory settings and handles."""

    site_id: str
    resource_type: str
    workflow_name: str
    connector: SiteControllerConnector
    publisher: Publisher
    site_page_size: int = 100
    cloud_page_size: int = 25

    def __post_init__(self) -> None:
        if self.site_page_size < 1 or self.cloud_page_size < 1:
            raise ValueError("Inventory page sizes must be positive")


@dataclass(frozen=True)
class PagedInventoryInput(Generic[IdT]):
    """Paging facts for one cloud-facing page."""

    current_page: int
    total_pages: int
    page_size: int
    total_items: int
    item_ids: Sequence[IdT]
    is_last: bool


@dataclass
class InventoryCycleResult:
    chunk_fetches: int = 0
    pages_published: int = 0
    published_ids: list[Any] = field(default_factory=list)


FindIds = Callable[[ControllerClient], Awaitable[list[IdT]]]
FindByIds = Callable[[ControllerClient, list[IdT]], Awaitable[list[ItemT]]]
ItemId = Callable[[ItemT], IdT]


def default_item_id(item: Any) -> Any:
    """Read ``id`` from a dict or model item."""
    if isinstance(item, dict):
        return item.get("id")
    return getattr(item, "id", None)


def item_to_wire(item: Any) -> dict[str, Any]:
    if isinstance(item, BaseModel):
        return to_wire(item)
    if isinstance(item, dict):
        return item
    raise TypeError(f"Unsupported inventory item type: {type(item).__name__}")


def count_pages(total_items: int, site_page_size: int, cloud_page_size: int) -> int:
    """Number of cloud pages a cycle over ``total_items`` ids produces."""
    if total_items == 0:
        return 1
    full_chunks, remainder = divmod(total_items, site_page_size)
    pages = full_chunks * math.ceil(site_page_size / cloud_page_size)
    if remainder:
        pages += math.ceil(remainder / cloud_page_size)
    return pages


class InventorySyncEngine(Generic[IdT, ItemT]):
    """Collects one resource type's inventory and publishes it page by page."""

    def __init__(
        self,
        config: ManageInventoryConfig,
        *,
        find_ids: FindIds[IdT],
        find_by_ids: FindByIds[IdT, ItemT],
        item_id: ItemId[ItemT, IdT] = default_item_id,
        paged_inventory: Callable[[Sequence[IdT], Sequence[ItemT], PagedInventoryInput[IdT]], InventoryMessage]
        | None = None,
        metrics: SiteAgentMetrics | None = None,
    ) -> None:
        self.config = config
        self._find_ids = find_ids
        self._find_by_ids = find_by_ids
        self._item_id = item_id
        self._paged_inventory = paged_inventory or self.build_page
        self._metrics = metrics

    @property
    def resource_type(self) -> str:
        return self.config.resource_type

    def build_page(
        self,
        all_ids: Sequence[IdT],
        items: Sequence[ItemT],
        page: PagedInventoryInput[IdT],
    ) -> InventoryMessage:
        """Default page builder: items serialized as-is, ids stringified."""
        return InventoryMessage(
            resource_type=self.config.resource_type,
            site_id=self.config.site_id,
            items=[item_to_wire(item) for item in items],
            timestamp=datetime.now(UTC),
            inventory_status=InventoryStatus.SUCCESS,
            inventory_page=InventoryPage(
                current_page=page.current_page,
                total_pages=page.total_pages,
                page_size=page.page_size,
                total_items=page.total_items,
                item_ids=[str(item_id) for item_id in page.item_ids],
                is_last=page.is_last,
            ),
        )

    async def _call(self, fn: Callable[[ControllerClient], Awaitable[Any]]) -> Any:
        connector = self.config.connector
        try:
            result = await fn(connector.get_client())
        except Exception as e:
            connector.update_client_state(e)
            raise
        connector.update_client_state(None)
        return result

    async def collect_and_publish_inventory(self) -> InventoryCycleResult:
        """Run one discovery cycle.

        Raises:
            Any error from id enumeration, a chunk fetch or a publish, after
            a best-effort FAILED status page has been sent.
        """
        result = InventoryCycleResult()
        extra = {"resource_type": self.resource_type, "site_id": self.config.site_id}
        logger.info("Starting inventory cycle", extra=extra)

        try:
            await self._collect(result)
        except Exception as e:
            logger.error(
                "Inventory cycle aborted",
                extra={**extra, "pages_published": result.pages_published, "error": str(e)},
            )
            self._record_cycle("failure")
            await self._publish_failure(e)
            raise

        self._record_cycle("success")
        logger.info(
            "Inventory cycle complete",
            extra={
                **extra,
                "chunk_fetches": result.chunk_fetches,
                "pages_published": result.pages_published,
                "total_items": len(result.published_ids),
            },
        )
        return result

    async def _collect(self, result: InventoryCycleResult) -> None:
        site_size = self.config.site_page_size
        cloud_size = self.config.cloud_page_size

        ids: list[IdT] = list(await self._call(self._find_ids))
        total_items = len(ids)
        total_pages = count_pages(total_items, site_size, cloud_size)

        if total_items == 0:
            page = PagedInventoryInput(
                current_page=1,
                total_pages=1,
                page_size=cloud_size,
                total_items=0,
                item_ids=[],
                is_last=True,
            )
            await self._publish(self._paged_inventory(ids, [], page), result, [])
            return

        page_number = 0
        for chunk_start in range(0, total_items, site_size):
            chunk = ids[chunk_start:chunk_start + site_size]
            items = await self._call(lambda client: self._find_by_ids(client, chunk))
            # Objects deleted since enumeration are absent from the fetch
            by_id = {self._item_id(item): item for item in items}
            result.chunk_fetches += 1
            logger.debug(
                "Fetched inventory chunk",
                extra={"resource_type": self.resource_type, "chunk": result.chunk_fetches, "size": len(chunk)},
            )

            for page_start in range(0, len(chunk), cloud_size):
                page_number += 1
                page_ids = chunk[page_start:page_start + cloud_size]
                page = PagedInventoryInput(
                    current_page=page_number,
                    total_pages=total_pages,
                    page_size=cloud_size,
                    total_items=total_items,
                    item_ids=page_ids,
                    is_last=page_number == total_pages,
                )
                page_items = [by_id[item_id] for item_id in page_ids if item_id in by_id]
                await self._publish(self._paged_inventory(ids, page_items, page), result, page_ids)

    async def _publish(self, message: InventoryMessage, result: InventoryCycleResult, page_ids: Sequence[IdT]) -> None:
        await self.config.publisher.publish_inventory(self.config.workflow_name, message)
        result.pages_published += 1
        result.published_ids.extend(page_ids)

    async def _publish_failure(self, err: Exception) -> None:
        message = InventoryMessage(
            resource_type=self.config.resource_type,
            site_id=self.config.site_id,
            inventory_status=InventoryStatus.FAILED,
            status_msg=str(err) or type(err).__name__,
        )
        try:
            await self.config.publisher.publish_inventory(self.config.workflow_name, message)
        except Exception as e:
            logger.warning(
                "Failed to publish inventory failure status",
                extra={"resource_type": self.resource_type, "error": str(e)},
            )

    def _record_cycle(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_inventory_cycle(self.resource_type, outcome)
