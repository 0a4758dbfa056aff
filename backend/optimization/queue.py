"""In-process optimization queue feeding one scheduler pass."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger()

QUEUE_REASONS = frozenset(
    {
        "csv_upload",
        "manual",
        "settings_change",
        "data_cleaning",
        "ai",
        "csv_upload_sales_data",
        "csv_upload_data_cleaning",
        "manual_edit_data_cleaning",
    }
)
QUEUE_METHODS = ("ai", "grid")


@dataclass(frozen=True)
class OptimizationQueueItem:
    sku: str
    model_id: str
    reason: str
    method: str = "grid"
    priority: int = 1
    timestamp: float = field(default_factory=time.time)

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.sku, self.model_id, self.method)


class OptimizationQueue:
    """
    De-duplicated on (sku, model, method); the first item for a key wins.

    ``ai`` items are refused while automated search is disabled, and
    dropped from the queue when it becomes disabled.
    """

    def __init__(self, *, ai_enabled: bool = True):
        self.ai_enabled = ai_enabled
        self.paused = False
        self._items: dict[tuple[str, str, str], OptimizationQueueItem] = {}

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self):
        return iter(self.items())

    def items(self) -> list[OptimizationQueueItem]:
        return list(self._items.values())

    def add(self, items: list[OptimizationQueueItem]) -> int:
        added = 0
        for item in items:
            if not item.sku or not item.model_id:
                logger.warning("optimization_queue.invalid_item", sku=item.sku, model_id=item.model_id)
                continue
            if item.method not in QUEUE_METHODS:
                raise ValueError(f"Queue items must use 'ai' or 'grid', got {item.method!r}")
            if item.reason not in QUEUE_REASONS:
                raise ValueError(f"Unknown queue reason: {item.reason!r}")
            if item.method == "ai" and not self.ai_enabled:
                continue
            if item.key in self._items:
                continue
            self._items[item.key] = item
            added += 1
        if added:
            logger.debug("optimization_queue.added", added=added, size=len(self._items))
        return added

    def remove_skus(self, skus: list[str]) -> int:
        targets = set(skus)
        removed = [key for key in self._items if key[0] in targets]
        for key in removed:
            del self._items[key]
        return len(removed)

    def remove_ai_items(self) -> int:
        removed = [key for key, item in self._items.items() if item.method == "ai"]
        for key in removed:
            del self._items[key]
        return len(removed)

    def set_ai_enabled(self, enabled: bool) -> None:
        self.ai_enabled = enabled
        if not enabled:
            dropped = self.remove_ai_items()
            if dropped:
                logger.info("optimization_queue.ai_items_dropped", dropped=dropped)

    def clear(self) -> None:
        self._items.clear()

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    def drain(self) -> list[OptimizationQueueItem]:
        """Remove and return every item: higher priority first, then oldest first."""
        if self.paused:
            return []
        ordered = sorted(self._items.values(), key=lambda item: (-item.priority, item.timestamp))
        self._items.clear()
        return ordered
