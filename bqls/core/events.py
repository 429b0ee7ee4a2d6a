"""
In-process notification broker
- diagnostics published per document uri
- totalBytesProcessed notifications after each dry run
- fan-out to any number of subscribers (the SSE stream keeps one queue per client)
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional

from bqls.models.diagnostics import Diagnostic
from bqls.smart_logger import SmartLogger

DIAGNOSTICS_EVENT = "diagnostics"
TOTAL_BYTES_PROCESSED_EVENT = "totalBytesProcessed"


class EventBroker:
    def __init__(self, queue_maxsize: int = 100):
        self._queue_maxsize = queue_maxsize
        self._subscribers: List[asyncio.Queue] = []
        self.latest_diagnostics: Dict[str, List[Diagnostic]] = {}
        self.latest_cost_label: Optional[str] = None

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: str, data: Dict[str, Any]) -> int:
        """Deliver to every subscriber without blocking. Returns the number of deliveries."""
        message = {"event": event, "data": json.dumps(data, default=str)}
        delivered = 0
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                SmartLogger.log(
                    "WARNING",
                    "events.publish.dropped_queue_full",
                    category="events",
                    params={"event": event},
                )
        return delivered

    def publish_diagnostics(self, uri: str, diagnostics: List[Diagnostic]) -> None:
        self.latest_diagnostics[uri] = list(diagnostics)
        self.publish(
            DIAGNOSTICS_EVENT,
            {"uri": uri, "diagnostics": [d.model_dump(mode="json") for d in diagnostics]},
        )

    def notify_total_bytes_processed(self, label: str) -> None:
        self.latest_cost_label = label
        self.publish(TOTAL_BYTES_PROCESSED_EVENT, {"totalBytesProcessed": label})

    def forget(self, uri: str) -> None:
        self.latest_diagnostics.pop(uri, None)
