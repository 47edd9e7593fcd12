import asyncio
import logging

logger = logging.getLogger(__name__)


class RecordEventBus:
    """Simple in-memory pub/sub for broadcasting record store changes."""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
        self._global_subscribers: set[asyncio.Queue] = set()
        # queue -> accepted event types; absent means every type
        self._event_types: dict[asyncio.Queue, frozenset[str]] = {}

    def subscribe_all(self) -> asyncio.Queue:
        """Subscribe to changes on every table. Returns a queue to await events from."""
        queue: asyncio.Queue = asyncio.Queue()
        self._global_subscribers.add(queue)
        return queue

    def unsubscribe_all(self, queue: asyncio.Queue) -> None:
        self._global_subscribers.discard(queue)

    def subscribe(
        self,
        tables: list[str] | tuple[str, ...],
        event_types: list[str] | tuple[str, ...] | None = None,
    ) -> asyncio.Queue:
        """Subscribe one queue to changes on the given tables, optionally only some event types."""
        queue: asyncio.Queue = asyncio.Queue()
        for table in tables:
            self._subscribers.setdefault(table, set()).add(queue)
        if event_types:
            self._event_types[queue] = frozenset(event_types)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        for table in list(self._subscribers):
            self._subscribers[table].discard(queue)
            if not self._subscribers[table]:
                del self._subscribers[table]
        self._event_types.pop(queue, None)

    def subscriber_count(self) -> int:
        queues = set(self._global_subscribers)
        for subscribed in self._subscribers.values():
            queues |= subscribed
        return len(queues)

    async def publish(self, table: str, event: dict) -> None:
        """Publish a change event for a table to all subscribers."""
        event["table"] = table
        event_type = event.get("event_type")

        for queue in self._subscribers.get(table, set()):
            accepted = self._event_types.get(queue)
            if accepted is not None and event_type not in accepted:
                continue
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event queue full for %s subscriber", table)

        for queue in self._global_subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Global event queue full")


event_bus = RecordEventBus()
