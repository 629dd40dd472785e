"""Delayed, ordered, deduplicated publication of streamed output items."""

from __future__ import annotations

import asyncio
from collections import OrderedDict, deque
from collections.abc import Callable, Hashable
from dataclasses import dataclass

from logscout.agent.items import ResponseItem

DEFAULT_ID_CAPACITY = 4096


class BoundedIdSet:
    """Insertion-ordered set that forgets its oldest ids past ``capacity``."""

    def __init__(self, capacity: int = DEFAULT_ID_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._ids: OrderedDict[Hashable, None] = OrderedDict()

    def __contains__(self, item: object) -> bool:
        return item in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, item: Hashable) -> None:
        if item in self._ids:
            self._ids.move_to_end(item)
            return
        self._ids[item] = None
        while len(self._ids) > self._capacity:
            self._ids.popitem(last=False)

    def discard(self, item: Hashable) -> None:
        self._ids.pop(item, None)

    def clear(self) -> None:
        self._ids.clear()


@dataclass(frozen=True)
class _Staged:
    item: ResponseItem
    guard: Callable[[], bool]
    due: float


class StagedItemBuffer:
    """Publishes each staged item after ``delay`` seconds, in staging order.

    An item whose id was already staged is dropped. ``guard`` is checked right
    before publication so items of an abandoned turn are never emitted.
    """

    def __init__(self, publish: Callable[[ResponseItem], None], *, delay: float, seen: BoundedIdSet) -> None:
        self._publish = publish
        self._delay = delay
        self._seen = seen
        self._pending: deque[_Staged] = deque()
        self._pump: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._pending)

    def stage(self, item: ResponseItem, *, guard: Callable[[], bool]) -> bool:
        item_id = item.get("id")
        if item_id:
            if item_id in self._seen:
                return False
            self._seen.add(item_id)

        loop = asyncio.get_running_loop()
        self._pending.append(_Staged(item=item, guard=guard, due=loop.time() + self._delay))
        if self._pump is None or self._pump.done():
            self._pump = loop.create_task(self._drain())
        return True

    async def flush(self) -> None:
        """Wait until everything staged so far has been published or dropped."""
        pump = self._pump
        if pump is not None and not pump.done():
            await asyncio.wait({pump})

    def discard(self) -> None:
        self._pending.clear()
        if self._pump is not None and not self._pump.done():
            self._pump.cancel()
        self._pump = None

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        while self._pending:
            entry = self._pending[0]
            wait = entry.due - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
            if not self._pending or self._pending[0] is not entry:
                continue
            self._pending.popleft()
            if entry.guard():
                self._publish(entry.item)
