import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, List, Optional


def _consume_exception(task: "asyncio.Future[Any]"):
    if not task.cancelled():
        task.exception()


def _cancel(item: "PendingArrival"):
    if item.task is not None and not item.task.done():
        item.task.cancel()


@dataclass(eq=False)
class PendingArrival:
    storage_ref: Path
    sequence: int
    ready: bool = False
    task: Optional["asyncio.Future[Any]"] = field(default=None, repr=False)


class PendingArrivalQueue:
    """
    Images whose bytes are still being fetched, ordered by arrival sequence.

    The transport tells us about an image before its download has finished, so a
    label command can race ahead of the bytes. Entries are kept sorted by
    sequence and the lowest one is always consumed first, whichever download
    happens to finish first.
    """

    def __init__(self):
        self._items: List[PendingArrival] = []

    def __len__(self) -> int:
        return len(self._items)

    def enqueue(self, storage_ref: Path, sequence: int, fetch: Optional[Awaitable[Any]] = None) -> PendingArrival:
        task = asyncio.ensure_future(fetch) if fetch is not None else None
        if task is not None:
            # failures are reported by whoever awaits the entry
            task.add_done_callback(_consume_exception)
        item = PendingArrival(storage_ref=storage_ref, sequence=sequence, ready=task is None, task=task)
        self._items.append(item)
        self._items.sort(key=lambda x: x.sequence)
        return item

    def peek_sequences(self) -> List[int]:
        return [x.sequence for x in sorted(self._items, key=lambda x: x.sequence)]

    async def dequeue_next(self) -> Optional[PendingArrival]:
        """
        Wait for the earliest-arrived image and hand it over.
        Returns None when nothing is queued or when its download failed.
        """
        if not self._items:
            return None
        self._items.sort(key=lambda x: x.sequence)
        return await self._settle(self._items[0])

    async def take(self, item: PendingArrival) -> Optional[PendingArrival]:
        """Like dequeue_next, but for one specific entry (an image that carried its own label)."""
        if item not in self._items:
            return None
        return await self._settle(item)

    async def _settle(self, item: PendingArrival) -> Optional[PendingArrival]:
        if not item.ready and item.task is not None:
            try:
                await asyncio.shield(item.task)
                item.ready = True
            except asyncio.CancelledError:
                if not item.task.cancelled():
                    raise
                self._remove(item)
                return None
            except Exception:
                self._remove(item)
                return None
        self._remove(item)
        return item

    def discard(self, storage_ref: Path) -> bool:
        for item in list(self._items):
            if item.storage_ref == storage_ref:
                self._items.remove(item)
                _cancel(item)
                return True
        return False

    def clear(self):
        # dropped downloads must not recreate files after the chat folder is gone
        for item in self._items:
            _cancel(item)
        self._items.clear()

    def _remove(self, item: PendingArrival):
        # another consumer (reset, discard) may already have taken it
        if item in self._items:
            self._items.remove(item)
