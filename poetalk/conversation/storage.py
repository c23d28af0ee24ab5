from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from ..errors import NotFoundError, ValidationError
from .models import Conversation

logger = logging.getLogger(__name__)

WRITE_DELAY = 0.5   # seconds; saves to the same id inside this window collapse into one write
CACHE_TTL = 30.0    # seconds a cached record or listing is served without touching disk
READ_BATCH_SIZE = 10

_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


@dataclass
class _PendingWrite:
    conversation: Conversation
    task: Optional[asyncio.Task] = None   # debounce timer
    write: Optional[asyncio.Task] = None  # set once the timer fires


class ConversationStore:
    """One JSON file per conversation, fronted by a read cache and debounced writes.

    All state lives on the instance, so a fresh store starts with empty
    caches. Methods must be called from a single event loop; no locking is
    done.
    """

    def __init__(
        self,
        directory: Path,
        write_delay: float = WRITE_DELAY,
        cache_ttl: float = CACHE_TTL,
        batch_size: int = READ_BATCH_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.directory = Path(directory)
        self.write_delay = write_delay
        self.cache_ttl = cache_ttl
        self.batch_size = max(1, batch_size)
        self._clock = clock
        self._cache: dict[str, tuple[Conversation, float]] = {}
        self._list_cache: Optional[tuple[list[Conversation], float]] = None
        self._pending: dict[str, _PendingWrite] = {}
        self._inflight: dict[str, set[asyncio.Task]] = {}

    # ---- Paths and raw I/O (run in worker threads) ----

    def _path(self, conv_id: str) -> Path:
        if not _ID_PATTERN.match(conv_id or ""):
            raise ValidationError(f"Invalid conversation id: {conv_id!r}")
        return self.directory / f"{conv_id}.json"

    def _ensure_dir(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def _write_record(self, conv: Conversation) -> None:
        self._ensure_dir()
        path = self._path(conv.id)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(conv.to_json(), encoding="utf-8")
        os.replace(tmp, path)

    @staticmethod
    def _read_record(path: Path) -> Conversation:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Conversation.model_validate(data)

    def _scan_ids(self) -> list[str]:
        self._ensure_dir()
        return sorted(p.stem for p in self.directory.glob("*.json"))

    # ---- Cache helpers ----

    def _is_fresh(self, stamp: float) -> bool:
        return self._clock() - stamp < self.cache_ttl

    def _cached(self, conv_id: str) -> Optional[Conversation]:
        entry = self._cache.get(conv_id)
        if entry is not None and self._is_fresh(entry[1]):
            return entry[0]
        pending = self._pending.get(conv_id)
        if pending is not None:
            return pending.conversation
        return None

    def invalidate(self) -> None:
        """Drop every cached record and the cached listing."""
        self._cache.clear()
        self._list_cache = None

    # ---- Debounced writes ----

    def _running(self, conv_id: str) -> list[asyncio.Task]:
        return [t for t in self._inflight.get(conv_id, ()) if not t.done()]

    def _write_done(self, conv_id: str, task: asyncio.Task) -> None:
        running = self._inflight.get(conv_id)
        if running is not None:
            running.discard(task)
            if not running:
                del self._inflight[conv_id]

    def _start_write(self, conv: Conversation) -> asyncio.Task:
        """Start writing *conv* after any earlier write of the same record.

        Started writes are tracked per id and never cancelled, so ``delete``
        and ``flush`` can wait for them.
        """
        task = asyncio.create_task(self._write(conv, self._running(conv.id)))
        self._inflight.setdefault(conv.id, set()).add(task)
        task.add_done_callback(partial(self._write_done, conv.id))
        return task

    async def _write(self, conv: Conversation, earlier: list[asyncio.Task]) -> None:
        if earlier:
            await asyncio.gather(*earlier, return_exceptions=True)
        try:
            await asyncio.to_thread(self._write_record, conv)
        except OSError as e:
            # The cache still holds this state for the rest of the process
            logger.error("Failed to save conversation %s: %s", conv.id, e)

    async def _settle(self, conv_id: str) -> None:
        """Wait until no write of *conv_id* is running."""
        running = self._running(conv_id)
        while running:
            await asyncio.gather(*running, return_exceptions=True)
            running = self._running(conv_id)

    async def _delayed_write(self, entry: _PendingWrite) -> None:
        conv_id = entry.conversation.id
        try:
            await asyncio.sleep(self.write_delay)
            entry.write = self._start_write(entry.conversation)
            await asyncio.shield(entry.write)
        finally:
            if self._pending.get(conv_id) is entry:
                del self._pending[conv_id]

    def _cancel_pending(self, conv_id: str) -> Optional[_PendingWrite]:
        """Stop a debounce timer; a write it already started keeps running."""
        entry = self._pending.pop(conv_id, None)
        if entry is not None:
            entry.task.cancel()
        return entry

    @property
    def pending_ids(self) -> set[str]:
        return set(self._pending)

    # ---- Public API ----

    async def save(self, conv: Conversation) -> None:
        """Upsert *conv*.

        The cache is updated before the first suspension point, so a ``load``
        issued right after sees this state. The disk write is debounced by
        ``write_delay``; with ``write_delay <= 0`` it is done inline.
        """
        snapshot = conv.model_copy(deep=True)
        self._path(snapshot.id)
        self._cache[snapshot.id] = (snapshot, self._clock())
        self._list_cache = None

        self._cancel_pending(snapshot.id)
        if self.write_delay <= 0:
            await asyncio.shield(self._start_write(snapshot))
            return

        entry = _PendingWrite(conversation=snapshot)
        entry.task = asyncio.create_task(self._delayed_write(entry))
        self._pending[snapshot.id] = entry

    async def load(self, conv_id: str) -> Optional[Conversation]:
        """Return the conversation, or None when no record exists."""
        path = self._path(conv_id)
        cached = self._cached(conv_id)
        if cached is not None:
            return cached

        try:
            conv = await asyncio.to_thread(self._read_record, path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.error("Failed to load conversation %s: %s", conv_id, e)
            return None

        self._cache[conv_id] = (conv, self._clock())
        return conv

    async def list(self) -> list[Conversation]:
        """All conversations, most recently updated first.

        Unreadable or malformed records are skipped.
        """
        if self._list_cache is not None and self._is_fresh(self._list_cache[1]):
            return list(self._list_cache[0])

        try:
            ids = await asyncio.to_thread(self._scan_ids)
        except OSError as e:
            logger.error("Failed to list conversations: %s", e)
            return []
        # Saved but not yet flushed to disk
        ids = sorted(set(ids) | set(self._pending))

        conversations: list[Conversation] = []
        to_read: list[str] = []
        for conv_id in ids:
            cached = self._cached(conv_id)
            if cached is not None:
                conversations.append(cached)
            else:
                to_read.append(conv_id)

        for start in range(0, len(to_read), self.batch_size):
            batch = to_read[start:start + self.batch_size]
            results = await asyncio.gather(
                *(
                    asyncio.to_thread(self._read_record, self.directory / f"{conv_id}.json")
                    for conv_id in batch
                ),
                return_exceptions=True,
            )
            now = self._clock()
            for conv_id, result in zip(batch, results):
                if isinstance(result, Exception):
                    logger.warning("Skipping unreadable conversation %s: %s", conv_id, result)
                    continue
                self._cache[conv_id] = (result, now)
                conversations.append(result)

        conversations.sort(key=lambda c: c.updated_at, reverse=True)
        self._list_cache = (conversations, self._clock())
        return list(conversations)

    async def delete(self, conv_id: str) -> None:
        """Remove the record and forget it everywhere.

        Raises NotFoundError when there was nothing to delete; other OS
        errors propagate unchanged.
        """
        path = self._path(conv_id)
        self._cache.pop(conv_id, None)
        self._list_cache = None

        entry = self._cancel_pending(conv_id)
        # A write that already started would recreate the file after unlink
        await self._settle(conv_id)

        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError as e:
            if entry is not None:
                # Saved but never written: dropping the pending write deleted it
                return
            logger.error("Failed to delete conversation %s: not found", conv_id)
            raise NotFoundError(
                f"Conversation {conv_id} not found", details={"id": conv_id}
            ) from e
        except OSError as e:
            logger.error("Failed to delete conversation %s: %s", conv_id, e)
            raise

    async def flush(self) -> None:
        """Write every pending record now instead of waiting for its timer."""
        entries = list(self._pending.values())
        self._pending.clear()
        for entry in entries:
            entry.task.cancel()
            if entry.write is None:
                entry.write = self._start_write(entry.conversation)
        for conv_id in list(self._inflight):
            await self._settle(conv_id)
