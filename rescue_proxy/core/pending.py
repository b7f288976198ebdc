"""In-memory table of captured-but-unconfirmed responses.

Each entry owns one asyncio task that sleeps out the confirmation window.
All mutations are synchronous, so on a single event loop no lock is needed:
the expiry task removes its entry as the first thing it does after waking,
before any I/O, which turns a cancel that arrives afterwards into a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from ..types import PendingSaveEntry

logger = logging.getLogger(__name__)

ExpireCallback = Callable[[PendingSaveEntry], Awaitable[None]]


class PendingSaveRegistry:
    """Insertion-ordered ``request_id -> PendingSaveEntry`` map with deadlines."""

    def __init__(self) -> None:
        self._entries: dict[str, PendingSaveEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def request_ids(self) -> list[str]:
        """Pending ids, oldest registration first."""
        return list(self._entries)

    def get(self, request_id: str) -> PendingSaveEntry | None:
        return self._entries.get(request_id)

    def register(
        self,
        entry: PendingSaveEntry,
        window_s: float,
        on_expire: ExpireCallback,
    ) -> None:
        """Install *entry* with a fresh deadline.

        An existing entry under the same id is cancelled first; the new entry
        becomes the most recent registration.
        """
        previous = self._entries.pop(entry.request_id, None)
        if previous is not None:
            previous.cancel()
            logger.info("Replaced pending save %s", entry.request_id)
        entry.deadline = asyncio.get_running_loop().create_task(
            self._expire_after(entry, window_s, on_expire),
            name=f"pending-save-{entry.request_id}",
        )
        self._entries[entry.request_id] = entry

    async def _expire_after(
        self,
        entry: PendingSaveEntry,
        window_s: float,
        on_expire: ExpireCallback,
    ) -> None:
        await asyncio.sleep(window_s)
        if self._entries.get(entry.request_id) is not entry:
            return
        del self._entries[entry.request_id]
        entry.deadline = None
        try:
            await on_expire(entry)
        except Exception:
            logger.exception("Pending save %s failed", entry.request_id)

    def cancel(self, request_id: str) -> PendingSaveEntry | None:
        entry = self._entries.pop(request_id, None)
        if entry is not None:
            entry.cancel()
        return entry

    def cancel_latest(self) -> PendingSaveEntry | None:
        """Cancel the most recently registered entry."""
        if not self._entries:
            return None
        return self.cancel(next(reversed(self._entries)))

    def pop_all(self) -> list[PendingSaveEntry]:
        """Remove every entry, cancelling deadlines, oldest first."""
        entries = list(self._entries.values())
        self._entries.clear()
        for entry in entries:
            entry.cancel()
        return entries
