"""Decides, once per request, whether a captured response must be saved.

    CAPTURING -> EVALUATING -> SKIPPED
                            -> PENDING_CONFIRMATION -> CONFIRMED
                                                    -> SAVED

A capture is save-worthy when it finished without error, produced text, has
a destination (chat context and directories) and is not the host
application's connectivity probe. Save-worthy captures wait out the
confirmation window; if the client does not confirm receipt in time the
chat store receives exactly one append.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from ..types import (
    Capture,
    ChatContext,
    ChatMessage,
    PendingSaveEntry,
    ReconcileState,
    SaveResult,
    UserDirectories,
)
from .pending import PendingSaveRegistry

logger = logging.getLogger(__name__)

DEFAULT_CONFIRM_WINDOW_S = 5.0
TEST_MESSAGE_CONTENT = "Hi"


class ChatAppender(Protocol):
    def append(
        self,
        directories: UserDirectories,
        context: ChatContext,
        message: ChatMessage,
    ) -> SaveResult: ...


def is_test_message(body: dict) -> bool:
    """True for the host's "send test message" probe: a single user "Hi"."""
    messages = body.get("messages")
    if not isinstance(messages, list) or len(messages) != 1:
        return False
    first = messages[0]
    return (
        isinstance(first, dict)
        and first.get("role") == "user"
        and first.get("content") == TEST_MESSAGE_CONTENT
    )


class Reconciler:
    """Owns the confirm-vs-timeout race for every save-worthy capture."""

    def __init__(
        self,
        chat_store: ChatAppender,
        registry: PendingSaveRegistry | None = None,
        window_s: float = DEFAULT_CONFIRM_WINDOW_S,
    ) -> None:
        self.chat_store = chat_store
        self.registry = registry if registry is not None else PendingSaveRegistry()
        self.window_s = window_s

    def evaluate(self, capture: Capture) -> ReconcileState:
        skip_reasons = []
        if capture.has_error:
            skip_reasons.append("capture failed")
        if not capture.text:
            skip_reasons.append("no content")
        if capture.chat_context is None:
            skip_reasons.append("no chat context")
        if capture.directories is None:
            skip_reasons.append("no user directories")
        if capture.is_test:
            skip_reasons.append("test message")

        if skip_reasons:
            logger.info(
                "Skipping save for %s: %s", capture.request_id, ", ".join(skip_reasons),
            )
            return ReconcileState.SKIPPED
        return ReconcileState.PENDING_CONFIRMATION

    def reconcile(self, capture: Capture) -> ReconcileState:
        """Evaluate *capture* and register a pending save when it qualifies."""
        state = self.evaluate(capture)
        if state is ReconcileState.PENDING_CONFIRMATION:
            self.schedule_save(PendingSaveEntry.from_capture(capture))
        return state

    def schedule_save(self, entry: PendingSaveEntry) -> None:
        self.registry.register(entry, self.window_s, self._on_expire)
        logger.info(
            "Save for %s pending, waiting %.1fs for confirmation",
            entry.request_id, self.window_s,
        )

    def confirm(self, request_id: str | None = None) -> str | None:
        """Cancel a pending save because the client received the response.

        Without *request_id* the most recent registration is cancelled.
        Returns the id that was cancelled, or None when nothing matched.
        """
        if request_id:
            entry = self.registry.cancel(request_id)
        else:
            entry = self.registry.cancel_latest()
        if entry is None:
            logger.debug("Confirmation for %s matched no pending save", request_id or "latest")
            return None
        logger.info("Client confirmed %s, pending save cancelled", entry.request_id)
        return entry.request_id

    async def _on_expire(self, entry: PendingSaveEntry) -> None:
        logger.info("No confirmation for %s, saving to chat", entry.request_id)
        await self.save(entry)

    async def save(self, entry: PendingSaveEntry) -> SaveResult:
        """Append *entry* to its transcript. Failures are logged, never raised."""
        message = ChatMessage(
            content=entry.captured_text,
            model_name=entry.model_name,
            api_name="custom",
            gen_started=entry.gen_started,
            gen_finished=entry.gen_finished,
        )
        try:
            result = await asyncio.to_thread(
                self.chat_store.append, entry.directories, entry.chat_context, message,
            )
        except Exception as e:
            logger.exception("Saving %s to chat raised", entry.request_id)
            return SaveResult(success=False, error=str(e))

        name = entry.chat_context.character_name or "unknown"
        if result.success:
            logger.info("Saved %s: %s -> %s", entry.request_id, name, result.chat_file_path)
        else:
            logger.error("Save failed for %s (%s): %s", entry.request_id, name, result.error)
        return result

    async def shutdown(self) -> int:
        """Save every still-pending entry now; returns how many were flushed."""
        entries = self.registry.pop_all()
        for entry in entries:
            await self.save(entry)
        if entries:
            logger.info("Flushed %d pending save(s) on shutdown", len(entries))
        return len(entries)
