"""Tests for rescue_proxy.core.reconciler."""

from __future__ import annotations

import asyncio

import pytest

from conftest import RecordingChatStore
from rescue_proxy.core.reconciler import Reconciler, is_test_message
from rescue_proxy.types import Capture, PendingSaveEntry, ReconcileState, SaveResult

WINDOW = 0.05


@pytest.fixture
def capture(chat_context, directories) -> Capture:
    return Capture(
        request_id="req-1",
        model_name="gpt-4o",
        gen_started="2024-05-01T12:00:00+00:00",
        gen_finished="2024-05-01T12:00:05+00:00",
        text="Hello world",
        chat_context=chat_context,
        directories=directories,
    )


# ---------------------------------------------------------------------------
# is_test_message
# ---------------------------------------------------------------------------


class TestIsTestMessage:
    def test_single_user_hi(self):
        assert is_test_message({"messages": [{"role": "user", "content": "Hi"}]})

    def test_other_content(self):
        assert not is_test_message({"messages": [{"role": "user", "content": "Hi!"}]})

    def test_two_messages(self):
        assert not is_test_message({"messages": [
            {"role": "system", "content": "You are helpful"},
            {"role": "user", "content": "Hi"},
        ]})

    def test_assistant_role(self):
        assert not is_test_message({"messages": [{"role": "assistant", "content": "Hi"}]})

    def test_missing_or_bad_messages(self):
        assert not is_test_message({})
        assert not is_test_message({"messages": "Hi"})
        assert not is_test_message({"messages": ["Hi"]})


# ---------------------------------------------------------------------------
# evaluate
# ---------------------------------------------------------------------------


class TestEvaluate:
    def test_save_worthy(self, capture, chat_store):
        assert Reconciler(chat_store).evaluate(capture) is ReconcileState.PENDING_CONFIRMATION

    @pytest.mark.parametrize("change, reason", [
        ({"has_error": True}, "capture failed"),
        ({"text": ""}, "no content"),
        ({"chat_context": None}, "no chat context"),
        ({"directories": None}, "no user directories"),
        ({"is_test": True}, "test message"),
    ])
    def test_skip_reasons(self, capture, chat_store, caplog, change, reason):
        for key, value in change.items():
            setattr(capture, key, value)
        caplog.set_level("INFO", logger="rescue_proxy.core.reconciler")

        assert Reconciler(chat_store).evaluate(capture) is ReconcileState.SKIPPED
        assert reason in caplog.text

    def test_all_reasons_are_reported(self, capture, chat_store, caplog):
        capture.has_error = True
        capture.text = ""
        caplog.set_level("INFO", logger="rescue_proxy.core.reconciler")

        Reconciler(chat_store).evaluate(capture)
        assert "capture failed, no content" in caplog.text


# ---------------------------------------------------------------------------
# reconcile / confirm / expiry
# ---------------------------------------------------------------------------


class TestReconcile:
    @pytest.mark.asyncio
    async def test_unconfirmed_capture_is_saved_once(self, capture, chat_store, chat_context):
        reconciler = Reconciler(chat_store, window_s=WINDOW)
        assert reconciler.reconcile(capture) is ReconcileState.PENDING_CONFIRMATION
        assert chat_store.appends == []

        await asyncio.sleep(WINDOW * 4)

        assert chat_store.texts == ["Hello world"]
        _, context, message = chat_store.appends[0]
        assert context is chat_context
        assert message.model_name == "gpt-4o"
        assert message.api_name == "custom"
        assert message.gen_started == "2024-05-01T12:00:00+00:00"
        assert message.gen_finished == "2024-05-01T12:00:05+00:00"
        assert len(reconciler.registry) == 0

    @pytest.mark.asyncio
    async def test_confirmed_capture_is_never_saved(self, capture, chat_store):
        reconciler = Reconciler(chat_store, window_s=WINDOW)
        reconciler.reconcile(capture)

        assert reconciler.confirm() == "req-1"
        await asyncio.sleep(WINDOW * 4)
        assert chat_store.appends == []

    @pytest.mark.asyncio
    async def test_skipped_capture_registers_nothing(self, capture, chat_store):
        capture.is_test = True
        reconciler = Reconciler(chat_store, window_s=WINDOW)

        assert reconciler.reconcile(capture) is ReconcileState.SKIPPED
        assert len(reconciler.registry) == 0
        await asyncio.sleep(WINDOW * 2)
        assert chat_store.appends == []

    @pytest.mark.asyncio
    async def test_confirm_by_id_leaves_others_pending(self, capture, chat_store):
        reconciler = Reconciler(chat_store, window_s=WINDOW)
        reconciler.reconcile(capture)
        capture.request_id = "req-2"
        capture.text = "second"
        reconciler.reconcile(capture)

        assert reconciler.confirm("req-1") == "req-1"
        await asyncio.sleep(WINDOW * 4)
        assert chat_store.texts == ["second"]

    @pytest.mark.asyncio
    async def test_confirm_without_id_takes_most_recent(self, capture, chat_store):
        reconciler = Reconciler(chat_store, window_s=WINDOW)
        reconciler.reconcile(capture)
        capture.request_id = "req-2"
        capture.text = "second"
        reconciler.reconcile(capture)

        assert reconciler.confirm() == "req-2"
        await asyncio.sleep(WINDOW * 4)
        assert chat_store.texts == ["Hello world"]

    @pytest.mark.asyncio
    async def test_confirm_with_nothing_pending(self, chat_store):
        reconciler = Reconciler(chat_store, window_s=WINDOW)
        assert reconciler.confirm() is None
        assert reconciler.confirm("req-unknown") is None

    @pytest.mark.asyncio
    async def test_late_confirm_after_save_is_noop(self, capture, chat_store):
        reconciler = Reconciler(chat_store, window_s=WINDOW)
        reconciler.reconcile(capture)
        await asyncio.sleep(WINDOW * 4)

        assert reconciler.confirm("req-1") is None
        assert chat_store.texts == ["Hello world"]

    @pytest.mark.asyncio
    async def test_save_failure_is_logged_not_retried(self, capture, caplog):
        store = RecordingChatStore(result=SaveResult(success=False, error="Chat file is empty"))
        reconciler = Reconciler(store, window_s=WINDOW)
        reconciler.reconcile(capture)
        await asyncio.sleep(WINDOW * 6)

        assert len(store.appends) == 1
        assert "Save failed for req-1" in caplog.text
        assert "Chat file is empty" in caplog.text

    @pytest.mark.asyncio
    async def test_raising_store_does_not_escape(self, capture, caplog):
        store = RecordingChatStore(error=OSError("read-only filesystem"))
        reconciler = Reconciler(store, window_s=WINDOW)

        result = await reconciler.save(PendingSaveEntry.from_capture(capture))
        assert not result.success
        assert "read-only filesystem" in result.error
        assert "Saving req-1 to chat raised" in caplog.text


class TestShutdown:
    @pytest.mark.asyncio
    async def test_flushes_pending_saves(self, capture, chat_store):
        reconciler = Reconciler(chat_store, window_s=10)
        reconciler.reconcile(capture)
        capture.request_id = "req-2"
        capture.text = "second"
        reconciler.reconcile(capture)

        assert await reconciler.shutdown() == 2
        assert chat_store.texts == ["Hello world", "second"]
        assert len(reconciler.registry) == 0

    @pytest.mark.asyncio
    async def test_nothing_pending(self, chat_store):
        assert await Reconciler(chat_store).shutdown() == 0
        assert chat_store.appends == []
