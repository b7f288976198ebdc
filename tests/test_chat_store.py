"""Tests for rescue_proxy.storage.chat_store."""

from __future__ import annotations

import asyncio
import json

import pytest

from rescue_proxy.core.reconciler import Reconciler
from rescue_proxy.storage.chat_store import (
    ChatStore,
    build_message,
    chat_file_path,
    read_chat_file,
)
from rescue_proxy.types import ChatContext, ChatMessage, PendingSaveEntry

HEADER = {"user_name": "User", "character_name": "Seraphina", "create_date": "2024-05-01@12h00m00s"}


@pytest.fixture
def transcript(directories, chat_context):
    path = chat_file_path(directories, chat_context)
    path.parent.mkdir(parents=True)
    lines = [
        HEADER,
        {"name": "User", "is_user": True, "mes": "Tell me a story"},
    ]
    path.write_text("\n".join(json.dumps(line) for line in lines), encoding="utf-8")
    return path


@pytest.fixture
def message() -> ChatMessage:
    return ChatMessage(
        content="Once upon a time",
        model_name="gpt-4o",
        gen_started="2024-05-01T12:00:00+00:00",
        gen_finished="2024-05-01T12:00:05+00:00",
    )


class TestChatFilePath:
    def test_character_chat(self, directories, chat_context):
        assert chat_file_path(directories, chat_context) == (
            directories.chats / "Seraphina" / "Seraphina - 2024-05-01@12h00m00s.jsonl"
        )

    def test_group_chat(self, directories):
        ctx = ChatContext(character_name="Alice", is_group=True, group_id="1714560000000")
        assert chat_file_path(directories, ctx) == directories.group_chats / "1714560000000.jsonl"

    def test_group_flag_without_id_falls_back_to_character(self, directories, chat_context):
        chat_context.is_group = True
        assert chat_file_path(directories, chat_context).parent == directories.chats / "Seraphina"


class TestBuildMessage:
    def test_host_message_shape(self, message):
        entry = build_message("Seraphina", message)
        assert entry["name"] == "Seraphina"
        assert entry["is_user"] is False
        assert entry["mes"] == "Once upon a time"
        assert entry["swipes"] == ["Once upon a time"]
        assert entry["swipe_id"] == 0
        assert entry["send_date"] == "2024-05-01T12:00:05+00:00"
        assert entry["extra"]["api"] == "custom"
        assert entry["extra"]["model"] == "gpt-4o"
        assert entry["swipe_info"][0]["gen_started"] == "2024-05-01T12:00:00+00:00"
        assert entry["swipe_info"][0]["extra"] == entry["extra"]
        assert entry["swipe_info"][0]["extra"] is not entry["extra"]

    def test_missing_timestamps_default_to_now(self):
        entry = build_message("Seraphina", ChatMessage(content="x"))
        assert entry["gen_started"]
        assert entry["gen_finished"] == entry["send_date"]


class TestChatStoreAppend:
    def test_appends_after_existing_lines(self, directories, chat_context, transcript, message):
        result = ChatStore().append(directories, chat_context, message)

        assert result.success
        assert result.chat_file_path == str(transcript)
        entries = read_chat_file(transcript)
        assert len(entries) == 3
        assert entries[0] == HEADER
        assert entries[1]["mes"] == "Tell me a story"
        assert entries[2]["mes"] == "Once upon a time"
        assert entries[2]["name"] == "Seraphina"

    def test_two_appends_accumulate(self, directories, chat_context, transcript, message):
        store = ChatStore()
        store.append(directories, chat_context, message)
        store.append(directories, chat_context, ChatMessage(content="The end"))
        assert [e.get("mes") for e in read_chat_file(transcript)][-2:] == [
            "Once upon a time", "The end",
        ]

    def test_non_ascii_is_written_verbatim(self, directories, chat_context, transcript):
        ChatStore().append(directories, chat_context, ChatMessage(content="héllo 世界"))
        assert "héllo 世界" in transcript.read_text(encoding="utf-8")

    def test_missing_file_is_not_created(self, directories, chat_context, message):
        result = ChatStore().append(directories, chat_context, message)

        assert not result.success
        assert "missing or empty" in result.error
        assert not chat_file_path(directories, chat_context).exists()

    def test_empty_file_fails(self, directories, chat_context, message):
        path = chat_file_path(directories, chat_context)
        path.parent.mkdir(parents=True)
        path.write_text("\n\n", encoding="utf-8")

        result = ChatStore().append(directories, chat_context, message)
        assert not result.success
        assert path.read_text(encoding="utf-8") == "\n\n"

    def test_corrupt_lines_are_skipped(self, directories, chat_context, transcript, message):
        transcript.write_text(
            transcript.read_text(encoding="utf-8") + "\n{not json", encoding="utf-8",
        )
        assert ChatStore().append(directories, chat_context, message).success
        entries = read_chat_file(transcript)
        assert [e.get("mes") for e in entries][-1] == "Once upon a time"
        assert len(entries) == 3

    def test_os_error_is_reported(self, directories, chat_context, transcript, message, monkeypatch):
        def refuse(*args, **kwargs):
            raise PermissionError("read-only")

        monkeypatch.setattr(
            "rescue_proxy.storage.chat_store.write_chat_file", refuse,
        )
        result = ChatStore().append(directories, chat_context, message)
        assert not result.success
        assert "read-only" in result.error


class TestConcurrentRescues:
    @pytest.mark.asyncio
    async def test_simultaneous_expiries_keep_every_message(
        self, directories, chat_context, transcript,
    ):
        # A long transcript widens the read-modify-write window
        filler = [json.dumps({"name": "User", "is_user": True, "mes": f"line {i}"})
                  for i in range(5000)]
        transcript.write_text(
            transcript.read_text(encoding="utf-8") + "\n" + "\n".join(filler),
            encoding="utf-8",
        )
        reconciler = Reconciler(ChatStore(), window_s=0.05)
        for i in range(4):
            reconciler.schedule_save(PendingSaveEntry(
                request_id=f"req-{i}",
                captured_text=f"rescued {i}",
                model_name="gpt-4o",
                gen_started="2024-05-01T12:00:00+00:00",
                gen_finished="2024-05-01T12:00:05+00:00",
                chat_context=chat_context,
                directories=directories,
            ))

        for _ in range(300):
            rescued = [e.get("mes") for e in read_chat_file(transcript)
                       if str(e.get("mes", "")).startswith("rescued")]
            if len(rescued) == 4 and not reconciler.registry.request_ids():
                break
            await asyncio.sleep(0.01)

        assert sorted(rescued) == [f"rescued {i}" for i in range(4)]
        assert len(read_chat_file(transcript)) == 2 + 5000 + 4
