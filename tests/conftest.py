"""Shared fixtures for rescue-proxy tests."""

from __future__ import annotations

import json
import threading
import time
from pathlib import Path

import pytest

from rescue_proxy.config import load_config
from rescue_proxy.types import (
    ChatContext,
    ChatMessage,
    ProxySettings,
    SaveResult,
    UserDirectories,
)


class RecordingChatStore:
    """Chat store double that records every append."""

    def __init__(self, result: SaveResult | None = None, error: Exception | None = None) -> None:
        self.appends: list[tuple[UserDirectories, ChatContext, ChatMessage]] = []
        self._result = result or SaveResult(success=True, chat_file_path="mem://chat")
        self._error = error
        self._lock = threading.Lock()

    def append(self, directories, context, message) -> SaveResult:
        with self._lock:
            self.appends.append((directories, context, message))
        if self._error is not None:
            raise self._error
        return self._result

    @property
    def texts(self) -> list[str]:
        with self._lock:
            return [m.content for _, _, m in self.appends]


def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll *predicate* until it holds or *timeout* elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def chat_store() -> RecordingChatStore:
    return RecordingChatStore()


@pytest.fixture
def directories(tmp_path: Path) -> UserDirectories:
    return UserDirectories.from_root(tmp_path / "user")


@pytest.fixture
def chat_context() -> ChatContext:
    return ChatContext(
        character_name="Seraphina",
        avatar_url="Seraphina.png",
        chat_file_name="Seraphina - 2024-05-01@12h00m00s",
    )


@pytest.fixture
def chat_context_header(chat_context) -> str:
    return json.dumps({
        "characterName": chat_context.character_name,
        "avatarUrl": chat_context.avatar_url,
        "chatFileName": chat_context.chat_file_name,
        "isGroup": False,
    })


@pytest.fixture
def settings(tmp_path: Path, directories: UserDirectories) -> ProxySettings:
    return load_config(config_dict={
        "real_api_url": "http://fake-upstream:9999/v1",
        "real_api_key": "sk-upstream",
        "confirm_window_ms": 100,
        "data_root": str(directories.root),
        "request_log": {"path": str(tmp_path / "logs" / "requests.jsonl")},
    })
