"""All dataclasses, enums, and type aliases for rescue-proxy."""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


# ---------------------------------------------------------------------------
# Chat destination
# ---------------------------------------------------------------------------

@dataclass
class ChatContext:
    """Identifies the transcript a captured response belongs to."""
    character_name: str = ""
    avatar_url: str = ""
    chat_file_name: str = ""
    is_group: bool = False
    group_id: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ChatContext:
        """Accept the frontend's camelCase keys as well as snake_case."""
        def pick(*keys: str, default: Any = "") -> Any:
            for key in keys:
                if raw.get(key) is not None:
                    return raw[key]
            return default

        return cls(
            character_name=str(pick("characterName", "character_name")),
            avatar_url=str(pick("avatarUrl", "avatar_url")),
            chat_file_name=str(pick("chatFileName", "chat_file_name")),
            is_group=_as_bool(pick("isGroup", "is_group", default=False)),
            group_id=str(pick("groupId", "group_id")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class UserDirectories:
    """Resolved storage roots of the host application's user data."""
    root: Path
    chats: Path
    group_chats: Path
    extensions: Path | None = None

    @classmethod
    def from_root(cls, root: str | Path) -> UserDirectories:
        root = Path(root)
        return cls(
            root=root,
            chats=root / "chats",
            group_chats=root / "group chats",
            extensions=root / "extensions",
        )

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> UserDirectories:
        base = cls.from_root(raw["root"])
        chats = raw.get("chats")
        group_chats = raw.get("group_chats", raw.get("groupChats"))
        extensions = raw.get("extensions")
        return cls(
            root=base.root,
            chats=Path(chats) if chats else base.chats,
            group_chats=Path(group_chats) if group_chats else base.group_chats,
            extensions=Path(extensions) if extensions else base.extensions,
        )


# ---------------------------------------------------------------------------
# Capture & reconciliation
# ---------------------------------------------------------------------------

class ReconcileState(str, Enum):
    CAPTURING = "capturing"
    EVALUATING = "evaluating"
    SKIPPED = "skipped"
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    SAVED = "saved"


@dataclass
class Capture:
    """Outcome of relaying one upstream response."""
    request_id: str
    model_name: str
    gen_started: str
    text: str = ""
    has_error: bool = False
    gen_finished: str = ""
    is_test: bool = False
    chat_context: ChatContext | None = None
    directories: UserDirectories | None = None


@dataclass
class PendingSaveEntry:
    """A generated-but-unconfirmed response waiting out its confirmation window."""
    request_id: str
    captured_text: str
    model_name: str
    gen_started: str
    gen_finished: str
    chat_context: ChatContext
    directories: UserDirectories
    deadline: asyncio.Task | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_capture(cls, capture: Capture) -> PendingSaveEntry:
        if capture.chat_context is None or capture.directories is None:
            raise ValueError(f"Capture {capture.request_id} has no save destination")
        return cls(
            request_id=capture.request_id,
            captured_text=capture.text,
            model_name=capture.model_name,
            gen_started=capture.gen_started,
            gen_finished=capture.gen_finished or utc_now_iso(),
            chat_context=capture.chat_context,
            directories=capture.directories,
        )

    def cancel(self) -> None:
        if self.deadline is not None and not self.deadline.done():
            self.deadline.cancel()
        self.deadline = None


@dataclass
class ChatMessage:
    """Message handed to the chat store."""
    content: str
    model_name: str = "unknown"
    api_name: str = "custom"
    gen_started: str | None = None
    gen_finished: str | None = None


@dataclass
class SaveResult:
    success: bool
    chat_file_path: str = ""
    error: str = ""


# ---------------------------------------------------------------------------
# Request log
# ---------------------------------------------------------------------------

class RequestStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class RequestRecord:
    id: str
    model: str = "unknown"
    character: str = ""
    status: RequestStatus = RequestStatus.PENDING
    streaming: bool = False
    is_test: bool = False
    response_time_ms: float | None = None
    error: str | None = None
    outcome: str | None = None
    timestamp: str = field(default_factory=utc_now_iso)
    started_monotonic: float = field(default_factory=time.monotonic, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "model": self.model,
            "character": self.character,
            "status": self.status.value,
            "streaming": self.streaming,
            "is_test": self.is_test,
            "response_time_ms": self.response_time_ms,
            "error": self.error,
            "outcome": self.outcome,
            "timestamp": self.timestamp,
        }


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class RequestLogConfig:
    path: str = ".rescue-proxy/requests.jsonl"
    max_bytes: int = 1_048_576
    ring_size: int = 50
    trim_ratio: float = 0.15


@dataclass
class ProxySettings:
    real_api_url: str = "https://api.openai.com/v1"
    real_api_key: str = ""
    proxy_port: int = 5501
    host: str = "127.0.0.1"
    proxy_api_key: str = ""
    confirm_window_ms: int = 5000
    data_root: str = ""
    upstream_timeout_s: float = 300.0
    request_log: RequestLogConfig = field(default_factory=RequestLogConfig)

    @property
    def confirm_window_s(self) -> float:
        return self.confirm_window_ms / 1000
