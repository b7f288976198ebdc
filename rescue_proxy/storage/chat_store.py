"""ChatStore: append assistant messages to the host's JSONL chat transcripts.

A transcript is one JSON object per line; the first line is the chat header
written by the host application. Message objects reproduce the host's own
format so a rescued reply is indistinguishable from one it saved itself.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path

from ..types import ChatContext, ChatMessage, SaveResult, UserDirectories, utc_now_iso

logger = logging.getLogger(__name__)


def chat_file_path(directories: UserDirectories, context: ChatContext) -> Path:
    if context.is_group and context.group_id:
        return Path(directories.group_chats) / f"{context.group_id}.jsonl"
    character_dir = context.avatar_url.replace(".png", "")
    return Path(directories.chats) / character_dir / f"{context.chat_file_name}.jsonl"


def read_chat_file(path: Path) -> list[dict]:
    """Parse a transcript, skipping blank and corrupt lines."""
    if not path.is_file():
        logger.warning("Chat file does not exist: %s", path)
        return []
    entries: list[dict] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError:
            logger.debug("Skipping corrupt line in %s", path)
    return entries


def write_chat_file(path: Path, entries: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        "\n".join(json.dumps(e, ensure_ascii=False) for e in entries),
        encoding="utf-8",
    )


def build_message(name: str, message: ChatMessage, *, is_user: bool = False) -> dict:
    now = utc_now_iso()
    gen_started = message.gen_started or now
    gen_finished = message.gen_finished or now
    send_date = gen_finished
    extra = {
        "api": message.api_name,
        "model": message.model_name,
        "reasoning": "",
        "reasoning_duration": None,
        "reasoning_signature": None,
        "token_count": 0,
    }
    return {
        "extra": extra,
        "name": name,
        "is_user": is_user,
        "send_date": send_date,
        "mes": message.content,
        "title": "",
        "gen_started": gen_started,
        "gen_finished": gen_finished,
        "swipes": [message.content],
        "swipe_id": 0,
        "swipe_info": [{
            "send_date": send_date,
            "gen_started": gen_started,
            "gen_finished": gen_finished,
            "extra": dict(extra),
        }],
    }


class ChatStore:
    """Durable append of a finished message to a character or group chat.

    Appends run in worker threads, so each read-modify-write of a transcript
    holds the store lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def append(
        self,
        directories: UserDirectories,
        context: ChatContext,
        message: ChatMessage,
    ) -> SaveResult:
        path = chat_file_path(directories, context)
        try:
            with self._lock:
                entries = read_chat_file(path)
                if not entries:
                    return SaveResult(
                        success=False,
                        chat_file_path=str(path),
                        error="Chat file is missing or empty",
                    )
                entries.append(build_message(context.character_name, message))
                write_chat_file(path, entries)
        except OSError as e:
            logger.error("Appending to %s failed: %s", path, e)
            return SaveResult(success=False, chat_file_path=str(path), error=str(e))

        logger.debug("Appended message to %s", path)
        return SaveResult(success=True, chat_file_path=str(path))
