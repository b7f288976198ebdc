"""rescue-proxy: an OpenAI-compatible proxy that keeps replies a disconnected client never received."""

__version__ = "1.0.0"

from .config import load_config  # noqa: E402
from .types import (  # noqa: E402
    ChatContext,
    PendingSaveEntry,
    ProxySettings,
    ReconcileState,
    RequestRecord,
    UserDirectories,
)

__all__ = [
    "load_config",
    "ChatContext",
    "PendingSaveEntry",
    "ProxySettings",
    "ReconcileState",
    "RequestRecord",
    "UserDirectories",
]
