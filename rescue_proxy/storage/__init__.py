from .chat_store import ChatStore
from .request_log import RequestLog

__all__ = ["ChatStore", "RequestLog"]
