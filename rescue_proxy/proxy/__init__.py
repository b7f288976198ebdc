from .server import ProxyState, create_app

__all__ = [
    "create_app",
    "ProxyState",
]
