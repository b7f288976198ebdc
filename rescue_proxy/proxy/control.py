"""Control routes used by the browser-side companion extension.

Settings, storage-directory registration, chat-context sync, the receipt
confirmation that cancels a pending save, and a few inspection endpoints.
All of them sit behind the same bearer check as the proxy routes.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from fastapi import Request
from fastapi.responses import JSONResponse

from ..config import config_to_dict, normalize_keys, save_config
from ..errors import MalformedRequest, ProfileError
from ..profiles import import_profile, list_available_profiles
from ..types import ChatContext, UserDirectories
from ..updates import check_updates, default_targets

if TYPE_CHECKING:
    from fastapi import FastAPI

    from .server import ProxyState

logger = logging.getLogger(__name__)

_EDITABLE = ("real_api_url", "real_api_key", "proxy_api_key", "data_root")


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedRequest() from e
    if not isinstance(body, dict):
        raise MalformedRequest("Expected a JSON object")
    return body


def _settings_response(state: ProxyState) -> dict:
    s = state.settings
    return {
        "real_api_url": s.real_api_url,
        "real_api_key": s.real_api_key,
        "proxy_port": s.proxy_port,
        "proxy_api_key": s.proxy_api_key,
        "confirm_window_ms": s.confirm_window_ms,
        "data_root": s.data_root,
    }


def _persist(state: ProxyState) -> None:
    if state.config_path is None:
        return
    try:
        save_config(state.settings, state.config_path)
    except OSError as e:
        logger.error("Saving settings to %s failed: %s", state.config_path, e)


def _require_directories(state: ProxyState) -> UserDirectories:
    if state.directories is None:
        raise ProfileError("User directories not registered")
    return state.directories


def register_control_routes(app: "FastAPI", state: "ProxyState") -> None:
    """Register the ``/rescue/*`` routes."""

    @app.get("/rescue/settings")
    async def get_settings():
        return _settings_response(state)

    @app.post("/rescue/settings")
    async def update_settings(request: Request):
        body = normalize_keys(await _json_body(request))
        settings = state.settings
        port_changed = False

        for key in _EDITABLE:
            if key in body and body[key] is not None:
                setattr(settings, key, str(body[key]))
        settings.real_api_url = settings.real_api_url.rstrip("/")

        if body.get("proxy_port") is not None:
            try:
                new_port = int(body["proxy_port"])
            except (TypeError, ValueError):
                new_port = 0
            if 0 < new_port < 65536 and new_port != settings.proxy_port:
                settings.proxy_port = new_port
                port_changed = True

        if body.get("confirm_window_ms") is not None:
            try:
                window_ms = int(body["confirm_window_ms"])
            except (TypeError, ValueError):
                window_ms = 0
            if window_ms > 0:
                settings.confirm_window_ms = window_ms
                state.reconciler.window_s = settings.confirm_window_s

        if "data_root" in body:
            state.directories = (
                UserDirectories.from_root(settings.data_root) if settings.data_root else None
            )

        logger.info("Settings updated")
        _persist(state)
        return {"success": True, "port_changed": port_changed}

    @app.post("/rescue/register-context")
    async def register_context(request: Request):
        body = await _json_body(request)
        if not body.get("root"):
            raise MalformedRequest("Missing 'root' directory")
        state.directories = UserDirectories.from_dict(body)
        logger.info("Registered user directories under %s", state.directories.root)
        return {"success": True}

    @app.post("/rescue/chat-context")
    async def set_chat_context(request: Request):
        body = await _json_body(request)
        state.last_chat_context = ChatContext.from_dict(body) if body else None
        name = state.last_chat_context.character_name if state.last_chat_context else ""
        logger.info("Chat context set: %s", name or "unknown")
        return {"success": True}

    @app.post("/rescue/confirm-received")
    async def confirm_received(request: Request):
        body = await _json_body(request)
        request_id = body.get("request_id") or request.headers.get("x-rescue-request-id")
        cancelled = state.reconciler.confirm(request_id)
        return {"success": True, "cancelled": cancelled}

    @app.get("/rescue/pending")
    async def pending_saves():
        return {"pending": state.reconciler.registry.request_ids()}

    @app.get("/rescue/logs")
    async def request_logs(limit: int = 50):
        return {
            "in_flight": [r.to_dict() for r in state.request_log.pending()],
            "completed": state.request_log.read(limit=limit),
        }

    @app.delete("/rescue/logs")
    async def clear_request_logs():
        state.request_log.clear()
        return {"success": True}

    @app.get("/rescue/profiles")
    async def available_profiles():
        directories = _require_directories(state)
        return {
            "profiles": list_available_profiles(directories, state.settings.proxy_port),
        }

    @app.post("/rescue/profiles/import")
    async def import_connection_profile(request: Request):
        body = await _json_body(request)
        directories = _require_directories(state)
        profile_id = body.get("profile_id") or body.get("profileId") or ""
        imported = import_profile(directories, profile_id, state.settings)
        _persist(state)
        return {"success": True, "imported": imported}

    @app.get("/rescue/check-update")
    async def check_update():
        extensions = state.directories.extensions if state.directories else None
        statuses = await check_updates(default_targets(extensions))
        return JSONResponse({
            "success": True,
            "has_any_update": any(s.has_update for s in statuses),
            "repos": [s.to_dict() for s in statuses],
        })

    @app.get("/rescue/config")
    async def effective_config():
        data = config_to_dict(state.settings)
        for secret in ("real_api_key", "proxy_api_key"):
            if data.get(secret):
                data[secret] = "***"
        data["config_path"] = str(state.config_path) if state.config_path else None
        data["directories"] = (
            {k: str(v) for k, v in vars(state.directories).items() if v is not None}
            if state.directories else None
        )
        return data
