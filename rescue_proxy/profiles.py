"""Import upstream connection profiles from the host application's settings."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from .errors import ProfileError, ProfileNotFound
from .types import ProxySettings, UserDirectories

logger = logging.getLogger(__name__)

UNNAMED_PROFILE = "Unnamed profile"


def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def _connection_profiles(directories: UserDirectories) -> list[dict]:
    settings_path = Path(directories.root) / "settings.json"
    if not settings_path.is_file():
        return []
    try:
        settings = _read_json(settings_path)
    except json.JSONDecodeError as e:
        raise ProfileError(f"Cannot parse {settings_path.name}: {e}") from e
    profiles = (
        settings.get("extension_settings", {})
        .get("connectionManager", {})
        .get("profiles", [])
    )
    return [p for p in profiles if isinstance(p, dict)]


def list_available_profiles(directories: UserDirectories, proxy_port: int) -> list[dict]:
    """Profiles that do not already point at this proxy."""
    own = (f"127.0.0.1:{proxy_port}", f"localhost:{proxy_port}")
    available = []
    for p in _connection_profiles(directories):
        api_url = p.get("api-url", "") or ""
        if any(pattern in api_url for pattern in own):
            continue
        available.append({
            "id": p.get("id"),
            "name": p.get("name") or UNNAMED_PROFILE,
            "api_url": api_url,
            "model": p.get("model", ""),
        })
    return available


def _resolve_secret(directories: UserDirectories, secret_id: str) -> str:
    secrets_path = Path(directories.root) / "secrets.json"
    if not secrets_path.is_file():
        return ""
    try:
        secrets = _read_json(secrets_path)
    except json.JSONDecodeError:
        logger.warning("Cannot parse %s, ignoring stored keys", secrets_path)
        return ""
    for key in secrets.get("api_key_custom", []):
        if isinstance(key, dict) and key.get("id") == secret_id:
            return key.get("value", "") or ""
    return ""


def import_profile(
    directories: UserDirectories,
    profile_id: str,
    settings: ProxySettings,
) -> dict:
    """Copy a profile's URL (and stored key, if any) into *settings*."""
    if not profile_id:
        raise ProfileError("No profile id given")
    if not (Path(directories.root) / "settings.json").is_file():
        raise ProfileNotFound("Host settings file not found")

    profile = next(
        (p for p in _connection_profiles(directories) if p.get("id") == profile_id),
        None,
    )
    if profile is None:
        raise ProfileNotFound(f"Profile '{profile_id}' not found")

    api_url = profile.get("api-url", "") or ""
    api_key = ""
    if profile.get("secret-id"):
        api_key = _resolve_secret(directories, profile["secret-id"])

    settings.real_api_url = api_url.rstrip("/")
    if api_key:
        settings.real_api_key = api_key

    name = profile.get("name") or UNNAMED_PROFILE
    logger.info("Imported connection profile: %s", name)
    return {"api_url": api_url, "has_api_key": bool(api_key), "profile_name": name}
