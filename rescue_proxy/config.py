"""Configuration loading, validation, defaults, and write-back."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any

import yaml

from .types import ProxySettings, RequestLogConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = [
    "rescue-proxy.yaml",
    "rescue-proxy.yml",
    "rescue-proxy.json",
]

# Keys written by the browser-side settings panel
_CAMEL_KEYS = {
    "realApiUrl": "real_api_url",
    "realApiKey": "real_api_key",
    "proxyPort": "proxy_port",
    "proxyApiKey": "proxy_api_key",
    "confirmWindowMs": "confirm_window_ms",
    "dataRoot": "data_root",
}


def _discover_config() -> Path | None:
    """Search CWD then parent dirs up to home for a config file."""
    cwd = Path.cwd()
    home = Path.home()
    search = cwd
    while True:
        for name in CONFIG_FILENAMES:
            candidate = search / name
            if candidate.is_file():
                return candidate
        if search == home or search == search.parent:
            break
        search = search.parent
    return None


def normalize_keys(raw: dict[str, Any]) -> dict[str, Any]:
    return {_CAMEL_KEYS.get(k, k): v for k, v in raw.items()}


def _build_config(raw: dict[str, Any]) -> ProxySettings:
    """Build ProxySettings from a raw dict."""
    raw = normalize_keys(raw)
    defaults = ProxySettings()

    log_raw = raw.get("request_log", {}) or {}
    log_defaults = RequestLogConfig()
    request_log = RequestLogConfig(
        path=str(log_raw.get("path", log_defaults.path)),
        max_bytes=int(log_raw.get("max_bytes", log_defaults.max_bytes)),
        ring_size=int(log_raw.get("ring_size", log_defaults.ring_size)),
        trim_ratio=float(log_raw.get("trim_ratio", log_defaults.trim_ratio)),
    )

    return ProxySettings(
        real_api_url=str(raw.get("real_api_url", defaults.real_api_url)).rstrip("/"),
        real_api_key=raw.get("real_api_key", defaults.real_api_key) or "",
        proxy_port=int(raw.get("proxy_port", defaults.proxy_port)),
        host=raw.get("host", defaults.host),
        proxy_api_key=raw.get("proxy_api_key", defaults.proxy_api_key) or "",
        confirm_window_ms=int(raw.get("confirm_window_ms", defaults.confirm_window_ms)),
        data_root=raw.get("data_root", defaults.data_root) or "",
        upstream_timeout_s=float(raw.get("upstream_timeout_s", defaults.upstream_timeout_s)),
        request_log=request_log,
    )


def validate_config(config: ProxySettings) -> list[str]:
    """Validate a config. Returns list of error strings (empty = valid)."""
    errors: list[str] = []

    if not 0 < config.proxy_port < 65536:
        errors.append(f"proxy_port ({config.proxy_port}) must be between 1 and 65535")

    if not config.real_api_url.startswith(("http://", "https://")):
        errors.append(f"real_api_url must be an http(s) URL, got '{config.real_api_url}'")

    if config.confirm_window_ms <= 0:
        errors.append("confirm_window_ms must be > 0")

    if config.request_log.max_bytes <= 0:
        errors.append("request_log.max_bytes must be > 0")

    if not 0 < config.request_log.trim_ratio < 1:
        errors.append(
            f"request_log.trim_ratio ({config.request_log.trim_ratio}) must be between 0 and 1"
        )

    if config.request_log.ring_size < 1:
        errors.append("request_log.ring_size must be >= 1")

    return errors


def load_config(
    config_path: str | Path | None = None,
    config_dict: dict | None = None,
) -> ProxySettings:
    """Load config from dict, explicit path, or auto-discover."""
    if config_dict is not None:
        return _build_config(config_dict)

    if config_path is not None:
        path = Path(config_path)
    else:
        path = _discover_config()

    if path is None:
        # Return defaults
        return _build_config({})

    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    text = path.read_text(encoding="utf-8")
    if path.suffix == ".json":
        raw = json.loads(text)
    else:
        raw = yaml.safe_load(text) or {}

    return _build_config(raw)


def config_to_dict(config: ProxySettings) -> dict[str, Any]:
    return asdict(config)


def save_config(config: ProxySettings, path: str | Path) -> None:
    """Write settings back to *path* (JSON or YAML by suffix)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config_to_dict(config)
    if path.suffix == ".json":
        text = json.dumps(data, indent=2, ensure_ascii=False)
    else:
        text = yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
    path.write_text(text, encoding="utf-8")
    logger.info("Settings saved to %s", path)
