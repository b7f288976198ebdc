"""CLI: rescue-proxy serve, logs, check-update, config validate/show."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import yaml

from ..config import config_to_dict, load_config, validate_config
from ..storage.request_log import RequestLog


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def cmd_serve(args):
    """Start the rescue proxy."""
    import uvicorn

    from ..proxy import create_app

    # Uvicorn force-cancels open SSE responses after the graceful-shutdown
    # timeout, which surfaces as CancelledError tracebacks from Starlette.
    class _SuppressCancelled(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            if record.exc_info and record.exc_info[0] is asyncio.CancelledError:
                return False
            return True

    class _SuppressHealthAccess(logging.Filter):
        """Hide the frontend's periodic GET /health polling."""
        def filter(self, record: logging.LogRecord) -> bool:
            msg = record.getMessage()
            return not ("GET /health" in msg and "200" in msg)

    logging.getLogger("uvicorn.error").addFilter(_SuppressCancelled())
    logging.getLogger("uvicorn.access").addFilter(_SuppressHealthAccess())

    settings = load_config(config_path=args.config)
    if args.upstream:
        settings.real_api_url = args.upstream.rstrip("/")
    if args.port:
        settings.proxy_port = args.port
    if args.host:
        settings.host = args.host

    errors = validate_config(settings)
    if errors:
        for e in errors:
            print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)

    app = create_app(config_path=args.config, settings=settings)
    print(
        f"rescue-proxy on http://{settings.host}:{settings.proxy_port} -> {settings.real_api_url}",
        flush=True,
    )
    print(
        f"Point the chat client's custom API URL at http://{settings.host}:{settings.proxy_port}/v1",
        flush=True,
    )
    if not settings.real_api_key:
        print("Warning: no upstream API key configured; completions will fail", flush=True)
    uvicorn.run(
        app, host=settings.host, port=settings.proxy_port, log_level="info",
        timeout_graceful_shutdown=2,
    )


def cmd_logs(args):
    """Show the most recent finished requests."""
    settings = load_config(config_path=args.config)
    records = RequestLog(settings.request_log).read(limit=args.limit)
    if not records:
        print("No requests logged yet.")
        return

    print(f"{'Time':<26} {'Status':<8} {'Stream':<6} {'Outcome':<22} {'ms':>8}  Model / Character")
    print("-" * 100)
    for r in records:
        ms = r.get("response_time_ms")
        ms_str = f"{ms:,.0f}" if isinstance(ms, (int, float)) else "-"
        who = r.get("model", "")
        if r.get("character"):
            who += f" / {r['character']}"
        if r.get("is_test"):
            who += " (test)"
        print(
            f"{r.get('timestamp', '')[:26]:<26} {r.get('status', ''):<8} "
            f"{'yes' if r.get('streaming') else 'no':<6} {r.get('outcome') or '-':<22} "
            f"{ms_str:>8}  {who}"
        )
        if r.get("error"):
            print(f"{'':<26} error: {r['error']}")


def cmd_check_update(args):
    """Compare local checkouts against GitHub."""
    from ..types import UserDirectories
    from ..updates import check_updates, default_targets

    settings = load_config(config_path=args.config)
    extensions = UserDirectories.from_root(settings.data_root).extensions if settings.data_root else None
    statuses = asyncio.run(check_updates(default_targets(extensions)))
    for s in statuses:
        marker = "UPDATE" if s.has_update else "ok"
        print(
            f"[{marker}] {s.name} ({s.repo}) local={s.local_version}@{s.local_commit or '?'} "
            f"latest={s.latest_commit or '?'} {s.latest_message}"
        )


def cmd_config_validate(args):
    """Validate the config file."""
    try:
        config = load_config(config_path=args.config)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for e in errors:
            print(f"  - {e}")
        sys.exit(1)
    print("Config is valid.")


def cmd_config_show(args):
    """Print the effective config with secrets masked."""
    data = config_to_dict(load_config(config_path=args.config))
    for secret in ("real_api_key", "proxy_api_key"):
        if data.get(secret):
            data[secret] = "***"
    print(yaml.safe_dump(data, default_flow_style=False, sort_keys=False), end="")


def main():
    parser = argparse.ArgumentParser(
        prog="rescue-proxy",
        description="OpenAI-compatible proxy that saves replies the client never received",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the proxy server")
    serve_parser.add_argument(
        "--upstream", "-u", default=None,
        help="Upstream API base URL (overrides real_api_url), e.g. https://api.openai.com/v1",
    )
    serve_parser.add_argument("--port", "-p", type=int, default=None)
    serve_parser.add_argument("--host", default=None)

    # logs
    logs_parser = subparsers.add_parser("logs", help="Show recent proxied requests")
    logs_parser.add_argument("--limit", "-n", type=int, default=20)

    # check-update
    subparsers.add_parser("check-update", help="Check GitHub for newer commits")

    # config
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")
    config_sub.add_parser("show", help="Show effective config")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    _configure_logging(args.verbose)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "logs":
        cmd_logs(args)
    elif args.command == "check-update":
        cmd_check_update(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        elif args.config_command == "show":
            cmd_config_show(args)
        else:
            print("Usage: rescue-proxy config {validate,show}")
            sys.exit(1)


if __name__ == "__main__":
    main()
