"""CLI entry point for Frontdesk."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import uvicorn

from . import __version__
from .config import AppConfig, _get_config_path, load_config


def _load_config_or_exit() -> AppConfig:
    try:
        return load_config()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        print(f"Edit {_get_config_path()} or set AI_CHAT_BASE_URL.", file=sys.stderr)
        sys.exit(1)


async def _validate_ai_connection(config: AppConfig) -> None:
    from .services.ai_service import AIService

    ai_service = AIService(config.ai)
    valid, message, models = await ai_service.validate_connection()
    if valid:
        print(f"AI connection: OK ({config.ai.model})")
        if models:
            print(f"  Available models: {', '.join(models[:5])}")
    else:
        print(f"AI connection: WARNING - {message}", file=sys.stderr)
        print("  The server will start, but chat may not work until the AI service is reachable.", file=sys.stderr)


async def _test_connection(config: AppConfig) -> None:
    from .services.ai_service import AIService

    ai_service = AIService(config.ai)

    print("Config:")
    print(f"  Endpoint: {config.ai.base_url}")
    print(f"  Model:    {config.ai.model}")
    print(f"  SSL:      {'enabled' if config.ai.verify_ssl else 'disabled'}")
    print(f"  Confirm:  {', '.join(config.tools.requires_confirmation) or '(none)'}")

    print("\nListing models...")
    valid, message, models = await ai_service.validate_connection()
    if not valid:
        print(f"   FAILED - {message}")
        sys.exit(1)
    print(f"   OK - {len(models)} model(s) available")
    for m in models[:10]:
        print(f"     - {m}")
    print("\nAll checks passed.")


def _run_server(config: AppConfig, log_level: str) -> None:
    try:
        asyncio.run(_validate_ai_connection(config))
    except Exception:
        print("AI connection: Could not validate (will try on first request)", file=sys.stderr)

    from .app import create_app

    app = create_app(config)
    print(f"\nStarting Frontdesk at http://{config.app.host}:{config.app.port}")
    if config.app.host in ("0.0.0.0", "::"):
        print("  WARNING: Binding to all interfaces. The API is accessible from the network.", file=sys.stderr)

    uvicorn.run(app, host=config.app.host, port=config.app.port, log_level=log_level)


def main() -> None:
    parser = argparse.ArgumentParser(prog="frontdesk", description="Frontdesk - chat backend with human handoff")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--test", action="store_true", help="Test connection settings and exit")
    parser.add_argument("--host", default=None, help="Override the bind host")
    parser.add_argument("--port", type=int, default=None, help="Override the bind port")
    parser.add_argument(
        "--log-level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level for the server and the application loggers",
    )

    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    config = _load_config_or_exit()
    if args.host:
        config.app.host = args.host
    if args.port:
        config.app.port = args.port

    if args.test:
        asyncio.run(_test_connection(config))
        return

    _run_server(config, args.log_level)


if __name__ == "__main__":
    main()
