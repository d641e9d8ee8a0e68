from __future__ import annotations

import argparse
import asyncio
import importlib.metadata
import sys

from .config import ConfigurationError, RelaySettings, load_settings
from .daemon import configure_logging
from .daemon import run as run_daemon
from .slack_client import SlackApiError, SlackClient


def _get_version() -> str:
    """Get the version from package metadata."""
    try:
        return importlib.metadata.version("slack-flow")
    except importlib.metadata.PackageNotFoundError:
        return "0.1.0 (dev)"


def _load(config_path: str | None, *, for_daemon: bool) -> RelaySettings:
    try:
        settings = load_settings(config_path)
        if for_daemon:
            settings.validate_for_startup()
        elif not settings.bot_token.strip():
            raise ConfigurationError("Slack bot token is not set.")
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    return settings


def _test_connection(settings: RelaySettings) -> int:
    client = SlackClient(settings.bot_token, base_url=settings.slack_api_base_url)
    try:
        info = client.test_connection()
    except SlackApiError as exc:
        print(f"Slack connection failed: {exc}", file=sys.stderr)
        return 1
    finally:
        client.close()
    if not info.ok:
        print("Slack connection failed", file=sys.stderr)
        return 1
    print("Slack connection ok")
    print(f"  Bot ID:   {info.bot_id}")
    print(f"  Bot name: {info.bot_name}")
    print(f"  User ID:  {info.bot_user_id}")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Slack Flow: relay Slack threads to Claude Code")
    parser.add_argument(
        "mode",
        choices=["daemon", "test-connection", "version"],
        nargs="?",
        default="daemon",
    )
    parser.add_argument("--version", "-V", action="store_true", help="Show version and exit")
    parser.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to config.yaml (default: ./config.yaml or $SLACK_FLOW_CONFIG)",
    )
    args = parser.parse_args()

    if args.version or args.mode == "version":
        print(f"slack-flow {_get_version()}")
        return

    configure_logging()

    if args.mode == "test-connection":
        settings = _load(args.config_path, for_daemon=False)
        raise SystemExit(_test_connection(settings))

    settings = _load(args.config_path, for_daemon=True)
    try:
        asyncio.run(run_daemon(settings))
    except (SlackApiError, RuntimeError) as exc:
        print(f"Startup failed: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
