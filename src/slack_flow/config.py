from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field, ValidationError, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .formatting import TRUNCATION_MARKER

logger = logging.getLogger("slack_flow.config")

DEFAULT_CONFIG_FILE = "config.yaml"
CONFIG_PATH_ENV = "SLACK_FLOW_CONFIG"

_ENV_REF_RE = re.compile(r"\$\{([^}]+)\}")


class ConfigurationError(ValueError):
    """Settings are missing or invalid; the relay cannot start."""


class RelaySettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="slack_flow_",
        extra="ignore",
        env_file=".env",
        enable_decoding=False,
    )

    bot_token: str = ""
    polling_interval_ms: int = 10_000

    # project name -> absolute path of its checkout
    projects: dict[str, str] = Field(default_factory=dict)
    # channel id -> default project ("" = only "!claude <project>" commands)
    channels: dict[str, str] = Field(default_factory=dict)

    system_prompt: str = ""
    command_prefix: str = "!claude"

    claude_cli_command: str = "claude"
    claude_cli_model: str = ""  # e.g. "claude-sonnet-4-6"; empty = claude default
    claude_cli_allowed_tools: list[str] = Field(default_factory=list)  # appended to the built-in list
    turn_timeout_seconds: float = 300.0

    max_reply_chars: int = 3900
    max_concurrent_threads: int = 1
    attachment_temp_dir: str = str(Path(tempfile.gettempdir()) / "slack_flow_attachments")
    slack_api_base_url: str = "https://slack.com/api"
    log_level: str = "INFO"

    @field_validator("projects", "channels", mode="before")
    @classmethod
    def _parse_json_mapping(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return {}
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return {}
            value = json.loads(stripped)
        if info.field_name == "channels" and isinstance(value, dict):
            # "C123:" with no value watches the channel without a default project.
            value = {key: "" if project is None else project for key, project in value.items()}
        return value

    @field_validator("claude_cli_allowed_tools", mode="before")
    @classmethod
    def _parse_csv_or_json_list(cls, value: Any) -> Any:
        if isinstance(value, list):
            return value
        if value is None:
            return []
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return []
            if stripped.startswith("["):
                return json.loads(stripped)
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return value

    @field_validator("polling_interval_ms", "max_reply_chars", "max_concurrent_threads")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("max_reply_chars")
    @classmethod
    def _room_for_marker(cls, value: int) -> int:
        if value <= len(TRUNCATION_MARKER):
            raise ValueError(f"must be greater than {len(TRUNCATION_MARKER)} (the truncation marker length)")
        return value

    @property
    def polling_interval_seconds(self) -> float:
        return self.polling_interval_ms / 1000.0

    def validate_for_startup(self) -> None:
        if not self.bot_token.strip():
            raise ConfigurationError(
                "Slack bot token is not set (slack.botToken in config.yaml or SLACK_FLOW_BOT_TOKEN)."
            )
        if not self.projects:
            raise ConfigurationError("No projects configured (projects: {name: path}).")
        unknown_defaults = sorted(
            {project for project in self.channels.values() if project and project not in self.projects}
        )
        if unknown_defaults:
            logger.warning("Channel default projects not in projects: %s", ", ".join(unknown_defaults))


def expand_env_vars(value: Any) -> Any:
    """Replace ${VAR} references in every string of a YAML document."""
    if isinstance(value, str):

        def _lookup(match: re.Match[str]) -> str:
            name = match.group(1)
            env_value = os.environ.get(name)
            if env_value is None:
                logger.warning("Environment variable %s is not set", name)
                return ""
            return env_value

        return _ENV_REF_RE.sub(_lookup, value)
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    if isinstance(value, dict):
        return {key: expand_env_vars(item) for key, item in value.items()}
    return value


def _flatten_document(document: dict[str, Any]) -> dict[str, Any]:
    """Map the nested config.yaml layout onto RelaySettings field names."""
    data = {k: v for k, v in document.items() if k not in {"slack", "claude"}}

    slack = document.get("slack") or {}
    if "botToken" in slack:
        data.setdefault("bot_token", slack["botToken"])
    if "pollingInterval" in slack:
        data.setdefault("polling_interval_ms", slack["pollingInterval"])

    claude = document.get("claude") or {}
    if "systemPrompt" in claude:
        data.setdefault("system_prompt", claude["systemPrompt"])
    if "allowedTools" in claude:
        data.setdefault("claude_cli_allowed_tools", claude["allowedTools"])
    if "command" in claude:
        data.setdefault("claude_cli_command", claude["command"])
    if "model" in claude:
        data.setdefault("claude_cli_model", claude["model"])

    return {key: value for key, value in data.items() if value is not None}


def load_settings(config_path: str | Path | None = None) -> RelaySettings:
    """Build settings from config.yaml (if any) layered over env and .env.

    Values present in the YAML file take precedence over the environment.
    """
    explicit = config_path or os.environ.get(CONFIG_PATH_ENV)
    path = Path(explicit) if explicit else Path.cwd() / DEFAULT_CONFIG_FILE

    if not path.exists():
        if explicit:
            raise ConfigurationError(f"Config file not found: {path}")
        logger.info("No %s found; using environment settings only", path)
        return _build({})

    logger.info("Loading config file %s", path)
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(document, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    return _build(_flatten_document(expand_env_vars(document)))


def _build(values: dict[str, Any]) -> RelaySettings:
    try:
        return RelaySettings(**values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings: {exc}") from exc
