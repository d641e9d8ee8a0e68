from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from .models import Message

logger = logging.getLogger("slack_flow.commanding")

DEFAULT_COMMAND_PREFIX = "!claude"

# Slack user mention, e.g. "<@U012ABCDEF>"
_MENTION_RE = re.compile(r"<@[A-Z0-9]+>")

_COMMAND_RE_CACHE: dict[str, re.Pattern[str]] = {}


@dataclass(slots=True)
class ParsedCommand:
    project_name: str
    prompt_text: str
    image_urls: list[str] | None = None


def _command_re(prefix: str) -> re.Pattern[str]:
    pattern = _COMMAND_RE_CACHE.get(prefix)
    if pattern is None:
        # "/" is reserved for Slack slash commands, hence the "!" prefix.
        pattern = re.compile(rf"^{re.escape(prefix)}\s+(\S+)\s+(.+)$", re.DOTALL)
        _COMMAND_RE_CACHE[prefix] = pattern
    return pattern


def extract_image_urls(message: Message) -> list[str] | None:
    """Private URLs of the image attachments, or None when there are none."""
    urls = [
        attachment.private_url
        for attachment in message.attachments
        if attachment.is_image and attachment.private_url
    ]
    return urls or None


def strip_mentions(text: str) -> str:
    return _MENTION_RE.sub("", text).strip()


def parse_command(
    message: Message,
    default_project: str | None = None,
    prefix: str = DEFAULT_COMMAND_PREFIX,
) -> ParsedCommand | None:
    """Classify a channel message as a relay command.

    Two forms are recognised:

    - ``!claude <project> <instruction>``; the instruction may span lines.
    - ``<@BOT> <instruction>`` when the channel has a default project.

    Anything else returns None; it is not an error.
    """
    text = (message.text or "").strip()
    if not text:
        return None

    match = _command_re(prefix).match(text)
    if match:
        project_name = match.group(1)
        prompt = match.group(2).strip()
        logger.info("Parsed command: project=%s prompt_chars=%d", project_name, len(prompt))
        return ParsedCommand(
            project_name=project_name,
            prompt_text=prompt,
            image_urls=extract_image_urls(message),
        )

    if default_project and text.startswith("<@"):
        mention_end = text.find(">")
        if mention_end != -1:
            prompt = text[mention_end + 1:].strip()
            if prompt:
                logger.info(
                    "Parsed mention command: project=%s prompt_chars=%d",
                    default_project,
                    len(prompt),
                )
                return ParsedCommand(
                    project_name=default_project,
                    prompt_text=prompt,
                    image_urls=extract_image_urls(message),
                )

    return None
