"""Markdown to Slack mrkdwn conversion for outbound replies."""

from __future__ import annotations

import re

_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_INLINE_CODE_RE = re.compile(r"`[^`\n]+`")
_PLACEHOLDER_RE = re.compile(r"\x00(CODEBLOCK|INLINECODE)(\d+)\x00")

_LINK_RE = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")
_BOLD_RE = re.compile(r"\*\*([^*]+)\*\*")
_ITALIC_RE = re.compile(r"(?<!\*)\*([^*\n]+)\*(?!\*)")
_STRIKE_RE = re.compile(r"~~([^~]+)~~")
_HEADING_RE = re.compile(r"^#{1,6}\s+(.+)$", re.MULTILINE)


def markdown_to_mrkdwn(markdown: str) -> str:
    """Convert common Markdown to Slack mrkdwn, leaving code untouched."""
    protected: dict[str, list[str]] = {"CODEBLOCK": [], "INLINECODE": []}

    def _protect(kind: str):
        def _sub(match: re.Match[str]) -> str:
            protected[kind].append(match.group(0))
            return f"\x00{kind}{len(protected[kind]) - 1}\x00"

        return _sub

    text = _CODE_BLOCK_RE.sub(_protect("CODEBLOCK"), markdown)
    text = _INLINE_CODE_RE.sub(_protect("INLINECODE"), text)

    text = _LINK_RE.sub(r"<\2|\1>", text)
    # Bold is held in \x01 markers while italics are rewritten.
    text = _BOLD_RE.sub("\x01\\1\x01", text)
    text = _ITALIC_RE.sub(r"_\1_", text)
    text = text.replace("\x01", "*")
    text = _STRIKE_RE.sub(r"~\1~", text)
    text = _HEADING_RE.sub(r"*\1*", text)

    return _PLACEHOLDER_RE.sub(lambda m: protected[m.group(1)][int(m.group(2))], text)
