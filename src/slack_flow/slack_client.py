"""Thin Slack Web API client used by the relay."""

from __future__ import annotations

import logging
import tempfile
import time
from pathlib import Path
from typing import Any

import httpx

from .models import Attachment, ConnectionInfo, Message
from .mrkdwn import markdown_to_mrkdwn

logger = logging.getLogger("slack_flow.slack_client")

DEFAULT_API_BASE_URL = "https://slack.com/api"
DEFAULT_ATTACHMENT_DIR = Path(tempfile.gettempdir()) / "slack_flow_attachments"


class SlackApiError(RuntimeError):
    """A Slack call failed at the HTTP level or returned ok=false."""

    def __init__(self, method: str, error: str):
        super().__init__(f"Slack {method} failed: {error}")
        self.method = method
        self.error = error


def _to_message(raw: dict[str, Any], channel_id: str) -> Message:
    attachments = tuple(
        Attachment(
            id=str(item.get("id", "")),
            display_name=item.get("name"),
            mime_type=item.get("mimetype"),
            private_url=item.get("url_private"),
        )
        for item in raw.get("files") or []
        if isinstance(item, dict)
    )
    return Message(
        id=str(raw["ts"]),
        channel_id=channel_id,
        author_id=raw.get("user"),
        text=raw.get("text"),
        attachments=attachments,
        parent_thread_id=raw.get("thread_ts"),
    )


class SlackClient:
    def __init__(
        self,
        bot_token: str,
        base_url: str = DEFAULT_API_BASE_URL,
        attachment_dir: Path | str = DEFAULT_ATTACHMENT_DIR,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.bot_token = bot_token
        self.base_url = base_url.rstrip("/")
        self.attachment_dir = Path(attachment_dir)
        self._http = httpx.Client(
            timeout=timeout,
            headers={"Authorization": f"Bearer {bot_token}"},
            transport=transport,
        )
        self.bot_user_id: str | None = None

    def close(self) -> None:
        self._http.close()

    def _call(self, method: str, *, params: dict[str, Any] | None = None, json: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self.base_url}/{method}"
        try:
            if json is not None:
                response = self._http.post(url, json=json)
            else:
                response = self._http.get(url, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as exc:
            raise SlackApiError(method, str(exc)) from exc
        except ValueError as exc:
            raise SlackApiError(method, f"invalid JSON response: {exc}") from exc
        if not payload.get("ok"):
            raise SlackApiError(method, str(payload.get("error", "unknown_error")))
        return payload

    def test_connection(self) -> ConnectionInfo:
        payload = self._call("auth.test", json={})
        info = ConnectionInfo(
            ok=bool(payload.get("ok")),
            bot_user_id=payload.get("user_id"),
            bot_id=payload.get("bot_id"),
            bot_name=payload.get("user"),
        )
        self.bot_user_id = info.bot_user_id
        logger.info("Slack connection ok: bot=%s user_id=%s", info.bot_name, info.bot_user_id)
        return info

    def fetch_history(self, channel_id: str, since_ts: str | None = None) -> list[Message]:
        params: dict[str, Any] = {"channel": channel_id, "limit": 100}
        if since_ts:
            params.update(oldest=since_ts, inclusive="true")
        payload = self._call("conversations.history", params=params)
        messages = [
            _to_message(raw, channel_id) for raw in payload.get("messages") or [] if raw.get("ts")
        ]
        logger.debug("Fetched %d messages from %s (oldest=%s)", len(messages), channel_id, since_ts)
        return messages

    def fetch_thread_replies(self, channel_id: str, thread_id: str, since_ts: str | None = None) -> list[Message]:
        params: dict[str, Any] = {"channel": channel_id, "ts": thread_id, "limit": 100}
        if since_ts:
            params.update(oldest=since_ts, inclusive="true")
        payload = self._call("conversations.replies", params=params)
        messages = [
            _to_message(raw, channel_id) for raw in payload.get("messages") or [] if raw.get("ts")
        ]
        logger.debug(
            "Fetched %d replies from %s/%s (oldest=%s)", len(messages), channel_id, thread_id, since_ts
        )
        return messages

    def post_message(self, channel_id: str, text: str, thread_id: str | None = None) -> None:
        body: dict[str, Any] = {"channel": channel_id, "text": markdown_to_mrkdwn(text)}
        if thread_id:
            body["thread_ts"] = thread_id
        self._call("chat.postMessage", json=body)
        logger.info("Posted message to %s thread=%s (%d chars)", channel_id, thread_id or "-", len(text))

    def download_attachment(self, attachment: Attachment) -> str:
        """Download a private file and return the local path."""
        if not attachment.private_url:
            raise SlackApiError("files.download", f"attachment {attachment.id} has no private URL")

        self.attachment_dir.mkdir(parents=True, exist_ok=True)
        name = Path(attachment.display_name or f"{attachment.id}.png").name
        target = self.attachment_dir / f"slack-{int(time.time() * 1000)}-{name}"

        try:
            with self._http.stream("GET", attachment.private_url) as response:
                if response.status_code != 200:
                    raise SlackApiError("files.download", f"HTTP {response.status_code}")
                with target.open("wb") as fh:
                    for chunk in response.iter_bytes():
                        fh.write(chunk)
        except httpx.HTTPError as exc:
            target.unlink(missing_ok=True)
            raise SlackApiError("files.download", str(exc)) from exc
        except SlackApiError:
            target.unlink(missing_ok=True)
            raise

        logger.info("Downloaded attachment %s to %s", attachment.id, target)
        return str(target)
