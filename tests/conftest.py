"""Shared test fixtures for Slack Flow tests."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from slack_flow.models import (  # noqa: E402
    Attachment,
    ConnectionInfo,
    ExecutionResult,
    FileMutation,
    FileMutationKind,
    Message,
)

BOT_USER_ID = "UBOT"


class FakeChatClient:
    """Fake Slack client: scripted fetch results, recorded posts."""

    def __init__(self) -> None:
        self.history: dict[str, list[Message]] = {}
        self.replies: dict[tuple[str, str], list[Message]] = {}
        self.history_calls: list[tuple[str, str | None]] = []
        self.reply_calls: list[tuple[str, str, str | None]] = []
        self.posts: list[tuple[str, str, str | None]] = []
        self.downloads: list[str] = []
        self.fail_history: set[str] = set()
        self.fail_downloads = False
        self.download_dir: Path | None = None
        self.closed = False

    def test_connection(self) -> ConnectionInfo:
        return ConnectionInfo(ok=True, bot_user_id=BOT_USER_ID, bot_id="BBOT", bot_name="relay")

    def fetch_history(self, channel_id: str, since_ts: str | None = None) -> list[Message]:
        self.history_calls.append((channel_id, since_ts))
        if channel_id in self.fail_history:
            raise RuntimeError("slack unavailable")
        return list(self.history.get(channel_id, []))

    def fetch_thread_replies(
        self, channel_id: str, thread_id: str, since_ts: str | None = None
    ) -> list[Message]:
        self.reply_calls.append((channel_id, thread_id, since_ts))
        return list(self.replies.get((channel_id, thread_id), []))

    def post_message(self, channel_id: str, text: str, thread_id: str | None = None) -> None:
        self.posts.append((channel_id, text, thread_id))

    def download_attachment(self, attachment: Attachment) -> str:
        if self.fail_downloads or not attachment.private_url:
            raise RuntimeError(f"cannot download {attachment.id}")
        assert self.download_dir is not None
        path = self.download_dir / f"{attachment.id}.png"
        path.write_bytes(b"png")
        self.downloads.append(str(path))
        return str(path)

    def close(self) -> None:
        self.closed = True

    def texts(self) -> list[str]:
        return [text for _, text, _ in self.posts]


@dataclass
class FakeConnector:
    """Fake Claude connector returning scripted results in order."""

    results: list[ExecutionResult] = field(default_factory=list)
    calls: list[dict[str, Any]] = field(default_factory=list)
    cancelled: int = 0

    def execute(
        self,
        prompt: str,
        working_directory: str,
        images: list[str] | None = None,
        resume_session_id: str | None = None,
        system_prompt: str | None = None,
        additional_allowed_tools: list[str] | None = None,
    ) -> ExecutionResult:
        self.calls.append(
            {
                "prompt": prompt,
                "cwd": working_directory,
                "images": images,
                "resume": resume_session_id,
                "system_prompt": system_prompt,
            }
        )
        if self.results:
            return self.results.pop(0)
        return ExecutionResult(succeeded=True, output_text="done", external_session_id="sess-default")

    def cancel_active_processes(self) -> int:
        self.cancelled += 1
        return 0


def make_message(
    ts: str,
    text: str | None,
    *,
    channel: str = "C1",
    user: str | None = "UHUMAN",
    attachments: tuple[Attachment, ...] = (),
    thread_ts: str | None = None,
) -> Message:
    return Message(
        id=ts,
        channel_id=channel,
        author_id=user,
        text=text,
        attachments=attachments,
        parent_thread_id=thread_ts,
    )


def ok_result(text: str = "done", session_id: str | None = "sess-1", mutations=()) -> ExecutionResult:
    return ExecutionResult(
        succeeded=True,
        output_text=text,
        external_session_id=session_id,
        file_mutations=tuple(mutations),
    )


def create_mutation(path: str) -> FileMutation:
    return FileMutation(kind=FileMutationKind.CREATE, path=path)


@pytest.fixture
def fake_client(tmp_path) -> FakeChatClient:
    """Provide a fake Slack client for tests."""
    client = FakeChatClient()
    client.download_dir = tmp_path
    return client


@pytest.fixture
def fake_connector() -> FakeConnector:
    """Provide a fake connector for tests."""
    return FakeConnector()
