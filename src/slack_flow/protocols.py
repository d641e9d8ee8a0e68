"""Protocol interfaces for the relay's collaborators.

The orchestrator and daemon depend on these rather than on the concrete
Slack client and Claude connector, which keeps them testable with fakes.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from .models import Attachment, ConnectionInfo, ExecutionResult, Message


@runtime_checkable
class ChatClientProtocol(Protocol):
    """Protocol for the chat platform client."""

    def test_connection(self) -> ConnectionInfo:
        """Check credentials and return the bot identity."""
        ...

    def fetch_history(self, channel_id: str, since_ts: str | None = None) -> list[Message]:
        """Top-level channel messages at or after `since_ts`."""
        ...

    def fetch_thread_replies(self, channel_id: str, thread_id: str, since_ts: str | None = None) -> list[Message]:
        """Thread messages at or after `since_ts`, root included."""
        ...

    def post_message(self, channel_id: str, text: str, thread_id: str | None = None) -> None:
        """Post a message, in a thread when `thread_id` is given."""
        ...

    def download_attachment(self, attachment: Attachment) -> str:
        """Download an attachment and return the local file path."""
        ...


@runtime_checkable
class ConnectorProtocol(Protocol):
    """Protocol for the code-generation CLI backend."""

    def execute(
        self,
        prompt: str,
        working_directory: str,
        images: list[str] | None = None,
        resume_session_id: str | None = None,
        system_prompt: str | None = None,
        additional_allowed_tools: list[str] | None = None,
    ) -> ExecutionResult:
        """Run one instruction; never raises."""
        ...

    def cancel_active_processes(self) -> int:
        """Terminate in-flight runs, returning how many were stopped."""
        ...
