from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .commanding import DEFAULT_COMMAND_PREFIX, parse_command, strip_mentions
from .formatting import DEFAULT_MAX_REPLY_CHARS, format_execution_reply
from .models import ExecutionResult, Message, ThreadKey, ThreadSession
from .protocols import ChatClientProtocol, ConnectorProtocol
from .store import DedupLedger, SessionStore

logger = logging.getLogger("slack_flow.orchestrator")

PROCESSING_ACK = "Processing..."


class RouteOutcome(str, Enum):
    DUPLICATE = "duplicate"
    IGNORED_BOT = "ignored_bot"
    IGNORED_THREAD_REPLY = "ignored_thread_reply"
    IGNORED_NOT_COMMAND = "ignored_not_command"
    IGNORED_EMPTY = "ignored_empty"
    PROJECT_NOT_FOUND = "project_not_found"
    NO_SESSION = "no_session"
    EXECUTED = "executed"


@dataclass(slots=True)
class RouteResult:
    outcome: RouteOutcome
    thread: ThreadKey | None = None
    execution: ExecutionResult | None = None


class RelayOrchestrator:
    """Routes single Slack messages to the Claude CLI and tracks thread sessions.

    Every message is claimed in the dedup ledger before anything with a side
    effect happens, so a message fetched by two overlapping polls is still
    handled once.
    """

    def __init__(
        self,
        client: ChatClientProtocol,
        connector: ConnectorProtocol,
        projects: dict[str, str],
        channels: dict[str, str] | None = None,
        system_prompt: str = "",
        command_prefix: str = DEFAULT_COMMAND_PREFIX,
        max_reply_chars: int = DEFAULT_MAX_REPLY_CHARS,
        bot_user_id: str | None = None,
        sessions: SessionStore | None = None,
        ledger: DedupLedger | None = None,
    ):
        self.client = client
        self.connector = connector
        self.projects = dict(projects)
        self.channels = dict(channels or {})
        self.system_prompt = system_prompt.strip()
        self.command_prefix = command_prefix
        self.max_reply_chars = max_reply_chars
        self.bot_user_id = bot_user_id
        self.sessions = sessions if sessions is not None else SessionStore()
        self.ledger = ledger if ledger is not None else DedupLedger()

    # --- Top-level channel messages ---

    def handle_channel_message(self, message: Message, channel_id: str) -> RouteResult:
        # Replies also sent to the channel show up in history; the thread poll owns them.
        if message.parent_thread_id and message.parent_thread_id != message.id:
            return RouteResult(RouteOutcome.IGNORED_THREAD_REPLY)
        if not self.ledger.claim(channel_id, message.id):
            return RouteResult(RouteOutcome.DUPLICATE)
        if self._is_own_message(message):
            return RouteResult(RouteOutcome.IGNORED_BOT)

        default_project = self.channels.get(channel_id) or None
        command = parse_command(message, default_project, prefix=self.command_prefix)
        if command is None:
            return RouteResult(RouteOutcome.IGNORED_NOT_COMMAND)

        thread = ThreadKey(channel_id, message.id)
        project_path = self.projects.get(command.project_name)
        if not project_path:
            logger.info("Unknown project %r requested in %s", command.project_name, channel_id)
            self.client.post_message(
                channel_id,
                f'Error: project "{command.project_name}" not found',
                thread.thread_id,
            )
            return RouteResult(RouteOutcome.PROJECT_NOT_FOUND, thread=thread)

        result = self._execute(
            message,
            thread,
            prompt=command.prompt_text,
            project_path=project_path,
            resume_session_id=None,
        )
        self.sessions.put(
            thread,
            ThreadSession(
                project_name=command.project_name,
                project_path=project_path,
                external_session_id=result.external_session_id,
            ),
        )
        logger.info(
            "Thread session created: channel=%s thread=%s project=%s session_id=%s",
            thread.channel_id,
            thread.thread_id,
            command.project_name,
            result.external_session_id or "-",
        )
        self._reply(thread, result, project_path)
        return RouteResult(RouteOutcome.EXECUTED, thread=thread, execution=result)

    # --- Replies inside an active thread ---

    def handle_thread_reply(self, message: Message, thread: ThreadKey) -> RouteResult:
        if not self.ledger.claim(thread.channel_id, message.id):
            return RouteResult(RouteOutcome.DUPLICATE, thread=thread)
        if self._is_own_message(message):
            return RouteResult(RouteOutcome.IGNORED_BOT, thread=thread)

        prompt = strip_mentions(message.text or "")
        if not prompt:
            return RouteResult(RouteOutcome.IGNORED_EMPTY, thread=thread)

        session = self.sessions.get(thread)
        if session is None:
            logger.warning("No session for thread %s/%s", thread.channel_id, thread.thread_id)
            return RouteResult(RouteOutcome.NO_SESSION, thread=thread)

        logger.info(
            "Thread reply: channel=%s thread=%s project=%s prompt_chars=%d resume=%s",
            thread.channel_id,
            thread.thread_id,
            session.project_name,
            len(prompt),
            session.external_session_id or "-",
        )
        result = self._execute(
            message,
            thread,
            prompt=prompt,
            project_path=session.project_path,
            resume_session_id=session.external_session_id,
        )
        if result.external_session_id:
            session.external_session_id = result.external_session_id
            self.sessions.put(thread, session)
        self._reply(thread, result, session.project_path)
        return RouteResult(RouteOutcome.EXECUTED, thread=thread, execution=result)

    # --- Helpers ---

    def _is_own_message(self, message: Message) -> bool:
        return bool(self.bot_user_id) and message.author_id == self.bot_user_id

    def _execute(
        self,
        message: Message,
        thread: ThreadKey,
        *,
        prompt: str,
        project_path: str,
        resume_session_id: str | None,
    ) -> ExecutionResult:
        self.client.post_message(thread.channel_id, PROCESSING_ACK, thread.thread_id)

        images = self._download_images(message)
        try:
            result = self.connector.execute(
                prompt,
                project_path,
                images=images or None,
                resume_session_id=resume_session_id,
                system_prompt=self.system_prompt or None,
            )
        finally:
            self._remove_downloads(images)
        return result

    def _reply(self, thread: ThreadKey, result: ExecutionResult, project_path: str) -> None:
        reply = format_execution_reply(result, project_path, self.max_reply_chars)
        self.client.post_message(thread.channel_id, reply, thread.thread_id)

    def _download_images(self, message: Message) -> list[str]:
        paths: list[str] = []
        for attachment in message.attachments:
            if not attachment.is_image:
                continue
            try:
                paths.append(self.client.download_attachment(attachment))
            except Exception as exc:
                logger.error("Image download failed for %s: %s", attachment.id, exc)
        return paths

    @staticmethod
    def _remove_downloads(paths: list[str]) -> None:
        for path in paths:
            try:
                Path(path).unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove downloaded image %s: %s", path, exc)
