from __future__ import annotations

import asyncio
import logging
import signal
import time

from .claude_cli_connector import ClaudeCliConnector
from .config import RelaySettings
from .models import Message, ThreadKey, latest_ts, ts_value
from .orchestrator import RelayOrchestrator, RouteOutcome
from .protocols import ChatClientProtocol, ConnectorProtocol
from .slack_client import SlackClient
from .store import WatermarkTable

logger = logging.getLogger("slack_flow.daemon")


def _now_ts() -> str:
    return f"{time.time():.6f}"


def _oldest_first(messages: list[Message]) -> list[Message]:
    return sorted(messages, key=lambda m: ts_value(m.id))


class RelayDaemon:
    """Polls the configured channels and active threads, one tick at a time.

    Ticks never overlap: the session store and dedup ledger are updated
    read-modify-write, so a tick requested while another runs is skipped.
    """

    def __init__(
        self,
        settings: RelaySettings,
        client: ChatClientProtocol | None = None,
        connector: ConnectorProtocol | None = None,
    ):
        self.settings = settings
        self.client: ChatClientProtocol = client or SlackClient(
            settings.bot_token,
            base_url=settings.slack_api_base_url,
            attachment_dir=settings.attachment_temp_dir,
        )
        self.connector: ConnectorProtocol = connector or ClaudeCliConnector(
            claude_command=settings.claude_cli_command,
            timeout=settings.turn_timeout_seconds,
            model=settings.claude_cli_model,
            allowed_tools=settings.claude_cli_allowed_tools,
        )
        self.orchestrator = RelayOrchestrator(
            client=self.client,
            connector=self.connector,
            projects=settings.projects,
            channels=settings.channels,
            system_prompt=settings.system_prompt,
            command_prefix=settings.command_prefix,
            max_reply_chars=settings.max_reply_chars,
        )
        self.channel_watermarks = WatermarkTable()
        self.thread_watermarks = WatermarkTable()
        self._tick_lock = asyncio.Lock()
        self._thread_sem = asyncio.Semaphore(settings.max_concurrent_threads)
        self._shutdown_requested = False
        self.ticks_run = 0
        self.ticks_skipped = 0

    def start(self) -> None:
        """Verify the Slack connection and start watching from now on."""
        info = self.client.test_connection()
        if not info.ok:
            raise RuntimeError("Slack connection test failed")
        self.orchestrator.bot_user_id = info.bot_user_id
        started_at = _now_ts()
        for channel_id in self.settings.channels:
            self.channel_watermarks.advance(channel_id, started_at)
        logger.info(
            "Connected as %s (user_id=%s); watching %d channel(s) from ts=%s",
            info.bot_name,
            info.bot_user_id,
            len(self.settings.channels),
            started_at,
        )

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown_requested = True

    def shutdown(self) -> None:
        logger.info("Shutting down...")
        cancelled = self.connector.cancel_active_processes()
        if cancelled:
            logger.info("Cancelled %d running Claude process(es)", cancelled)
        close = getattr(self.client, "close", None)
        if callable(close):
            close()
        logger.info("Shutdown complete")

    async def run_forever(self) -> None:
        interval = self.settings.polling_interval_seconds
        logger.info("Polling every %.1fs", interval)
        while not self._shutdown_requested:
            started_at = time.monotonic()
            await self.tick()
            elapsed = time.monotonic() - started_at
            if elapsed > interval:
                logger.info("Tick took %.1fs (interval %.1fs); next tick starts now", elapsed, interval)
            await asyncio.sleep(max(0.0, interval - elapsed))

    async def tick(self) -> bool:
        """Run one polling pass. Returns False when a pass is already running."""
        if self._tick_lock.locked():
            self.ticks_skipped += 1
            logger.info("Previous tick still running; skipping")
            return False
        async with self._tick_lock:
            for channel_id in self.settings.channels:
                if self._shutdown_requested:
                    break
                await self._poll_channel(channel_id)
                await self._poll_active_threads(channel_id)
            self.ticks_run += 1
        return True

    async def _poll_channel(self, channel_id: str) -> None:
        since = self.channel_watermarks.get(channel_id)
        try:
            messages = await asyncio.to_thread(self.client.fetch_history, channel_id, since)
            newest = latest_ts([m.id for m in messages])
            ordered = _oldest_first(messages)
        except Exception as exc:
            logger.error("History fetch failed for %s: %s", channel_id, exc)
            return

        if newest is not None:
            self.channel_watermarks.advance(channel_id, newest)

        for message in ordered:
            if self._shutdown_requested:
                break
            try:
                result = await asyncio.to_thread(
                    self.orchestrator.handle_channel_message, message, channel_id
                )
            except Exception:
                logger.exception("Failed to handle message %s in %s", message.id, channel_id)
                continue
            if result.outcome is RouteOutcome.EXECUTED and result.thread is not None:
                self.thread_watermarks.advance(result.thread, message.id)

    async def _poll_active_threads(self, channel_id: str) -> None:
        threads = self.orchestrator.sessions.threads_in_channel(channel_id)
        if threads:
            await asyncio.gather(*(self._poll_thread_bounded(thread) for thread in threads))

    async def _poll_thread_bounded(self, thread: ThreadKey) -> None:
        async with self._thread_sem:
            await self._poll_thread(thread)

    async def _poll_thread(self, thread: ThreadKey) -> None:
        since = self.thread_watermarks.get(thread, default=thread.thread_id)
        try:
            replies = await asyncio.to_thread(
                self.client.fetch_thread_replies, thread.channel_id, thread.thread_id, since
            )
            newest = latest_ts([m.id for m in replies])
            ordered = _oldest_first(replies)
        except Exception as exc:
            logger.error(
                "Reply fetch failed for %s/%s: %s", thread.channel_id, thread.thread_id, exc
            )
            return

        if newest is not None:
            self.thread_watermarks.advance(thread, newest)

        for reply in ordered:
            if self._shutdown_requested:
                break
            if reply.id == thread.thread_id:
                continue
            try:
                await asyncio.to_thread(self.orchestrator.handle_thread_reply, reply, thread)
            except Exception:
                logger.exception(
                    "Failed to handle reply %s in %s/%s", reply.id, thread.channel_id, thread.thread_id
                )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    logging.getLogger().setLevel(level.upper())


async def run(settings: RelaySettings) -> None:
    configure_logging(settings.log_level)
    daemon = RelayDaemon(settings)
    daemon.start()

    loop = asyncio.get_running_loop()

    def handle_signal(sig: signal.Signals) -> None:
        logger.info("Received signal %s", sig.name)
        daemon.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    logger.info(
        "Slack Flow running. projects=%s channels=%s",
        ", ".join(sorted(settings.projects)),
        ", ".join(settings.channels) or "(none)",
    )
    try:
        await daemon.run_forever()
    finally:
        daemon.shutdown()
