from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field

from .models import ExecutionResult, FileMutation, FileMutationKind

logger = logging.getLogger("slack_flow.claude_cli_connector")

NO_OUTPUT_PLACEHOLDER = "(no output)"

# File access, search, git/npm and a few plain shell commands.
BASE_ALLOWED_TOOLS: tuple[str, ...] = (
    "Read",
    "Write",
    "Edit",
    "Grep",
    "Glob",
    "Bash(git:*)",
    "Bash(npm:*)",
    "Bash(npx:*)",
    "Bash(ls:*)",
    "Bash(cat:*)",
    "Bash(mkdir:*)",
    "Bash(rm:*)",
    "Bash(mv:*)",
    "Bash(cp:*)",
)


def _stop_process_group(proc: subprocess.Popen[str], grace_seconds: float = 0.5) -> bool:
    """Signal the CLI's process group, SIGTERM first and SIGKILL if it lingers.

    Returns False when the process had already exited.
    """
    if proc.poll() is not None:
        return False
    for sig in (signal.SIGTERM, signal.SIGKILL):
        try:
            # The CLI runs with start_new_session=True, so its pid is the group id.
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            break
        except OSError:
            try:
                proc.send_signal(sig)
            except OSError:
                logger.warning("Could not signal Claude CLI pid=%s", proc.pid, exc_info=True)
                return False
        try:
            proc.wait(timeout=grace_seconds)
            break
        except subprocess.TimeoutExpired:
            logger.warning("Claude CLI pid=%s still running after %s", proc.pid, sig.name)
    return True


@dataclass(slots=True)
class StreamDecodeResult:
    result_text: str = ""
    session_id: str | None = None
    file_mutations: list[FileMutation] = field(default_factory=list)


def decode_stream_json(raw_output: str) -> StreamDecodeResult:
    """Decode `claude --output-format stream-json` output.

    Each line is decoded on its own. Lines that are not JSON objects are
    skipped: the CLI may interleave diagnostics with protocol records. A later
    "result" record replaces an earlier one.
    """
    decoded = StreamDecodeResult()
    for line in raw_output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(record, dict):
            continue

        tool_result = record.get("tool_use_result")
        if isinstance(tool_result, dict) and tool_result.get("filePath"):
            decoded.file_mutations.append(
                FileMutation(
                    kind=FileMutationKind.from_protocol(tool_result.get("type")),
                    path=str(tool_result["filePath"]),
                )
            )

        if record.get("type") == "result":
            result = record.get("result")
            decoded.result_text = result if isinstance(result, str) else ""
            session_id = record.get("session_id")
            decoded.session_id = session_id if isinstance(session_id, str) and session_id else None
    return decoded


class ClaudeCliConnector:
    """Runs one `claude -p` process per instruction in stream-json mode.

    Only the stream records carry the session id (for `--resume`) and the
    file changes made by the tools.
    """

    def __init__(
        self,
        claude_command: str = "claude",
        timeout: float = 300.0,
        model: str = "",
        allowed_tools: list[str] | None = None,
    ):
        """Initialize the connector.

        Args:
            claude_command: Path to the claude binary (default: "claude")
            timeout: Timeout in seconds for each run (default: 300s/5min)
            model: Model passed via --model. Empty = claude default
            allowed_tools: Extra tools appended to BASE_ALLOWED_TOOLS
        """
        self.claude_command = claude_command
        self.timeout = timeout
        self.model = model.strip()
        self.allowed_tools = [t.strip() for t in (allowed_tools or []) if t and t.strip()]
        self._lock = threading.Lock()
        # pid -> process, for shutdown
        self._running: dict[int, subprocess.Popen[str]] = {}

    def build_allowed_tools(self, additional: list[str] | None = None) -> list[str]:
        tools: list[str] = []
        for tool in (*BASE_ALLOWED_TOOLS, *self.allowed_tools, *(additional or [])):
            tool = tool.strip()
            if tool and tool not in tools:
                tools.append(tool)
        return tools

    def build_command(
        self,
        prompt: str,
        images: list[str] | None = None,
        resume_session_id: str | None = None,
        system_prompt: str | None = None,
        additional_allowed_tools: list[str] | None = None,
    ) -> list[str]:
        cmd = [
            self.claude_command,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--allowedTools",
            ",".join(self.build_allowed_tools(additional_allowed_tools)),
        ]
        if self.model:
            cmd.extend(["--model", self.model])
        if system_prompt:
            cmd.extend(["--system-prompt", system_prompt])
        if resume_session_id:
            cmd.extend(["--resume", resume_session_id])
        # Images go last so they are never read as an option value.
        cmd.extend(images or [])
        return cmd

    def execute(
        self,
        prompt: str,
        working_directory: str,
        images: list[str] | None = None,
        resume_session_id: str | None = None,
        system_prompt: str | None = None,
        additional_allowed_tools: list[str] | None = None,
    ) -> ExecutionResult:
        """Run the CLI and decode its stream. Failures are returned, not raised."""
        cmd = self.build_command(
            prompt,
            images=images,
            resume_session_id=resume_session_id,
            system_prompt=system_prompt,
            additional_allowed_tools=additional_allowed_tools,
        )
        logger.info(
            "Executing Claude CLI: cwd=%s prompt_chars=%d images=%d resume=%s timeout=%.1fs",
            working_directory,
            len(prompt),
            len(images or []),
            resume_session_id or "-",
            self.timeout,
        )

        started_at = time.monotonic()
        proc: subprocess.Popen[str] | None = None
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=working_directory,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env={**os.environ, "FORCE_COLOR": "0"},
                start_new_session=True,
            )
            with self._lock:
                self._running[proc.pid] = proc
            try:
                stdout, stderr = proc.communicate(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                _stop_process_group(proc)
                stdout, stderr = self._drain(proc)
                logger.error(
                    "Claude CLI timed out after %.1fs (cwd=%s, stdout_chars=%d)",
                    self.timeout,
                    working_directory,
                    len(stdout),
                )
                timeout_note = f"Timed out after {int(self.timeout)}s."
                return self._result(
                    succeeded=False,
                    stdout=stdout,
                    error_text=f"{stderr.strip()}\n{timeout_note}".strip(),
                    started_at=started_at,
                )

            returncode = int(proc.returncode or 0)
            if returncode != 0:
                error_text = stderr.strip() or f"Claude CLI exited with code {returncode}"
                logger.error("Claude CLI failed: returncode=%d stderr=%s", returncode, error_text)
                return self._result(
                    succeeded=False, stdout=stdout, error_text=error_text, started_at=started_at
                )

            return self._result(succeeded=True, stdout=stdout, started_at=started_at)

        except FileNotFoundError:
            logger.error("Claude binary not found: %s", self.claude_command)
            return ExecutionResult(
                succeeded=False,
                output_text=NO_OUTPUT_PLACEHOLDER,
                error_text=(
                    f"Claude CLI not found at '{self.claude_command}'. "
                    "Check the slack_flow_claude_cli_command setting."
                ),
            )
        except Exception as exc:
            logger.exception("Unexpected error during Claude CLI run: %s", exc)
            return ExecutionResult(
                succeeded=False,
                output_text=NO_OUTPUT_PLACEHOLDER,
                error_text=f"{type(exc).__name__}: {exc}",
            )
        finally:
            if proc is not None:
                with self._lock:
                    self._running.pop(proc.pid, None)

    def cancel_active_processes(self) -> int:
        with self._lock:
            running = list(self._running.values())
        stopped = sum(1 for proc in running if _stop_process_group(proc))
        if stopped:
            logger.info("Stopped %d running Claude CLI process(es)", stopped)
        return stopped

    @staticmethod
    def _drain(proc: subprocess.Popen[str]) -> tuple[str, str]:
        """Collect whatever a terminated process left in its pipes."""
        try:
            stdout, stderr = proc.communicate(timeout=5.0)
        except (subprocess.TimeoutExpired, ValueError, OSError):
            logger.warning("Could not collect output of terminated Claude CLI pid=%s", proc.pid)
            return "", ""
        return stdout or "", stderr or ""

    @staticmethod
    def _result(
        *,
        succeeded: bool,
        stdout: str,
        started_at: float,
        error_text: str | None = None,
    ) -> ExecutionResult:
        stdout = stdout or ""
        decoded = decode_stream_json(stdout)
        logger.info(
            "Claude CLI finished: succeeded=%s duration=%.2fs result_chars=%d session_id=%s mutations=%d",
            succeeded,
            time.monotonic() - started_at,
            len(decoded.result_text),
            decoded.session_id or "-",
            len(decoded.file_mutations),
        )
        return ExecutionResult(
            succeeded=succeeded,
            output_text=decoded.result_text or NO_OUTPUT_PLACEHOLDER,
            error_text=error_text,
            external_session_id=decoded.session_id,
            file_mutations=tuple(decoded.file_mutations),
            raw_output=stdout,
        )
