from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum


class FileMutationKind(str, Enum):
    """Kinds of file changes reported by the Claude CLI stream."""

    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    UNKNOWN = "unknown"

    @classmethod
    def from_protocol(cls, value: object) -> FileMutationKind:
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.UNKNOWN


@dataclass(slots=True, frozen=True)
class Attachment:
    id: str
    display_name: str | None = None
    mime_type: str | None = None
    private_url: str | None = None

    @property
    def is_image(self) -> bool:
        return bool(self.mime_type and self.mime_type.startswith("image/"))


@dataclass(slots=True, frozen=True)
class Message:
    id: str
    channel_id: str
    author_id: str | None = None
    text: str | None = None
    attachments: tuple[Attachment, ...] = ()
    parent_thread_id: str | None = None


@dataclass(slots=True, frozen=True)
class ThreadKey:
    """Composite key of a Slack thread: channel id plus root message ts."""

    channel_id: str
    thread_id: str


@dataclass(slots=True)
class ThreadSession:
    project_name: str
    project_path: str
    external_session_id: str | None = None


@dataclass(slots=True, frozen=True)
class FileMutation:
    kind: FileMutationKind
    path: str


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    succeeded: bool
    output_text: str
    error_text: str | None = None
    external_session_id: str | None = None
    file_mutations: tuple[FileMutation, ...] = field(default_factory=tuple)
    raw_output: str = ""


@dataclass(slots=True, frozen=True)
class ConnectionInfo:
    ok: bool
    bot_user_id: str | None = None
    bot_id: str | None = None
    bot_name: str | None = None


def ts_value(ts: str) -> Decimal:
    """Numeric value of a Slack timestamp ("1700000000.000100")."""
    try:
        value = Decimal(ts)
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"invalid Slack timestamp: {ts!r}") from exc
    if not value.is_finite():
        raise ValueError(f"invalid Slack timestamp: {ts!r}")
    return value


def latest_ts(timestamps: list[str]) -> str | None:
    """Return the greatest timestamp of the list, or None when empty."""
    if not timestamps:
        return None
    return max(timestamps, key=ts_value)
