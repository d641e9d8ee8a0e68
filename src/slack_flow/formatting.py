from __future__ import annotations

from .models import ExecutionResult, FileMutation, FileMutationKind

# Slack rejects messages above 4000 characters.
DEFAULT_MAX_REPLY_CHARS = 3900
TRUNCATION_MARKER = "\n...(truncated)"

_MUTATION_LABELS: dict[FileMutationKind, str] = {
    FileMutationKind.CREATE: "Created",
    FileMutationKind.EDIT: "Edited",
    FileMutationKind.DELETE: "Deleted",
    FileMutationKind.UNKNOWN: "Changed",
}


def relative_to_project(path: str, project_path: str) -> str:
    root = project_path.rstrip("/")
    if root and path.startswith(root + "/"):
        return path[len(root) + 1:]
    return path


def format_file_mutations(mutations: list[FileMutation] | tuple[FileMutation, ...], project_path: str) -> str:
    if not mutations:
        return ""
    lines = [
        f"• [{_MUTATION_LABELS[mutation.kind]}] {relative_to_project(mutation.path, project_path)}"
        for mutation in mutations
    ]
    return "\n\n**Changed files:**\n" + "\n".join(lines)


def truncate_reply(text: str, max_chars: int = DEFAULT_MAX_REPLY_CHARS, marker: str = TRUNCATION_MARKER) -> str:
    """Clip `text` to `max_chars`, marker included."""
    if len(text) <= max_chars:
        return text
    keep = max(0, max_chars - len(marker))
    return (text[:keep] + marker)[:max_chars]


def format_execution_reply(
    result: ExecutionResult,
    project_path: str,
    max_chars: int = DEFAULT_MAX_REPLY_CHARS,
) -> str:
    text = result.output_text
    if not result.succeeded:
        raw_output = result.raw_output.strip() or "(none)"
        error_block = f"Error:\n{result.error_text or 'unknown error'}\n\nOutput:\n{raw_output}"
        text = f"{error_block}\n\n{text}"
    text += format_file_mutations(result.file_mutations, project_path)
    return truncate_reply(text, max_chars)
