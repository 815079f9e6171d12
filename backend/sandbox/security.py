"""Input checks for sandbox file and command operations.

Agents address files relative to the sandbox workspace (``/home/user``) but
frequently echo the absolute form back. Both are accepted as long as the
resolved location stays inside the workspace.
"""

import posixpath

# Upper bound for captured stdout/stderr kept in memory per command.
MAX_CAPTURED_OUTPUT_CHARS = 50_000


def resolve_workspace_path(workspace: str, path: str) -> str:
    """Resolve an agent-supplied path to a path relative to the workspace.

    Args:
        workspace: Absolute workspace directory inside the sandbox.
        path: Relative path, or an absolute path under ``workspace``.

    Returns:
        The normalized path relative to ``workspace`` (e.g. ``app/page.tsx``).

    Raises:
        ValueError: If the path is empty, contains a null byte, or escapes
            the workspace.

    Examples:
        >>> resolve_workspace_path("/home/user", "app/page.tsx")
        'app/page.tsx'
        >>> resolve_workspace_path("/home/user", "/home/user/app/page.tsx")
        'app/page.tsx'
    """
    if not path or not path.strip():
        raise ValueError("Path cannot be empty")
    if "\x00" in path:
        raise ValueError("Path contains null byte")

    root = posixpath.normpath(workspace)
    candidate = path.strip().replace("\\", "/")
    if candidate.startswith("/"):
        absolute = posixpath.normpath(candidate)
    else:
        absolute = posixpath.normpath(posixpath.join(root, candidate))

    if absolute == root or not absolute.startswith(root + "/"):
        raise ValueError(f"Path outside workspace: {path}")

    return posixpath.relpath(absolute, root)


def validate_command(command: str) -> None:
    """Reject command strings that cannot be handed to a shell.

    The sandbox itself is the isolation boundary, so any non-empty command
    is otherwise allowed.

    Raises:
        ValueError: If the command is blank or contains a null byte.
    """
    if not command or not command.strip():
        raise ValueError("Command cannot be empty")
    if "\x00" in command:
        raise ValueError("Command contains null byte")


def sanitize_output(output: str, max_length: int = MAX_CAPTURED_OUTPUT_CHARS) -> str:
    """Bound captured command output, keeping the most recent text.

    Build tools print the interesting failure at the end, so the head of an
    oversized stream is dropped rather than the tail.
    """
    if not output:
        return ""
    if len(output) <= max_length:
        return output
    omitted = len(output) - max_length
    return f"[truncated, {omitted} chars omitted]\n" + output[-max_length:]
