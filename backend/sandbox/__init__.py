"""Sandbox management module for Docker-based code execution.

This module provides the SandboxManager class for managing isolated Docker
containers where the coding agent writes and runs generated code.
"""

from sandbox.docker_sandbox import (
    CommandExitError,
    SandboxConnectionError,
    SandboxCreationError,
    SandboxError,
    SandboxManager,
    SandboxSession,
)
from sandbox.security import resolve_workspace_path, validate_command
from sandbox.sessions import SandboxSessionStore

__all__ = [
    "CommandExitError",
    "SandboxConnectionError",
    "SandboxCreationError",
    "SandboxError",
    "SandboxManager",
    "SandboxSession",
    "SandboxSessionStore",
    "resolve_workspace_path",
    "validate_command",
]
