"""Agent tools: shell commands in the sandbox, file access in the workspace."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ValidationError

from runledger.errors import SandboxError
from runledger.sandbox.manager import SandboxManager

FAILED_EXIT_CODE = -1
"""Exit code reported when a command could not be run at all."""


class ShellOutcome(BaseModel):
    """Result of ``run_shell`` as returned to the model."""

    success: bool
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class FileOutcome(BaseModel):
    """Result of ``read_file`` / ``write_file`` as returned to the model."""

    success: bool
    path: str
    content: str | None = None
    error: str | None = None


class ToolFailure(BaseModel):
    """Returned for unknown tools or arguments that do not validate."""

    success: bool = False
    error: str


class _RunShellArgs(BaseModel):
    command: str
    timeout_ms: int | None = None


class _ReadFileArgs(BaseModel):
    path: str


class _WriteFileArgs(BaseModel):
    path: str
    content: str


TOOL_SPECS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "run_shell",
            "description": (
                "Execute a shell command in the sandboxed container. Use this to run "
                "code, install packages, or perform system operations."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "The shell command to execute"},
                    "timeout_ms": {
                        "type": "integer",
                        "description": "Timeout in milliseconds (default: 30000)",
                    },
                },
                "required": ["command"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": "Read a text file from the workspace.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Path relative to the workspace"},
                },
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": (
                "Write content to a file in the workspace. Creates the file and any "
                "missing parent directories; overwrites an existing file."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Path relative to the workspace"},
                    "content": {"type": "string", "description": "Content to write"},
                },
                "required": ["path", "content"],
            },
        },
    },
]


class ToolBox:
    """
    The fixed tool set offered to the turn-generation model.

    Every tool returns a structured outcome instead of raising, so a failing
    tool never aborts the agent's turn. File paths are resolved against the
    host workspace (the directory bind-mounted into the sandbox) and may not
    escape it.
    """

    def __init__(self, sandbox: SandboxManager, workspace: str | Path | None = None) -> None:
        self._sandbox = sandbox
        self._workspace = Path(workspace or sandbox.config.host_workspace).resolve()
        self._logger = structlog.get_logger("runledger.tools")

    @property
    def workspace(self) -> Path:
        return self._workspace

    def _resolve(self, path: str) -> Path:
        target = (self._workspace / path).resolve()
        if not target.is_relative_to(self._workspace):
            raise ValueError(f"Path escapes the workspace: {path}")
        return target

    async def run_shell(self, command: str, timeout_ms: int | None = None) -> ShellOutcome:
        self._logger.info("tool_run_shell", command=command, timeout_ms=timeout_ms)
        try:
            result = await self._sandbox.execute(command, timeout_ms)
        except SandboxError as exc:
            self._logger.error("tool_run_shell_failed", command=command, error=str(exc))
            return ShellOutcome(
                success=False,
                exit_code=FAILED_EXIT_CODE,
                stdout="",
                stderr=str(exc) or "Command execution failed",
            )
        return ShellOutcome(
            success=result.exit_code == 0,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    async def read_file(self, path: str) -> FileOutcome:
        self._logger.info("tool_read_file", path=path)
        try:
            target = self._resolve(path)
            if not target.is_file():
                return FileOutcome(success=False, path=path, error=f"File not found: {path}")
            content = target.read_text(encoding="utf-8", errors="replace")  # noqa: ASYNC240
        except (OSError, ValueError) as exc:
            self._logger.warning("tool_read_file_failed", path=path, error=str(exc))
            return FileOutcome(success=False, path=path, error=str(exc))
        return FileOutcome(success=True, path=path, content=content)

    async def write_file(self, path: str, content: str) -> FileOutcome:
        self._logger.info("tool_write_file", path=path, content_length=len(content))
        try:
            target = self._resolve(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")  # noqa: ASYNC240
        except (OSError, ValueError) as exc:
            self._logger.warning("tool_write_file_failed", path=path, error=str(exc))
            return FileOutcome(success=False, path=path, error=str(exc))
        return FileOutcome(success=True, path=path)

    async def dispatch(self, name: str, arguments: str | dict[str, Any]) -> BaseModel:
        """
        Route one model tool call to its implementation.

        *arguments* may be the raw JSON string from the provider. Unknown tools
        and malformed arguments produce a failed outcome, never an exception.
        """
        try:
            args = json.loads(arguments) if isinstance(arguments, str) else dict(arguments)
            if name == "run_shell":
                shell = _RunShellArgs.model_validate(args)
                return await self.run_shell(shell.command, shell.timeout_ms)
            if name == "read_file":
                read = _ReadFileArgs.model_validate(args)
                return await self.read_file(read.path)
            if name == "write_file":
                write = _WriteFileArgs.model_validate(args)
                return await self.write_file(write.path, write.content)
        except (json.JSONDecodeError, TypeError, ValidationError) as exc:
            self._logger.warning("tool_arguments_invalid", tool=name, error=str(exc))
            return ToolFailure(error=f"Invalid arguments for {name}: {exc}")
        self._logger.warning("tool_unknown", tool=name)
        return ToolFailure(error=f"Unknown tool: {name}")
