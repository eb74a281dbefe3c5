"""Exception hierarchy shared by all runledger components."""

from __future__ import annotations


class RunledgerError(Exception):
    """Base class for all runledger errors."""


class ConfigurationError(RunledgerError):
    """Raised when settings are missing or invalid. Fatal at startup."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("Invalid configuration: " + "; ".join(problems))
        self.problems = problems


# ── Storage ────────────────────────────────────────────────────────────────────


class StorageError(RunledgerError):
    """The durable store is unreachable or rejected a write. Never retried."""


class StoreNotInitializedError(StorageError):
    """Raised when the ledger is used before ``initialize()``."""

    def __init__(self) -> None:
        super().__init__("Ledger is not initialized. Call initialize() first.")


class SessionNotFoundError(StorageError):
    """Raised when a session_id does not exist in the store."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id!r}")
        self.session_id = session_id


class DuplicateSessionError(StorageError):
    """Raised when creating a session whose id already exists."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Duplicate session ID: {session_id!r}")
        self.session_id = session_id


# ── Compaction ─────────────────────────────────────────────────────────────────


class SummarizationFailure(RunledgerError):
    """The summarization call failed. The compaction attempt had no effect."""


# ── Sandbox ────────────────────────────────────────────────────────────────────


class SandboxError(RunledgerError):
    """Base class for sandbox errors."""


class SandboxUnavailable(SandboxError):
    """The execution environment is unreachable or gone."""


class CommandTimeoutError(SandboxError):
    """A command did not complete within its timeout."""

    def __init__(self, command: str, timeout_ms: int) -> None:
        super().__init__(f"Command timed out after {timeout_ms}ms")
        self.command = command
        self.timeout_ms = timeout_ms
