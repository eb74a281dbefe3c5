"""Typed payload definitions for each RunledgerEvent.

Usage example::

    from runledger.events import EventBus, RunledgerEvent
    from runledger.events.payloads import CompactionCompletedPayload

    def on_compaction(event: RunledgerEvent, payload: CompactionCompletedPayload) -> None:
        print(f"{payload['tokens_before']} → {payload['tokens_after']} tokens")

    bus.subscribe(RunledgerEvent.COMPACTION_COMPLETED, on_compaction)  # type: ignore[arg-type]
"""

from __future__ import annotations

from typing import TypedDict

# ── Session lifecycle ─────────────────────────────────────────────────────────


class SessionCreatedPayload(TypedDict):
    """Payload for :attr:`RunledgerEvent.SESSION_CREATED`."""

    session_id: str


class SessionLoadedPayload(TypedDict):
    """Payload for :attr:`RunledgerEvent.SESSION_LOADED`."""

    session_id: str
    total_tokens: int
    has_summary: bool


# ── Ledger ────────────────────────────────────────────────────────────────────


class MessageAppendedPayload(TypedDict):
    """Payload for :attr:`RunledgerEvent.MESSAGE_APPENDED`."""

    session_id: str
    message_id: int
    role: str
    token_count: int | None


# ── Compaction lifecycle ──────────────────────────────────────────────────────


class CompactionTriggeredPayload(TypedDict):
    """Payload for :attr:`RunledgerEvent.COMPACTION_TRIGGERED`."""

    session_id: str
    total_tokens: int
    threshold: int


class CompactionCompletedPayload(TypedDict):
    """Payload for :attr:`RunledgerEvent.COMPACTION_COMPLETED`."""

    session_id: str
    compacted_count: int
    pruned: int
    summary_length: int
    tokens_before: int
    tokens_after: int


class CompactionFailedPayload(TypedDict):
    """Payload for :attr:`RunledgerEvent.COMPACTION_FAILED`."""

    session_id: str
    error: str


# ── Sandbox lifecycle ─────────────────────────────────────────────────────────


class SandboxCreatedPayload(TypedDict):
    """Payload for :attr:`RunledgerEvent.SANDBOX_CREATED`."""

    container_name: str
    image: str


class SandboxRecreatedPayload(TypedDict):
    """Payload for :attr:`RunledgerEvent.SANDBOX_RECREATED`."""

    container_name: str
    reason: str


# ── Agent steps ───────────────────────────────────────────────────────────────


class RunStartedPayload(TypedDict):
    """Payload for :attr:`RunledgerEvent.RUN_STARTED`."""

    session_id: str
    run_id: int
    step_no: int


class RunFinishedPayload(TypedDict):
    """Payload for :attr:`RunledgerEvent.RUN_FINISHED`."""

    session_id: str
    run_id: int
    status: str
    error: str | None
