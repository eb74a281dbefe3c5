"""Session orchestrator: ledger + token budget + compaction for one conversation."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Literal

import structlog
from ulid import ULID

from runledger.compaction.engine import CompactionEngine
from runledger.compaction.summarizer import LiteLLMSummarizer, Summarizer
from runledger.context.builder import BuiltContext, build_context
from runledger.errors import SummarizationFailure
from runledger.events.bus import EventBus, RunledgerEvent
from runledger.models.config import RunledgerConfig
from runledger.models.message import (
    Message,
    MessageContent,
    Role,
    Run,
    SessionState,
)
from runledger.store.ledger import MessageLedger
from runledger.store.pool import StorePool
from runledger.tokens.budget import TokenBudget


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"sess"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


class AgentSession:
    """
    One conversation's memory: append turns, assemble model input, compact.

    The in-memory ``total_tokens`` always equals the sum of the persisted
    messages' token counts plus the estimated cost of the current summary.
    Turns are processed strictly one at a time per session; compaction runs
    as a post-turn hook (:meth:`check_and_compact`) that the caller invokes
    after persisting a model response.

    Usage::

        async with AgentSession.open(config=config) as session:
            await session.add_turn("user", "List the files", token_count=12)
            context = await session.build_context(preamble=system_prompt)
            ...
            await session.add_turn("assistant", reply, token_count=usage.output)
            await session.check_and_compact()
    """

    def __init__(
        self,
        session_id: str,
        config: RunledgerConfig,
        ledger: MessageLedger,
        engine: CompactionEngine,
        event_bus: EventBus,
        *,
        summary: str | None = None,
        total_tokens: int = 0,
        owns_ledger: bool = False,
    ) -> None:
        self._session_id = session_id
        self._config = config
        self._ledger = ledger
        self._engine = engine
        self._budget = TokenBudget(config.compaction)
        self._event_bus = event_bus
        self._summary = summary
        self._total_tokens = total_tokens
        self._owns_ledger = owns_ledger
        self._compaction_lock = asyncio.Lock()
        self._logger = structlog.get_logger("runledger.session").bind(session_id=session_id)

    @classmethod
    async def load_or_create(
        cls,
        session_id: str | None = None,
        *,
        config: RunledgerConfig | None = None,
        ledger: MessageLedger | None = None,
        summarizer: Summarizer | None = None,
        pool: StorePool | None = None,
        event_bus: EventBus | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AgentSession:
        """
        Hydrate an existing session by id, or create a fresh one.

        When *session_id* names a stored session its summary is loaded and the
        token total is recomputed from the messages currently persisted. When
        it is None, or unknown, a new session with a new identity is created.

        Args:
            session_id: Session to resume, or None for a new session.
            config: Configuration. Defaults to ``RunledgerConfig()``.
            ledger: An initialized ledger to use. When omitted one is opened
                from ``config.store`` and closed by :meth:`close`.
            summarizer: Summarization collaborator. Defaults to
                :class:`LiteLLMSummarizer` on the compaction (or agent) model.
            pool: Optional shared connection pool for the owned ledger.
            event_bus: Event bus to publish on. A private one is created if omitted.
            metadata: Opaque metadata stored on a newly created session.

        Raises:
            StorageError: If the store cannot be opened or read.
        """
        cfg = config or RunledgerConfig()
        owns_ledger = ledger is None
        if ledger is None:
            ledger = MessageLedger(cfg.store, pool=pool)
            await ledger.initialize()

        if summarizer is None:
            summarizer = LiteLLMSummarizer(cfg.compaction.compaction_model or cfg.agent.model)
        engine = CompactionEngine(cfg.compaction, summarizer)
        bus = event_bus or EventBus()
        logger = structlog.get_logger("runledger.session")

        if session_id is not None:
            existing = await ledger.find_session(session_id)
            if existing is not None:
                budget = TokenBudget(cfg.compaction)
                persisted = await ledger.total_tokens(session_id)
                total = budget.recompute(existing.summary, persisted)
                logger.info(
                    "session_loaded",
                    session_id=session_id,
                    total_tokens=total,
                    has_summary=bool(existing.summary),
                )
                bus.publish(
                    RunledgerEvent.SESSION_LOADED,
                    {
                        "session_id": session_id,
                        "total_tokens": total,
                        "has_summary": bool(existing.summary),
                    },
                )
                return cls(
                    session_id,
                    cfg,
                    ledger,
                    engine,
                    bus,
                    summary=existing.summary,
                    total_tokens=total,
                    owns_ledger=owns_ledger,
                )
            logger.warning("session_not_found_creating_new", requested_id=session_id)

        new_id = make_id("sess")
        await ledger.create_session(new_id, metadata=metadata)
        logger.info("session_created", session_id=new_id)
        bus.publish(RunledgerEvent.SESSION_CREATED, {"session_id": new_id})
        return cls(new_id, cfg, ledger, engine, bus, owns_ledger=owns_ledger)

    @classmethod
    @asynccontextmanager
    async def open(
        cls,
        session_id: str | None = None,
        **kwargs: Any,
    ) -> AsyncGenerator[AgentSession, None]:
        """
        :meth:`load_or_create` as an async context manager.

        The session is closed when the block exits, even on exception::

            async with AgentSession.open(config=config) as session:
                ...
        """
        session = await cls.load_or_create(session_id, **kwargs)
        try:
            yield session
        finally:
            await session.close()

    # ── Turns ──────────────────────────────────────────────────────────────────

    async def add_turn(
        self,
        role: Role,
        content: MessageContent,
        token_count: int | None = None,
    ) -> Message:
        """
        Append a turn to the ledger and add its token count to the running total.

        A turn without a token count is stored but contributes zero.
        """
        message = await self._ledger.append(self._session_id, role, content, token_count)
        if token_count:
            self._total_tokens += token_count
        self._logger.debug(
            "turn_added", role=role, message_id=message.id, token_count=token_count
        )
        self._event_bus.publish(
            RunledgerEvent.MESSAGE_APPENDED,
            {
                "session_id": self._session_id,
                "message_id": message.id,
                "role": role,
                "token_count": token_count,
            },
        )
        return message

    async def context(self, preamble: str | None = None) -> BuiltContext:
        """Assemble the model input with metadata (see :meth:`build_context`)."""
        messages = await self._ledger.all(self._session_id)
        built = build_context(messages, summary=self._summary, preamble=preamble)
        self._logger.debug(
            "context_built",
            message_count=built.message_count,
            has_summary=built.has_summary,
        )
        return built

    async def build_context(self, preamble: str | None = None) -> list[dict[str, Any]]:
        """
        Return the exact ordered input for the turn-generation model.

        Optional preamble, then the cumulative summary as a labelled
        prior-context block, then every persisted message in order.
        """
        return (await self.context(preamble)).messages

    async def messages(self) -> list[Message]:
        """All persisted messages of this session, oldest first."""
        return await self._ledger.all(self._session_id)

    # ── Compaction ─────────────────────────────────────────────────────────────

    def should_compact(self) -> bool:
        """True once the running total has reached the configured threshold."""
        return self._budget.should_compact(self._total_tokens)

    async def check_and_compact(self) -> bool:
        """
        Post-turn hook: compact when the token total has reached the threshold.

        Below the threshold this is a no-op. Otherwise the full persisted
        history and the current summary go to the compaction engine; the new
        summary and the pruning of every message before the first verbatim
        one are committed together. The cutoff is a message id, so turns
        appended while the summarizer was running are never removed. When the
        whole history was folded the cutoff is the last folded id plus one.

        Returns:
            True when messages were folded into the summary.

        Raises:
            SummarizationFailure: The summarizer failed or returned blank text.
                Summary, ledger and token total are unchanged; the next call
                re-evaluates.
            StorageError: The store write failed; nothing was committed.
        """
        if not self.should_compact():
            return False

        async with self._compaction_lock:
            tokens_before = self._total_tokens
            threshold = self._budget.threshold
            self._logger.info(
                "compaction_triggered", total_tokens=tokens_before, threshold=threshold
            )
            self._event_bus.publish(
                RunledgerEvent.COMPACTION_TRIGGERED,
                {
                    "session_id": self._session_id,
                    "total_tokens": tokens_before,
                    "threshold": threshold,
                },
            )

            snapshot = await self._ledger.all(self._session_id)
            try:
                result = await self._engine.compact(self._summary, snapshot)
            except SummarizationFailure as exc:
                self._logger.error("compaction_failed", error=str(exc))
                self._event_bus.publish(
                    RunledgerEvent.COMPACTION_FAILED,
                    {"session_id": self._session_id, "error": str(exc)},
                )
                raise

            if result.compacted_count == 0:
                self._logger.info("compaction_nothing_to_fold", messages=len(snapshot))
                return False

            if result.split_index < len(snapshot):
                cutoff = snapshot[result.split_index].id
            else:
                cutoff = snapshot[-1].id + 1

            pruned = await self._ledger.apply_compaction(
                self._session_id,
                result.new_summary,
                before_id=cutoff,
                compacted_at=int(time.time()),
            )
            self._summary = result.new_summary

            remaining = await self._ledger.total_tokens(self._session_id)
            self._total_tokens = self._budget.recompute(self._summary, remaining)

            self._logger.info(
                "compaction_completed",
                compacted=result.compacted_count,
                pruned=pruned,
                summary_length=len(result.new_summary),
                tokens_before=tokens_before,
                tokens_after=self._total_tokens,
            )
            self._event_bus.publish(
                RunledgerEvent.COMPACTION_COMPLETED,
                {
                    "session_id": self._session_id,
                    "compacted_count": result.compacted_count,
                    "pruned": pruned,
                    "summary_length": len(result.new_summary),
                    "tokens_before": tokens_before,
                    "tokens_after": self._total_tokens,
                },
            )
            return True

    # ── Runs ───────────────────────────────────────────────────────────────────

    async def start_run(self, step_no: int) -> Run:
        """Record the start of an agent step."""
        run = await self._ledger.create_run(self._session_id, step_no)
        self._event_bus.publish(
            RunledgerEvent.RUN_STARTED,
            {"session_id": self._session_id, "run_id": run.id, "step_no": step_no},
        )
        return run

    async def finish_run(
        self,
        run: Run,
        status: Literal["completed", "failed"],
        error: str | None = None,
    ) -> Run:
        """Record the end of an agent step."""
        await self._ledger.finish_run(run.id, status, error)
        self._event_bus.publish(
            RunledgerEvent.RUN_FINISHED,
            {"session_id": self._session_id, "run_id": run.id, "status": status, "error": error},
        )
        return run.model_copy(update={"status": status, "error": error})

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def close(self) -> None:
        """Release the ledger if this session opened it."""
        if self._owns_ledger:
            await self._ledger.close()
        self._logger.info("session_closed")

    async def __aenter__(self) -> AgentSession:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @property
    def id(self) -> str:
        """The session ID."""
        return self._session_id

    @property
    def summary(self) -> str | None:
        """The current cumulative summary, or None before the first compaction."""
        return self._summary

    @property
    def total_tokens(self) -> int:
        """Running token total: persisted counts plus the summary estimate."""
        return self._total_tokens

    @property
    def ledger(self) -> MessageLedger:
        return self._ledger

    @property
    def event_bus(self) -> EventBus:
        """The event bus for this session. Subscribe to monitor events."""
        return self._event_bus

    def state(self) -> SessionState:
        """Snapshot of id, summary and token total."""
        return SessionState(
            id=self._session_id, summary=self._summary, total_tokens=self._total_tokens
        )
