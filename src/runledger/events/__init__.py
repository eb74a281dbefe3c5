"""runledger event bus."""

from runledger.events.bus import EventBus, Handler, RunledgerEvent
from runledger.events.payloads import (
    CompactionCompletedPayload,
    CompactionFailedPayload,
    CompactionTriggeredPayload,
    MessageAppendedPayload,
    RunFinishedPayload,
    RunStartedPayload,
    SandboxCreatedPayload,
    SandboxRecreatedPayload,
    SessionCreatedPayload,
    SessionLoadedPayload,
)

__all__ = [
    "CompactionCompletedPayload",
    "CompactionFailedPayload",
    "CompactionTriggeredPayload",
    "EventBus",
    "Handler",
    "MessageAppendedPayload",
    "RunFinishedPayload",
    "RunStartedPayload",
    "RunledgerEvent",
    "SandboxCreatedPayload",
    "SandboxRecreatedPayload",
    "SessionCreatedPayload",
    "SessionLoadedPayload",
]
