"""Shared fixtures and test doubles for runledger tests."""

from __future__ import annotations

import itertools
import socket
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from docker.errors import ImageNotFound, NotFound

from runledger.compaction.summarizer import SummaryOutput
from runledger.events.bus import EventBus, RunledgerEvent
from runledger.models.config import (
    CompactionConfig,
    RunledgerConfig,
    SandboxConfig,
    StoreConfig,
)
from runledger.models.message import TokenUsage
from runledger.sandbox.stream import STDERR, STDOUT, encode_frame
from runledger.store.ledger import MessageLedger
from runledger.store.pool import StorePool


@pytest.fixture
def config(tmp_path):
    """RunledgerConfig with a temp database, a small budget and K=2."""
    return RunledgerConfig(
        store=StoreConfig(db_path=str(tmp_path / "test.db")),
        compaction=CompactionConfig(
            max_tokens=1_000,
            compact_at_percent=10,
            keep_recent_messages=2,
            max_summary_length=500,
        ),
        sandbox=SandboxConfig(host_workspace=str(tmp_path / "workspace")),
    )


@pytest_asyncio.fixture
async def pool(config):
    """StorePool for the test database. Closed after each test."""
    p = StorePool()
    yield p
    await p.close_all()


@pytest_asyncio.fixture
async def ledger(config, pool):
    """Initialized MessageLedger backed by a temp SQLite database (pool-managed)."""
    lg = MessageLedger(config.store, pool=pool)
    await lg.initialize()
    yield lg
    await lg.close()


@pytest_asyncio.fixture
async def session_id(ledger):
    """A pre-created session ID in the ledger."""
    sid = "sess_TEST01"
    await ledger.create_session(sid)
    return sid


@pytest.fixture
def event_bus():
    """EventBus with a .collected list for asserting events."""
    bus = EventBus()
    collected: list[tuple[RunledgerEvent, dict[str, Any]]] = []

    def _collect(event: RunledgerEvent, payload: dict[str, Any]) -> None:
        collected.append((event, payload))

    bus.subscribe_all(_collect)
    bus.collected = collected  # type: ignore[attr-defined]
    return bus


# ── Summarizer double ──────────────────────────────────────────────────────────


class FakeSummarizer:
    """Records every prompt; returns canned text or raises when ``fail`` is set."""

    def __init__(self, text: str = "# Goal\n- ship the feature", fail: bool = False) -> None:
        self.text = text
        self.fail = fail
        self.prompts: list[str] = []
        self.max_output_tokens: list[int] = []

    async def summarize(self, prompt: str, max_output_tokens: int) -> SummaryOutput:
        self.prompts.append(prompt)
        self.max_output_tokens.append(max_output_tokens)
        if self.fail:
            raise RuntimeError("provider unavailable")
        return SummaryOutput(text=self.text, usage=TokenUsage(input=100, output=20))


@pytest.fixture
def summarizer():
    return FakeSummarizer()


# ── Docker double ──────────────────────────────────────────────────────────────

CommandHandler = Callable[[str, "FakeContainer"], tuple[str, str, int]]


class FakeContainer:
    def __init__(self, daemon: FakeDocker, image: str, name: str, **kwargs: Any) -> None:
        self._daemon = daemon
        self.id = f"cid{next(daemon.ids)}"
        self.short_id = self.id[:10]
        self.image = image
        self.name = name
        self.kwargs = kwargs
        self.status = "created"
        self.removed = False

    @property
    def host_workspace(self) -> Path:
        return Path(next(iter(self.kwargs["volumes"])))

    def start(self) -> None:
        self.status = "running"

    def stop(self, timeout: int | None = None) -> None:
        if self.removed:
            raise NotFound("No such container")
        self._daemon.stop_timeouts.append(timeout)
        self.status = "exited"

    def remove(self, force: bool = False) -> None:
        if self.removed:
            raise NotFound("No such container")
        self.removed = True
        self._daemon.by_name.pop(self.name, None)


class _FakeContainers:
    def __init__(self, daemon: FakeDocker) -> None:
        self._daemon = daemon

    def get(self, name: str) -> FakeContainer:
        container = self._daemon.by_name.get(name)
        if container is None:
            raise NotFound(f"No such container: {name}")
        return container

    def create(self, image: str, **kwargs: Any) -> FakeContainer:
        if image not in self._daemon.available_images:
            raise ImageNotFound(f"No such image: {image}")
        container = FakeContainer(self._daemon, image, **kwargs)
        self._daemon.by_name[container.name] = container
        self._daemon.created.append(container)
        return container


class _FakeImages:
    def __init__(self, daemon: FakeDocker) -> None:
        self._daemon = daemon

    def pull(self, image: str) -> None:
        self._daemon.pulled.append(image)
        self._daemon.available_images.add(image)


class _FakeAPI:
    def __init__(self, daemon: FakeDocker) -> None:
        self._daemon = daemon
        self._execs: dict[str, dict[str, Any]] = {}

    def exec_create(self, container_id: str, cmd: list[str], **kwargs: Any) -> dict[str, str]:
        daemon = self._daemon
        if daemon.exec_failures:
            raise daemon.exec_failures.pop(0)
        container = next(
            (c for c in daemon.by_name.values() if c.id == container_id), None
        )
        if container is None:
            raise NotFound(f"No such container: {container_id}")
        exec_id = f"exec{next(daemon.ids)}"
        self._execs[exec_id] = {"cmd": cmd, "container": container, "exit_code": None}
        daemon.exec_commands.append(cmd)
        return {"Id": exec_id}

    def exec_start(self, exec_id: str, socket: bool = False) -> Any:
        entry = self._execs[exec_id]
        command = entry["cmd"][-1]
        writer, reader = _socketpair()
        if command in self._daemon.hanging:
            # Never finishes until the test releases it.
            self._daemon.open_writers.append(writer)
            return reader
        stdout, stderr, code = self._daemon.run(command, entry["container"])
        entry["exit_code"] = code
        data = b""
        if stdout:
            data += encode_frame(STDOUT, stdout.encode())
        if stderr:
            data += encode_frame(STDERR, stderr.encode())
        writer.sendall(data)
        writer.close()
        return reader

    def exec_inspect(self, exec_id: str) -> dict[str, Any]:
        return {"ExitCode": self._execs[exec_id]["exit_code"], "Running": False}


def _socketpair() -> tuple[socket.socket, socket.socket]:
    return socket.socketpair()


class FakeDocker:
    """
    In-memory stand-in for ``docker.DockerClient``.

    Understands ``echo``, ``cat <file>`` (served from the bind-mounted host
    workspace) and ``exit <n>``; other commands go to ``handlers``.
    """

    def __init__(self) -> None:
        self.ids = itertools.count(1)
        self.available_images: set[str] = {"python:3.12-slim"}
        self.by_name: dict[str, FakeContainer] = {}
        self.created: list[FakeContainer] = []
        self.pulled: list[str] = []
        self.stop_timeouts: list[int | None] = []
        self.exec_commands: list[list[str]] = []
        self.exec_failures: list[Exception] = []
        self.hanging: set[str] = set()
        self.open_writers: list[socket.socket] = []
        self.handlers: dict[str, CommandHandler] = {}
        self.containers = _FakeContainers(self)
        self.images = _FakeImages(self)
        self.api = _FakeAPI(self)

    def crash(self, name: str) -> None:
        """Simulate the container being killed and removed outside our control."""
        container = self.by_name.pop(name, None)
        if container is not None:
            container.status = "dead"
            container.removed = True

    def release_hanging(self) -> None:
        for writer in self.open_writers:
            writer.close()
        self.open_writers.clear()

    def run(self, command: str, container: FakeContainer) -> tuple[str, str, int]:
        if command in self.handlers:
            return self.handlers[command](command, container)
        if command.startswith("echo "):
            return command[len("echo ") :] + "\n", "", 0
        if command.startswith("cat "):
            path = container.host_workspace / command[len("cat ") :].strip()
            if not path.is_file():
                return "", f"cat: {path.name}: No such file or directory\n", 1
            return path.read_text(), "", 0
        if command.startswith("exit "):
            return "", "", int(command.split()[1])
        return "", f"/bin/sh: 1: {command.split()[0]}: not found\n", 127


@pytest.fixture
def fake_docker():
    daemon = FakeDocker()
    yield daemon
    daemon.release_hanging()
