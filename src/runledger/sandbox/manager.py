"""Lifecycle of the single named sandbox container.

One :class:`SandboxManager` owns one container handle and is passed to
whatever issues commands. The container is created lazily, started if it
exists but is stopped, and recreated once when a command finds it gone.

Only the bind-mounted workspace survives a crash-and-recreate cycle; every
other piece of container state is lost.

All Docker SDK calls are blocking and run via :func:`asyncio.to_thread`.
"""

from __future__ import annotations

import asyncio
import math
import socket
from collections.abc import Callable
from enum import StrEnum
from typing import Any, TypeVar

import docker
import structlog
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from docker.utils.socket import read as read_socket
from requests.exceptions import ConnectionError as RequestsConnectionError

from runledger.errors import CommandTimeoutError, SandboxError, SandboxUnavailable
from runledger.events.bus import EventBus, RunledgerEvent
from runledger.models.config import SandboxConfig
from runledger.models.message import CommandResult
from runledger.sandbox.stream import FrameDemuxer

T = TypeVar("T")

IDLE_COMMAND = ["/bin/sh", "-c", "sleep infinity"]
MAX_ATTEMPTS = 2
"""One initial attempt plus exactly one retry after recreation."""

_READ_CHUNK = 4096


class SandboxState(StrEnum):
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    CRASHED = "crashed"
    STOPPED = "stopped"


def _classify(exc: Exception) -> SandboxError:
    """Map a Docker SDK failure to the sandbox error taxonomy."""
    if isinstance(exc, NotFound):
        return SandboxUnavailable(f"Sandbox container is gone: {exc.explanation or exc}")
    if isinstance(exc, APIError):
        # 409: "container ... is not running"
        if exc.status_code in (404, 409):
            return SandboxUnavailable(f"Sandbox container is not usable: {exc.explanation or exc}")
        return SandboxError(f"Docker API error: {exc.explanation or exc}")
    if isinstance(exc, (RequestsConnectionError, ConnectionError)):
        return SandboxUnavailable(f"Docker daemon unreachable: {exc}")
    if isinstance(exc, DockerException):
        return SandboxUnavailable(f"Docker unavailable: {exc}")
    return SandboxError(str(exc))


class SandboxManager:
    """
    Owns the named execution container: liveness, command execution, recovery.

    ``execute()`` calls are serialized per manager, so concurrent sessions
    sharing one manager never interleave commands in the container.

    Example::

        sandbox = SandboxManager(config.sandbox)
        result = await sandbox.execute("python --version")
        await sandbox.teardown()
    """

    def __init__(
        self,
        config: SandboxConfig | None = None,
        client: docker.DockerClient | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config or SandboxConfig()
        self._client = client
        self._event_bus = event_bus
        self._container: Container | None = None
        self._state = SandboxState.ABSENT
        self._exec_lock = asyncio.Lock()
        self._logger = structlog.get_logger("runledger.sandbox").bind(
            container=self._config.container_name
        )

    @property
    def state(self) -> SandboxState:
        return self._state

    @property
    def config(self) -> SandboxConfig:
        return self._config

    # ── Docker plumbing ─────────────────────────────────────────────────────────

    def _docker(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as exc:
                raise SandboxUnavailable(f"Docker daemon unreachable: {exc}") from exc
        return self._client

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (DockerException, RequestsConnectionError, ConnectionError) as exc:
            raise _classify(exc) from exc

    def _publish(self, event: RunledgerEvent, payload: dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event, payload)

    # ── Lifecycle ───────────────────────────────────────────────────────────────

    async def ensure_alive(self) -> Container:
        """
        Make sure the named container exists and is running.

        Running: returned as is. Present but stopped: started. Not found:
        created from the configured image and started.

        Raises:
            SandboxUnavailable: Docker is unreachable or the container cannot start.
        """
        client = self._docker()
        try:
            container = await asyncio.to_thread(
                client.containers.get, self._config.container_name
            )
        except NotFound:
            return await self._create()
        except (DockerException, RequestsConnectionError, ConnectionError) as exc:
            raise _classify(exc) from exc

        if container.status == "running":
            self._container = container
            self._state = SandboxState.RUNNING
            return container

        self._logger.info("sandbox_starting_existing", status=container.status)
        self._state = SandboxState.STARTING
        await self._call(container.start)
        self._container = container
        self._state = SandboxState.RUNNING
        return container

    async def _create(self) -> Container:
        cfg = self._config
        client = self._docker()
        self._state = SandboxState.STARTING
        self._logger.info("sandbox_creating", image=cfg.image, workdir=cfg.workdir)

        kwargs: dict[str, Any] = {
            "name": cfg.container_name,
            "command": IDLE_COMMAND,
            "working_dir": cfg.workdir,
            "volumes": {cfg.host_workspace: {"bind": cfg.workdir, "mode": "rw"}},
            "detach": True,
        }
        try:
            container = await asyncio.to_thread(client.containers.create, cfg.image, **kwargs)
        except ImageNotFound:
            self._logger.info("sandbox_pulling_image", image=cfg.image)
            await self._call(client.images.pull, cfg.image)
            container = await self._call(client.containers.create, cfg.image, **kwargs)
        except (DockerException, RequestsConnectionError, ConnectionError) as exc:
            self._state = SandboxState.ABSENT
            raise _classify(exc) from exc

        await self._call(container.start)
        self._container = container
        self._state = SandboxState.RUNNING
        self._logger.info("sandbox_created", container_id=container.short_id)
        self._publish(
            RunledgerEvent.SANDBOX_CREATED,
            {"container_name": cfg.container_name, "image": cfg.image},
        )
        return container

    async def _remove_remnants(self) -> None:
        """Best-effort stop and force-remove of the current handle or named container."""
        container = self._container
        self._container = None
        if container is None:
            try:
                container = await asyncio.to_thread(
                    self._docker().containers.get, self._config.container_name
                )
            except (DockerException, RequestsConnectionError, ConnectionError, SandboxError):
                return
        try:
            await asyncio.to_thread(container.stop, timeout=self._config.stop_timeout_s)
        except (DockerException, RequestsConnectionError, ConnectionError) as exc:
            self._logger.debug("sandbox_stop_ignored", error=str(exc))
        try:
            await asyncio.to_thread(container.remove, force=True)
        except (DockerException, RequestsConnectionError, ConnectionError) as exc:
            self._logger.debug("sandbox_remove_ignored", error=str(exc))

    async def recreate(self, reason: str = "requested") -> Container:
        """Discard the handle, clear any remnants, and create a fresh container."""
        self._logger.warning("sandbox_recreating", reason=reason)
        await self._remove_remnants()
        self._state = SandboxState.ABSENT
        container = await self._create()
        self._publish(
            RunledgerEvent.SANDBOX_RECREATED,
            {"container_name": self._config.container_name, "reason": reason},
        )
        return container

    async def teardown(self) -> None:
        """Stop and remove the container. Safe to call repeatedly."""
        if self._state in (SandboxState.ABSENT, SandboxState.STOPPED) and self._container is None:
            return
        self._logger.info("sandbox_teardown")
        await self._remove_remnants()
        self._state = SandboxState.STOPPED

    # ── Execution ───────────────────────────────────────────────────────────────

    async def execute(self, command: str, timeout_ms: int | None = None) -> CommandResult:
        """
        Run *command* via ``/bin/sh -c`` in the workdir and collect its output.

        A failure that shows the container is gone or unreachable triggers one
        recreation and one retry of the same command. A timeout never does.

        Raises:
            CommandTimeoutError: The command did not finish within *timeout_ms*.
            SandboxUnavailable: The retried attempt failed too.
            SandboxError: Any other Docker failure.
        """
        timeout_ms = timeout_ms or self._config.default_timeout_ms
        async with self._exec_lock:
            for attempt in range(1, MAX_ATTEMPTS + 1):
                try:
                    container = await self.ensure_alive()
                    return await self._exec_once(container, command, timeout_ms)
                except SandboxUnavailable as exc:
                    if attempt == MAX_ATTEMPTS:
                        self._logger.error("sandbox_retry_failed", command=command, error=str(exc))
                        raise
                    self._state = SandboxState.CRASHED
                    self._logger.warning(
                        "sandbox_crash_detected", command=command, error=str(exc)
                    )
                    await self.recreate(reason=str(exc))
        raise SandboxUnavailable("Sandbox retry budget exhausted")

    def _exec_argv(self, command: str, timeout_ms: int) -> list[str]:
        argv = ["/bin/sh", "-c", command]
        if self._config.kill_on_timeout:
            seconds = max(1, math.ceil(timeout_ms / 1000))
            return ["timeout", "-s", "KILL", f"{seconds}s", *argv]
        return argv

    async def _exec_once(
        self, container: Container, command: str, timeout_ms: int
    ) -> CommandResult:
        api = self._docker().api
        self._logger.debug("sandbox_exec", command=command, timeout_ms=timeout_ms)
        # Sockets opened by this attempt; shut down on timeout to free the reader thread.
        opened: list[Any] = []

        async def _attempt() -> CommandResult:
            created = await self._call(
                api.exec_create,
                container.id,
                self._exec_argv(command, timeout_ms),
                stdout=True,
                stderr=True,
                workdir=self._config.workdir,
            )
            exec_id = created["Id"]
            sock = await self._call(api.exec_start, exec_id, socket=True)
            opened.append(sock)
            stdout, stderr = await self._call(self._collect_output, sock)
            info = await self._call(api.exec_inspect, exec_id)
            exit_code = info.get("ExitCode")
            return CommandResult(
                stdout=stdout, stderr=stderr, exit_code=0 if exit_code is None else exit_code
            )

        try:
            result = await asyncio.wait_for(_attempt(), timeout=timeout_ms / 1000)
        except TimeoutError:
            for sock in opened:
                self._abort_socket(sock)
            self._logger.warning(
                "sandbox_exec_timeout",
                command=command,
                timeout_ms=timeout_ms,
                killed=self._config.kill_on_timeout,
            )
            raise CommandTimeoutError(command, timeout_ms) from None

        self._logger.debug(
            "sandbox_exec_completed",
            exit_code=result.exit_code,
            stdout_length=len(result.stdout),
            stderr_length=len(result.stderr),
        )
        return result

    def _abort_socket(self, sock: Any) -> None:
        """Shut down an exec socket so the thread blocked reading it sees EOF."""
        raw = getattr(sock, "_sock", sock)
        try:
            raw.shutdown(socket.SHUT_RDWR)
        except OSError as exc:
            self._logger.debug("sandbox_exec_socket_shutdown_ignored", error=str(exc))

    @staticmethod
    def _collect_output(sock: Any) -> tuple[str, str]:
        """Read the raw multiplexed exec socket to EOF. Runs in a worker thread."""
        demuxer = FrameDemuxer()
        try:
            while True:
                chunk = read_socket(sock, _READ_CHUNK)
                if not chunk:
                    break
                demuxer.feed(chunk)
        finally:
            sock.close()
        return demuxer.result()
