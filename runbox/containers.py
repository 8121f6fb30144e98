"""Container lifecycle primitives over the Docker Engine API."""

from __future__ import annotations

import asyncio
import logging
import socket
import threading
from typing import AsyncIterator, Optional

import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.utils import socket as docker_socket

from runbox.connection import EngineConnection
from runbox.errors import (
    ContainerCreateError,
    ContainerError,
    ContainerNotFoundError,
    StreamError,
)
from runbox.models import ContainerInstance, ContainerSpec, ContainerState, ExecOutput

logger = logging.getLogger(__name__)

_RUNTIME_ERRORS = (DockerException, requests.RequestException)


def _describe(error: Exception) -> str:
    if isinstance(error, APIError) and error.explanation:
        return str(error.explanation)
    return str(error)


class AttachedStream:
    """Duplex byte stream over a hijacked attach socket.

    A daemon thread blocks on the socket and hands chunks to the event loop
    through a queue, so readers never block the loop.
    """

    chunk_size = 4096

    def __init__(self, sock, loop: asyncio.AbstractEventLoop):
        self._sock = sock
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._thread = threading.Thread(target=self._pump, daemon=True)
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed

    def _raw(self):
        # SocketIO wraps the real socket on unix and tcp transports
        return getattr(self._sock, "_sock", self._sock)

    def _post(self, item) -> bool:
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # loop already closed; nobody is reading any more
            return False
        return True

    def _pump(self) -> None:
        end: object = None
        try:
            while True:
                chunk = docker_socket.read(self._sock, self.chunk_size)
                if not chunk:
                    break
                if not self._post(chunk):
                    return
        except (OSError, ValueError) as e:
            if not self._closed:
                end = StreamError(f"Attach stream error: {e}")
        self._post(end)

    async def chunks(self) -> AsyncIterator[bytes]:
        """Yield chunks until the container closes the stream."""
        while True:
            item = await self._queue.get()
            if item is None:
                return
            if isinstance(item, StreamError):
                raise item
            yield item

    def write(self, data: bytes) -> None:
        if self._closed:
            return
        self._raw().sendall(data)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        raw = self._raw()
        try:
            raw.shutdown(socket.SHUT_RDWR)
        except (OSError, AttributeError):
            pass
        try:
            self._sock.close()
            if raw is not self._sock:
                raw.close()
        except OSError as e:
            logger.debug(f"Error closing attach socket: {e}")


class ContainerLifecycle:
    """Stateless façade over container operations.

    Docker and transport exceptions never leave this class raw; they are
    re-raised as ``ContainerError`` subclasses.
    """

    def __init__(self, connection: EngineConnection):
        self.connection = connection

    @property
    def api(self):
        return self.connection.client.api

    async def _call(self, action: str, container_id: Optional[str], func, *args):
        try:
            return await asyncio.get_event_loop().run_in_executor(None, func, *args)
        except NotFound as e:
            raise ContainerNotFoundError(f"Container not found: {container_id}") from e
        except _RUNTIME_ERRORS as e:
            target = f" {container_id}" if container_id else ""
            raise ContainerError(f"Failed to {action} container{target}: {_describe(e)}") from e

    async def list(self, all: bool = True) -> list[dict]:
        return await self._call("list", None, lambda: self.api.containers(all=all))

    async def create(self, spec: ContainerSpec) -> ContainerInstance:
        volumes = {m.host_path: m.to_volume() for m in spec.mounts}
        limits = {}
        if spec.limits:
            limits = {
                "mem_limit": spec.limits.memory,
                "memswap_limit": spec.limits.memory_swap,
                "cpu_quota": spec.limits.cpu_quota,
                "cpu_period": spec.limits.cpu_period,
            }

        def create():
            return self.connection.client.containers.create(
                spec.image,
                command=spec.command or None,
                name=spec.name,
                working_dir=spec.working_dir,
                volumes=volumes,
                network_mode=spec.network_mode,
                tty=spec.tty,
                stdin_open=spec.stdin_open,
                auto_remove=spec.auto_remove,
                labels=spec.labels,
                **limits,
            )

        try:
            container = await asyncio.get_event_loop().run_in_executor(None, create)
        except ImageNotFound as e:
            raise ContainerCreateError(f"Image not found: {spec.image}") from e
        except _RUNTIME_ERRORS as e:
            raise ContainerCreateError(f"Failed to create container: {_describe(e)}") from e

        logger.info(f"Created container {container.short_id} from {spec.image}")
        return ContainerInstance(id=container.id, name=spec.name or container.name)

    async def start(self, container_id: str) -> None:
        await self._call("start", container_id, self.api.start, container_id)

    async def stop(self, container_id: str, grace_period: int = 10) -> None:
        await self._call("stop", container_id, lambda: self.api.stop(container_id, timeout=grace_period))

    async def remove(self, container_id: str, force: bool = False, remove_volumes: bool = False) -> None:
        await self._call(
            "remove",
            container_id,
            lambda: self.api.remove_container(container_id, v=remove_volumes, force=force),
        )

    async def wait(self, container_id: str) -> int:
        """Block until the container exits and return its exit code."""
        result = await self._call("wait", container_id, self.api.wait, container_id)
        return int(result.get("StatusCode", -1))

    async def attach(
        self,
        container_id: str,
        stdin: bool = False,
        stdout: bool = True,
        stderr: bool = True,
    ) -> AttachedStream:
        params = {
            "stdin": int(stdin),
            "stdout": int(stdout),
            "stderr": int(stderr),
            "stream": 1,
        }
        sock = await self._call(
            "attach", container_id, lambda: self.api.attach_socket(container_id, params=params)
        )
        return AttachedStream(sock, asyncio.get_event_loop())

    async def exec(self, container_id: str, command: list[str]) -> ExecOutput:
        """Run ``command`` in a running container and capture combined output."""

        def run():
            container = self.connection.client.containers.get(container_id)
            return container.exec_run(command, stdout=True, stderr=True, demux=False)

        exit_code, output = await self._call("exec in", container_id, run)
        return ExecOutput(exit_code=exit_code, output=(output or b"").decode("utf-8", errors="replace"))

    async def stats(self, container_id: str) -> dict:
        return await self._call(
            "read stats for", container_id, lambda: self.api.stats(container_id, stream=False)
        )

    async def stream_stats(self, container_id: str) -> AsyncIterator[dict]:
        """Yield stats samples until the container stops."""
        stream = await self._call(
            "stream stats for", container_id, lambda: self.api.stats(container_id, stream=True, decode=True)
        )
        sentinel = object()
        try:
            while True:
                sample = await self._call("stream stats for", container_id, next, stream, sentinel)
                if sample is sentinel:
                    return
                yield sample
        finally:
            close = getattr(stream, "close", None)
            if close:
                close()

    async def logs(self, container_id: str, tail: int = 100, timestamps: bool = False) -> str:
        output = await self._call(
            "read logs for",
            container_id,
            lambda: self.api.logs(container_id, stdout=True, stderr=True, timestamps=timestamps, tail=tail),
        )
        return output.decode("utf-8", errors="replace")

    async def resize(self, container_id: str, cols: int, rows: int) -> None:
        await self._call("resize", container_id, lambda: self.api.resize(container_id, height=rows, width=cols))

    async def state(self, container_id: str) -> ContainerState:
        try:
            info = await self._call("inspect", container_id, self.api.inspect_container, container_id)
        except ContainerNotFoundError:
            return ContainerState.REMOVED
        status = info.get("State", {}).get("Status", "")
        if status == "running":
            return ContainerState.RUNNING
        if status == "created":
            return ContainerState.CREATED
        return ContainerState.EXITED
