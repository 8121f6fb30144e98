"""Connection to the container runtime's Engine API."""

import asyncio
import errno
import logging
import os
import sys
from typing import Callable, Optional

import docker
import requests
from docker.errors import DockerException

from runbox.errors import ConnectionCause, EngineConnectionError
from runbox.models import ConnectionInfo

logger = logging.getLogger(__name__)

WINDOWS_PIPE = "npipe:////./pipe/docker_engine"
UNIX_SOCKET = "unix:///var/run/docker.sock"


def fallback_endpoint(platform: str = sys.platform) -> str:
    return WINDOWS_PIPE if platform == "win32" else UNIX_SOCKET


def classify_error(error: BaseException) -> ConnectionCause:
    """Map a connection failure onto a normalized cause."""
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, PermissionError):
            return ConnectionCause.PERMISSION_DENIED
        if isinstance(current, (FileNotFoundError, ConnectionRefusedError)):
            return ConnectionCause.NOT_RUNNING
        if isinstance(current, OSError) and current.errno in (errno.EACCES, errno.EPERM):
            return ConnectionCause.PERMISSION_DENIED
        if isinstance(current, OSError) and current.errno in (errno.ENOENT, errno.ECONNREFUSED):
            return ConnectionCause.NOT_RUNNING
        nested = [a for a in getattr(current, "args", ()) if isinstance(a, BaseException)]
        current = current.__cause__ or current.__context__ or (nested[0] if nested else None)

    # requests/urllib3 often flatten the OS error into the message
    message = str(error).lower()
    if "permission denied" in message:
        return ConnectionCause.PERMISSION_DENIED
    if any(s in message for s in ("connection refused", "no such file", "connection aborted", "cannot find the file")):
        return ConnectionCause.NOT_RUNNING
    return ConnectionCause.UNKNOWN


_CAUSE_MESSAGES = {
    ConnectionCause.NOT_RUNNING: "Docker is not running or not installed",
    ConnectionCause.PERMISSION_DENIED: "Insufficient permissions to access Docker",
}


class EngineConnection:
    """Resolves a reachable Docker endpoint and holds the shared client.

    Tries the environment-configured client first (``DOCKER_HOST`` and
    friends), then the platform's default socket or named pipe.
    """

    def __init__(
        self,
        env_factory: Callable[[], docker.DockerClient] = docker.from_env,
        fallback_factory: Optional[Callable[[], docker.DockerClient]] = None,
        platform: str = sys.platform,
    ):
        self._env_factory = env_factory
        self._fallback_endpoint = fallback_endpoint(platform)
        self._fallback_factory = fallback_factory or (
            lambda: docker.DockerClient(base_url=self._fallback_endpoint)
        )
        self._client: Optional[docker.DockerClient] = None
        self.info: Optional[ConnectionInfo] = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> docker.DockerClient:
        """The shared client. Raises if ``connect`` has not succeeded."""
        if self._client is None:
            raise EngineConnectionError("Not connected to Docker", ConnectionCause.NOT_RUNNING)
        return self._client

    async def connect(self, refresh: bool = False) -> ConnectionInfo:
        """Verify an endpoint with an info+version round trip and keep it.

        While connected, the cached info is returned as long as the daemon
        still answers a ping; ``refresh`` forces a new handshake.
        """
        if self._client is not None and not refresh:
            if await self.ping():
                return self.info
            logger.warning("Docker stopped answering, reconnecting")

        loop = asyncio.get_event_loop()
        env_endpoint = os.getenv("DOCKER_HOST") or self._fallback_endpoint

        try:
            client, info = await loop.run_in_executor(None, self._handshake, self._env_factory)
            return self._adopt(client, info, env_endpoint)
        except (DockerException, requests.RequestException, OSError) as first:
            logger.warning(f"Default Docker client failed ({first}), trying {self._fallback_endpoint}")
            try:
                client, info = await loop.run_in_executor(None, self._handshake, self._fallback_factory)
                return self._adopt(client, info, self._fallback_endpoint)
            except (DockerException, requests.RequestException, OSError) as second:
                logger.error(f"Fallback Docker connection failed: {second}")
                cause = classify_error(first)
                if cause is ConnectionCause.UNKNOWN:
                    cause = classify_error(second)
                raise EngineConnectionError(
                    _CAUSE_MESSAGES.get(cause, f"Docker connection error: {first}"), cause
                ) from second

    def _handshake(self, factory: Callable[[], docker.DockerClient]) -> tuple[docker.DockerClient, ConnectionInfo]:
        client = factory()
        try:
            info = client.info()
            version = client.version()
        except Exception:
            client.close()
            raise
        return client, ConnectionInfo(
            connected=True,
            version=version.get("Version"),
            api_version=version.get("ApiVersion"),
            os=info.get("OperatingSystem"),
            architecture=info.get("Architecture"),
            container_count=info.get("Containers"),
            image_count=info.get("Images"),
        )

    def _adopt(self, client: docker.DockerClient, info: ConnectionInfo, endpoint: str) -> ConnectionInfo:
        if self._client is not None and self._client is not client:
            self._client.close()
        self._client = client
        info.endpoint = endpoint
        self.info = info
        logger.info(f"Connected to Docker {info.version} at {endpoint}")
        return info

    async def ping(self) -> bool:
        """Cheap liveness check. Never raises."""
        if self._client is None:
            return False
        try:
            return bool(await asyncio.get_event_loop().run_in_executor(None, self._client.ping))
        except Exception:
            return False

    async def diagnostics(self) -> dict:
        """Configured endpoints plus the outcome of a connection attempt."""
        report = {
            "docker_host": os.getenv("DOCKER_HOST"),
            "socket_path": self._fallback_endpoint,
            "info": None,
            "error": None,
            "cause": None,
        }
        try:
            report["info"] = await self.connect()
        except EngineConnectionError as e:
            report["error"] = str(e)
            report["cause"] = e.cause.value
        return report

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            self.info = None
