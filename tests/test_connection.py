"""Tests for EngineConnection."""

from unittest.mock import MagicMock

import pytest
import requests
from docker.errors import DockerException

from runbox.connection import (
    UNIX_SOCKET,
    WINDOWS_PIPE,
    EngineConnection,
    classify_error,
    fallback_endpoint,
)
from runbox.errors import ConnectionCause, EngineConnectionError


def make_client(version="24.0.7"):
    client = MagicMock()
    client.info.return_value = {
        "OperatingSystem": "Docker Desktop",
        "Architecture": "x86_64",
        "Containers": 3,
        "Images": 7,
    }
    client.version.return_value = {"Version": version, "ApiVersion": "1.43"}
    client.ping.return_value = True
    return client


def failing(error):
    def factory():
        raise error
    return factory


class TestFallbackEndpoint:
    def test_windows_uses_named_pipe(self):
        assert fallback_endpoint("win32") == WINDOWS_PIPE

    def test_unix_uses_socket(self):
        assert fallback_endpoint("linux") == UNIX_SOCKET
        assert fallback_endpoint("darwin") == UNIX_SOCKET


class TestClassifyError:
    def test_permission_denied_from_cause(self):
        try:
            try:
                raise PermissionError(13, "Permission denied")
            except PermissionError as inner:
                raise DockerException("Error while fetching server API version") from inner
        except DockerException as e:
            assert classify_error(e) == ConnectionCause.PERMISSION_DENIED

    def test_not_running_from_message(self):
        error = DockerException(
            "Error while fetching server API version: ('Connection aborted.', "
            "FileNotFoundError(2, 'No such file or directory'))"
        )
        assert classify_error(error) == ConnectionCause.NOT_RUNNING

    def test_connection_refused_in_args(self):
        error = requests.ConnectionError(ConnectionRefusedError(111, "refused"))
        assert classify_error(error) == ConnectionCause.NOT_RUNNING

    def test_unknown(self):
        assert classify_error(DockerException("something odd")) == ConnectionCause.UNKNOWN


class TestConnect:
    @pytest.mark.asyncio
    async def test_default_client_wins(self):
        client = make_client()
        fallback = MagicMock()
        conn = EngineConnection(env_factory=lambda: client, fallback_factory=fallback)

        info = await conn.connect()

        assert info.connected is True
        assert info.version == "24.0.7"
        assert info.api_version == "1.43"
        assert info.image_count == 7
        assert conn.client is client
        fallback.assert_not_called()

    @pytest.mark.asyncio
    async def test_falls_back_to_platform_endpoint(self):
        client = make_client()
        conn = EngineConnection(
            env_factory=failing(DockerException("bad DOCKER_HOST")),
            fallback_factory=lambda: client,
            platform="linux",
        )

        info = await conn.connect()

        assert conn.client is client
        assert info.endpoint == UNIX_SOCKET

    @pytest.mark.asyncio
    async def test_handshake_failure_triggers_fallback(self):
        broken = make_client()
        broken.info.side_effect = requests.ConnectionError("Connection refused")
        good = make_client()
        conn = EngineConnection(env_factory=lambda: broken, fallback_factory=lambda: good)

        await conn.connect()

        assert conn.client is good
        broken.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_both_fail_raises_normalized_error(self):
        conn = EngineConnection(
            env_factory=failing(DockerException("('Connection aborted.', FileNotFoundError(2, 'No such file or directory'))")),
            fallback_factory=failing(DockerException("no socket")),
        )

        with pytest.raises(EngineConnectionError) as exc_info:
            await conn.connect()

        assert exc_info.value.cause == ConnectionCause.NOT_RUNNING
        assert not conn.connected

    @pytest.mark.asyncio
    async def test_permission_denied(self):
        error = requests.ConnectionError("('Connection aborted.', PermissionError(13, 'Permission denied'))")
        conn = EngineConnection(env_factory=failing(error), fallback_factory=failing(error))

        with pytest.raises(EngineConnectionError) as exc_info:
            await conn.connect()

        assert exc_info.value.cause == ConnectionCause.PERMISSION_DENIED

    def test_client_before_connect_raises(self):
        conn = EngineConnection(env_factory=make_client)
        with pytest.raises(EngineConnectionError):
            conn.client


class TestPing:
    @pytest.mark.asyncio
    async def test_ping_not_connected(self):
        assert await EngineConnection(env_factory=make_client).ping() is False

    @pytest.mark.asyncio
    async def test_ping_ok(self):
        conn = EngineConnection(env_factory=make_client)
        await conn.connect()
        assert await conn.ping() is True

    @pytest.mark.asyncio
    async def test_ping_never_raises(self):
        client = make_client()
        conn = EngineConnection(env_factory=lambda: client)
        await conn.connect()
        client.ping.side_effect = requests.ConnectionError("gone")
        assert await conn.ping() is False

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        client = make_client()
        conn = EngineConnection(env_factory=lambda: client)
        await conn.connect()
        conn.close()
        client.close.assert_called_once()
        assert await conn.ping() is False


class TestReconnect:
    @pytest.mark.asyncio
    async def test_connected_returns_cached_info(self):
        factory = MagicMock(side_effect=[make_client(), make_client("25.0.0")])
        conn = EngineConnection(env_factory=factory)

        first = await conn.connect()
        second = await conn.connect()

        assert second is first
        assert factory.call_count == 1
        conn.client.close.assert_not_called()

    @pytest.mark.asyncio
    async def test_refresh_forces_handshake(self):
        old, new = make_client(), make_client("25.0.0")
        conn = EngineConnection(env_factory=MagicMock(side_effect=[old, new]))
        await conn.connect()

        info = await conn.connect(refresh=True)

        assert info.version == "25.0.0"
        assert conn.client is new
        old.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_dead_daemon_is_reconnected(self):
        old, new = make_client(), make_client("25.0.0")
        conn = EngineConnection(env_factory=MagicMock(side_effect=[old, new]))
        await conn.connect()
        old.ping.side_effect = requests.ConnectionError("gone")

        info = await conn.connect()

        assert info.version == "25.0.0"
        assert conn.client is new


class TestDiagnostics:
    @pytest.mark.asyncio
    async def test_reports_endpoints_and_info(self, monkeypatch):
        monkeypatch.setenv("DOCKER_HOST", "tcp://10.0.0.5:2375")
        conn = EngineConnection(env_factory=make_client, platform="win32")

        report = await conn.diagnostics()

        assert report["docker_host"] == "tcp://10.0.0.5:2375"
        assert report["socket_path"] == WINDOWS_PIPE
        assert report["info"].version == "24.0.7"
        assert report["error"] is None

    @pytest.mark.asyncio
    async def test_reports_failure_cause(self, monkeypatch):
        monkeypatch.delenv("DOCKER_HOST", raising=False)
        error = requests.ConnectionError("('Connection aborted.', PermissionError(13, 'Permission denied'))")
        conn = EngineConnection(env_factory=failing(error), fallback_factory=failing(error), platform="linux")

        report = await conn.diagnostics()

        assert report["docker_host"] is None
        assert report["socket_path"] == UNIX_SOCKET
        assert report["info"] is None
        assert report["cause"] == "permission-denied"
