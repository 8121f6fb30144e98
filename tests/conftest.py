"""Shared fixtures and fakes for unit tests."""

import asyncio
import itertools
import struct
from unittest.mock import AsyncMock, MagicMock

import pytest

from runbox.containers import ContainerLifecycle
from runbox.images import ImageRegistry
from runbox.models import ContainerInstance


def frame(stream_type: int, payload: bytes) -> bytes:
    """Encode one stdcopy frame."""
    return struct.pack(">BxxxL", stream_type, len(payload)) + payload


class FakeStream:
    """Stand-in for AttachedStream fed from the test."""

    def __init__(self, chunks=(), hold_open: bool = False):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.written: list[bytes] = []
        self.closed = False
        for chunk in chunks:
            self._queue.put_nowait(chunk)
        if not hold_open:
            self._queue.put_nowait(None)

    def feed(self, chunk: bytes) -> None:
        self._queue.put_nowait(chunk)

    def fail(self, error: Exception) -> None:
        self._queue.put_nowait(error)

    def end(self) -> None:
        self._queue.put_nowait(None)

    async def chunks(self):
        while True:
            item = await self._queue.get()
            if item is None:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    def write(self, data: bytes) -> None:
        self.written.append(data)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(None)


@pytest.fixture
def images():
    """ImageRegistry mock where every image is already present."""
    registry = AsyncMock(spec=ImageRegistry)
    registry.available.return_value = True

    async def ensure(ref, on_progress=None):
        return await ImageRegistry.ensure(registry, ref, on_progress)

    registry.ensure.side_effect = ensure
    return registry


@pytest.fixture
def containers():
    """ContainerLifecycle mock handing out distinct container ids."""
    lifecycle = AsyncMock(spec=ContainerLifecycle)
    counter = itertools.count(1)

    async def create(spec):
        n = next(counter)
        return ContainerInstance(id=f"{n:064x}", name=spec.name)

    lifecycle.create.side_effect = create
    lifecycle.wait.return_value = 0
    lifecycle.attach.side_effect = lambda *args, **kwargs: FakeStream(hold_open=True)
    return lifecycle


@pytest.fixture
def connection():
    """EngineConnection stand-in exposing a mocked docker client."""
    conn = MagicMock()
    conn.client = MagicMock()
    return conn


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "main.py").write_text("print(1+1)\n")
    return tmp_path
