"""Interactive TTY shells backed by long-lived containers."""

import asyncio
import codecs
import logging
import time
import uuid
from collections import deque
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Union

from runbox.containers import AttachedStream, ContainerLifecycle
from runbox.errors import (
    ContainerError,
    ContainerNotFoundError,
    RunboxError,
    SessionNotFoundError,
    StreamError,
)
from runbox.images import ImageRegistry
from runbox.languages import DEFAULT_SHELL, SHELL_PROFILES, ShellProfile
from runbox.models import (
    WORKSPACE_MOUNT,
    ContainerSpec,
    MessageType,
    Mount,
    SessionState,
    ShellConfig,
    ShellMessage,
)

logger = logging.getLogger(__name__)

CloseCallback = Callable[["InteractiveSession"], None]


class InteractiveSession:
    """A TTY-attached container bound to a message channel.

    Output is forwarded byte-for-byte (decoded as UTF-8) so terminal escape
    sequences reach the rendering layer intact. Every subscriber gets its own
    queue carrying every message, starting with a replay of the recent
    backlog; the channel ends with a single ``close`` message.
    """

    backlog_size = 1000

    def __init__(
        self,
        session_id: str,
        images: ImageRegistry,
        containers: ContainerLifecycle,
        profiles: Optional[dict[str, ShellProfile]] = None,
        workspace_mount: str = WORKSPACE_MOUNT,
        stop_grace_period: int = 1,
    ):
        self.session_id = session_id
        self.images = images
        self.containers = containers
        self.profiles = profiles if profiles is not None else SHELL_PROFILES
        self.workspace_mount = workspace_mount
        self.stop_grace_period = stop_grace_period

        self.state = SessionState.IDLE
        self.container_id: Optional[str] = None
        self.image: Optional[str] = None
        self.created_at = time.time()
        self._stream: Optional[AttachedStream] = None
        self._reader: Optional[asyncio.Task] = None
        self._backlog: deque[ShellMessage] = deque(maxlen=self.backlog_size)
        self._subscribers: list[asyncio.Queue] = []
        self._write_lock = asyncio.Lock()
        self._pulling = False
        self._close_callbacks: list[CloseCallback] = []
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED

    def add_close_callback(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)

    @property
    def backlog(self) -> list[ShellMessage]:
        return list(self._backlog)

    def subscribe(self, replay: bool = True) -> asyncio.Queue:
        """Open a new message queue for one consumer.

        Must be called on the session's event loop. Pair with ``unsubscribe``.
        """
        queue: asyncio.Queue = asyncio.Queue()
        if replay:
            for message in self._backlog:
                queue.put_nowait(message)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _emit(self, type: MessageType, data: str = "") -> None:
        message = ShellMessage(type, data)
        self._backlog.append(message)
        for queue in self._subscribers:
            queue.put_nowait(message)

    def resolve_profile(self, config: ShellConfig) -> ShellProfile:
        """Pick image and command: explicit values, then language default, then fallback."""
        base = self.profiles.get(config.language or "", self.profiles[DEFAULT_SHELL])
        return ShellProfile(
            image=config.image or base.image,
            shell=tuple(config.command) if config.command else base.shell,
        )

    def build_spec(self, profile: ShellProfile, config: ShellConfig) -> ContainerSpec:
        mounts = []
        working_dir = "/"
        if config.workspace_path:
            mounts.append(Mount(str(Path(config.workspace_path).resolve()), self.workspace_mount, read_only=False))
            working_dir = self.workspace_mount
        return ContainerSpec(
            image=profile.image,
            command=list(profile.shell),
            working_dir=working_dir,
            mounts=mounts,
            tty=True,
            stdin_open=True,
            auto_remove=True,
            name=f"runbox-shell-{uuid.uuid4().hex[:12]}",
            labels={"runbox": "true", "runbox.role": "shell", "runbox.session-id": self.session_id},
        )

    async def start(self, config: ShellConfig) -> bool:
        """Start the shell. Returns True once the session is active."""
        if self.state != SessionState.IDLE:
            return self.is_active

        self.state = SessionState.STARTING
        profile = self.resolve_profile(config)
        self.image = profile.image
        self._emit(MessageType.SYSTEM, f"Starting interactive shell ({profile.image})...")

        try:
            await self.images.ensure(profile.image, self._forward_pull)
            instance = await self.containers.create(self.build_spec(profile, config))
            self.container_id = instance.id
            await self.containers.start(self.container_id)
            self._stream = await self.containers.attach(
                self.container_id, stdin=True, stdout=True, stderr=True
            )
        except RunboxError as e:
            logger.error(f"Shell {self.session_id} failed to start: {e}")
            self._emit(MessageType.ERROR, f"Error: {e}")
            await self.stop()
            return False

        if self.state != SessionState.STARTING:
            # stop() ran while we were starting and missed the new container
            self._stream.close()
            await self._teardown_container()
            return False

        self.state = SessionState.ACTIVE
        self._reader = asyncio.ensure_future(self._read_output())
        self._emit(MessageType.SYSTEM, "Shell ready.")
        logger.info(f"Shell {self.session_id} started in container {self.container_id[:12]}")
        return True

    def _forward_pull(self, event: dict) -> None:
        if not self._pulling:
            self._pulling = True
            self._emit(MessageType.SYSTEM, f"Pulling image {self.image}...")
        status = event.get("status")
        if status:
            detail = f" {event['progress']}" if event.get("progress") else ""
            self._emit(MessageType.SYSTEM, f"{status}{detail}")

    async def _read_output(self) -> None:
        try:
            async for chunk in self._stream.chunks():
                text = self._decoder.decode(chunk)
                if text:
                    self._emit(MessageType.OUTPUT, text)
        except StreamError as e:
            self._emit(MessageType.ERROR, str(e))
        tail = self._decoder.decode(b"", True)
        if tail:
            self._emit(MessageType.OUTPUT, tail)

        if self.state == SessionState.ACTIVE:
            logger.info(f"Shell {self.session_id} exited")
            self._emit(MessageType.SYSTEM, "Shell closed")
            self.state = SessionState.CLOSING
            if self._stream is not None:
                self._stream.close()
            self._finish()

    async def write(self, data: Union[bytes, str]) -> None:
        """Send raw input to the shell. Ignored unless the session is active."""
        if not self.is_active or self._stream is None:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        try:
            # one write at a time keeps stdin in call order
            async with self._write_lock:
                if self._stream is None:
                    return
                await asyncio.get_event_loop().run_in_executor(None, self._stream.write, data)
        except OSError as e:
            logger.warning(f"Write to shell {self.session_id} failed: {e}")
            self._emit(MessageType.ERROR, f"Write failed: {e}")

    async def write_line(self, text: str) -> None:
        await self.write(text + "\n")

    async def resize(self, cols: int, rows: int) -> None:
        if not self.is_active:
            return
        try:
            await self.containers.resize(self.container_id, cols, rows)
        except ContainerError as e:
            logger.warning(f"Resize of shell {self.session_id} failed: {e}")

    async def stop(self) -> None:
        """Tear the shell down. Safe to call more than once."""
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.state = SessionState.CLOSING

        if self._stream is not None:
            self._stream.close()
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()

        await self._teardown_container()
        self._finish()

    async def _teardown_container(self) -> None:
        if self.container_id:
            try:
                await self.containers.stop(self.container_id, grace_period=self.stop_grace_period)
            except ContainerNotFoundError:
                pass
            except ContainerError as e:
                logger.debug(f"Stop of shell container failed: {e}")
            try:
                await self.containers.remove(self.container_id, force=True)
            except ContainerNotFoundError:
                pass
            except ContainerError as e:
                logger.warning(f"Remove of shell container {self.container_id[:12]} failed: {e}")

    def _finish(self) -> None:
        if self.state == SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        self._emit(MessageType.CLOSE)
        logger.info(f"Shell {self.session_id} closed")
        for callback in self._close_callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.error(f"Close callback for shell {self.session_id} failed: {e}")

    async def messages(self, replay: bool = True) -> AsyncIterator[ShellMessage]:
        """Yield messages until (and including) the close message."""
        queue = self.subscribe(replay)
        try:
            while True:
                message = await queue.get()
                yield message
                if message.type == MessageType.CLOSE:
                    return
        finally:
            self.unsubscribe(queue)

    def describe(self) -> dict:
        return {
            "session_id": self.session_id,
            "container_id": self.container_id[:12] if self.container_id else None,
            "image": self.image,
            "state": self.state.value,
            "created_at": self.created_at,
        }


SessionFactory = Callable[[str], InteractiveSession]


class SessionRegistry:
    """Concurrent shells keyed by caller-supplied id.

    At most one live session exists per id. A session leaves the registry
    when it closes, whether it was stopped or its shell exited.
    """

    def __init__(self, factory: SessionFactory):
        self._factory = factory
        self.sessions: dict[str, InteractiveSession] = {}
        self._lock = asyncio.Lock()

    async def create_shell(self, session_id: str) -> InteractiveSession:
        async with self._lock:
            session = self.sessions.get(session_id)
            if session is not None and not session.is_closed:
                return session

            session = self._factory(session_id)
            session.add_close_callback(self._deregister)
            self.sessions[session_id] = session
            return session

    async def start_shell(self, session_id: str, config: ShellConfig) -> InteractiveSession:
        """Create (or reuse) a session and start it if it is still idle."""
        session = await self.create_shell(session_id)
        await session.start(config)
        return session

    def _deregister(self, session: InteractiveSession) -> None:
        if self.sessions.get(session.session_id) is session:
            del self.sessions[session.session_id]

    def get_shell(self, session_id: str) -> Optional[InteractiveSession]:
        return self.sessions.get(session_id)

    def require_shell(self, session_id: str) -> InteractiveSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def stop_shell(self, session_id: str) -> None:
        session = self.sessions.get(session_id)
        if session is None:
            return
        await session.stop()

    async def stop_all(self) -> None:
        sessions = list(self.sessions.values())
        await asyncio.gather(*(s.stop() for s in sessions))

    def list_active(self) -> list[str]:
        return list(self.sessions)

    def list_sessions(self) -> list[dict]:
        return [s.describe() for s in self.sessions.values()]
