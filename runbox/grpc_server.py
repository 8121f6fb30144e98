"""gRPC server exposing the execution engine.

Messages are defined in ``runbox/v1/runbox.proto``. Every unary reply
carries ``success`` and ``error``; streaming calls push progress messages
and finish with a result message.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import queue
import threading
from concurrent import futures
from dataclasses import asdict, is_dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterator, Optional

import grpc
from google.protobuf import struct_pb2

from runbox.config import Settings
from runbox.context import AppContext
from runbox.errors import EngineConnectionError, RunboxError, SessionNotFoundError
from runbox.models import (
    ContainerSpec,
    ExecutionState,
    MessageType,
    Mount,
    ResourceLimits,
    RunConfig,
    ShellConfig,
)
from runbox.v1 import runbox_pb2, runbox_pb2_grpc

if TYPE_CHECKING:
    from grpc import ServicerContext

logger = logging.getLogger(__name__)


class AsyncLoopThread:
    """Manages a dedicated event loop running in a background thread.

    Sync gRPC handlers schedule async work on this shared loop, so shell
    sessions and their reader tasks outlive any single request.
    """

    def __init__(self) -> None:
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start the background event loop thread."""
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, daemon=True)
        self._thread.start()

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def submit(self, coro) -> futures.Future:
        """Schedule a coroutine on the background loop without waiting."""
        if self._loop is None:
            raise RuntimeError("Event loop not started")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def run(self, coro) -> Any:
        """Run a coroutine on the background loop and wait for result.

        This is thread-safe and can be called from any thread.
        """
        return self.submit(coro).result()

    def call(self, func: Callable, *args) -> Any:
        """Run a plain callable on the loop thread and return its result."""

        async def invoke():
            return func(*args)

        return self.run(invoke())

    def stop(self) -> None:
        """Stop the background event loop."""
        if self._loop:
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread:
            self._thread.join(timeout=5)


def envelope(response_cls: type) -> Callable:
    """Turn exceptions from a unary handler into ``response_cls(success=False)``."""

    def decorator(method: Callable) -> Callable:
        @functools.wraps(method)
        def wrapper(self, request, context: ServicerContext):
            try:
                return method(self, request, context)
            except (RunboxError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"{method.__name__} failed: {e}")
                return response_cls(success=False, error=str(e))
            except Exception as e:
                logger.exception(f"{method.__name__} crashed")
                return response_cls(success=False, error=str(e))

        return wrapper

    return decorator


def to_struct(data: dict) -> struct_pb2.Struct:
    message = struct_pb2.Struct()
    message.update(data)
    return message


def to_message(message_cls: type, fields: Any):
    """Build ``message_cls`` from a dict or dataclass, leaving ``None`` fields unset."""
    if is_dataclass(fields):
        fields = asdict(fields)
    return message_cls(**{key: value for key, value in fields.items() if value is not None})


def run_response(result) -> runbox_pb2.RunResponse:
    return to_message(runbox_pb2.RunResponse, result.to_dict())


def failed_run(error: Exception) -> runbox_pb2.RunResponse:
    return runbox_pb2.RunResponse(success=False, error=str(error), state=ExecutionState.FAILED.value)


def container_spec(request: runbox_pb2.CreateContainerRequest) -> ContainerSpec:
    if not request.image:
        raise ValueError("image is required")
    limits = None
    if request.HasField("limits"):
        limits = ResourceLimits(
            memory=request.limits.memory,
            memory_swap=request.limits.memory_swap,
            cpu_quota=request.limits.cpu_quota,
            cpu_period=request.limits.cpu_period,
        )
    return ContainerSpec(
        image=request.image,
        command=list(request.command),
        working_dir=request.working_dir or None,
        mounts=[Mount(m.host_path, m.container_path, read_only=m.read_only) for m in request.mounts],
        limits=limits,
        network_mode=request.network_mode or None,
        tty=request.tty,
        stdin_open=request.stdin_open,
        auto_remove=request.auto_remove,
        name=request.name or None,
        labels=dict(request.labels),
    )


def _require(value: str, name: str) -> str:
    if not value:
        raise ValueError(f"{name} is required")
    return value


class RunboxServicer(runbox_pb2_grpc.RunboxServiceServicer):
    """gRPC servicer implementation."""

    # How often a blocked ShellMessages call checks that its client is still there
    poll_interval = 1.0

    def __init__(self, ctx: AppContext, loop_thread: AsyncLoopThread) -> None:
        self.ctx = ctx
        self._loop = loop_thread

    # Engine

    @envelope(runbox_pb2.CheckConnectionResponse)
    def CheckConnection(
        self, request: runbox_pb2.CheckConnectionRequest, context: ServicerContext
    ) -> runbox_pb2.CheckConnectionResponse:
        try:
            info = self._loop.run(self.ctx.connection.connect(refresh=request.refresh))
        except EngineConnectionError as e:
            return runbox_pb2.CheckConnectionResponse(
                success=False,
                error=str(e),
                info=runbox_pb2.ConnectionInfo(connected=False),
                cause=e.cause.value,
            )
        return runbox_pb2.CheckConnectionResponse(success=True, info=to_message(runbox_pb2.ConnectionInfo, info))

    @envelope(runbox_pb2.PingResponse)
    def Ping(self, request: runbox_pb2.PingRequest, context: ServicerContext) -> runbox_pb2.PingResponse:
        return runbox_pb2.PingResponse(success=True, alive=self._loop.run(self.ctx.connection.ping()))

    @envelope(runbox_pb2.DiagnosticsResponse)
    def Diagnostics(
        self, request: runbox_pb2.DiagnosticsRequest, context: ServicerContext
    ) -> runbox_pb2.DiagnosticsResponse:
        report = dict(self._loop.run(self.ctx.connection.diagnostics()))
        info = report.pop("info")
        response = to_message(runbox_pb2.DiagnosticsResponse, report)
        response.success = info is not None
        if info is not None:
            response.info.CopyFrom(to_message(runbox_pb2.ConnectionInfo, info))
        return response

    # Images

    @envelope(runbox_pb2.ListImagesResponse)
    def ListImages(
        self, request: runbox_pb2.ListImagesRequest, context: ServicerContext
    ) -> runbox_pb2.ListImagesResponse:
        images = self._loop.run(self.ctx.images.list())
        return runbox_pb2.ListImagesResponse(
            success=True, images=[to_message(runbox_pb2.ImageSummary, image) for image in images]
        )

    @envelope(runbox_pb2.ImageAvailableResponse)
    def ImageAvailable(
        self, request: runbox_pb2.ImageRequest, context: ServicerContext
    ) -> runbox_pb2.ImageAvailableResponse:
        image = _require(request.image, "image")
        return runbox_pb2.ImageAvailableResponse(
            success=True, available=self._loop.run(self.ctx.engine.is_image_available(image))
        )

    def PullImage(self, request: runbox_pb2.ImageRequest, context: ServicerContext) -> Iterator[runbox_pb2.PullEvent]:
        """Stream raw daemon pull events, then the result."""
        image = request.image
        if not image:
            yield runbox_pb2.PullEvent(result=runbox_pb2.PullResult(success=False, error="image is required"))
            return

        def start(push):
            return self.ctx.images.pull(image, lambda event: push(runbox_pb2.PullEvent(progress=to_struct(event))))

        yield from self._stream(
            context,
            start,
            lambda _: runbox_pb2.PullEvent(result=runbox_pb2.PullResult(success=True, pulled=True)),
            lambda e: runbox_pb2.PullEvent(result=runbox_pb2.PullResult(success=False, error=str(e))),
        )

    def EnsureImage(self, request: runbox_pb2.ImageRequest, context: ServicerContext) -> Iterator[runbox_pb2.PullEvent]:
        """Pull the image if it is missing, streaming status lines."""
        image = request.image
        if not image:
            yield runbox_pb2.PullEvent(result=runbox_pb2.PullResult(success=False, error="image is required"))
            return

        def start(push):
            return self.ctx.engine.ensure_image(image, lambda status: push(runbox_pb2.PullEvent(status=status)))

        yield from self._stream(
            context,
            start,
            lambda pulled: runbox_pb2.PullEvent(result=runbox_pb2.PullResult(success=True, pulled=pulled)),
            lambda e: runbox_pb2.PullEvent(result=runbox_pb2.PullResult(success=False, error=str(e))),
        )

    @envelope(runbox_pb2.StatusResponse)
    def RemoveImage(self, request: runbox_pb2.RemoveImageRequest, context: ServicerContext) -> runbox_pb2.StatusResponse:
        image = _require(request.image, "image")
        self._loop.run(self.ctx.images.remove(image, force=request.force, prune_untagged=not request.no_prune))
        return runbox_pb2.StatusResponse(success=True)

    @envelope(runbox_pb2.StructResponse)
    def InspectImage(self, request: runbox_pb2.ImageRequest, context: ServicerContext) -> runbox_pb2.StructResponse:
        details = self._loop.run(self.ctx.images.inspect(_require(request.image, "image")))
        return runbox_pb2.StructResponse(success=True, data=to_struct(details))

    @envelope(runbox_pb2.SearchImagesResponse)
    def SearchImages(
        self, request: runbox_pb2.SearchImagesRequest, context: ServicerContext
    ) -> runbox_pb2.SearchImagesResponse:
        term = _require(request.term, "term")
        results = self._loop.run(self.ctx.images.search(term, limit=request.limit or None))
        return runbox_pb2.SearchImagesResponse(success=True, results=[to_struct(r) for r in results])

    # Containers

    @envelope(runbox_pb2.ListContainersResponse)
    def ListContainers(
        self, request: runbox_pb2.ListContainersRequest, context: ServicerContext
    ) -> runbox_pb2.ListContainersResponse:
        containers = self._loop.run(self.ctx.containers.list(all=not request.running_only))
        return runbox_pb2.ListContainersResponse(success=True, containers=[to_struct(c) for c in containers])

    @envelope(runbox_pb2.CreateContainerResponse)
    def CreateContainer(
        self, request: runbox_pb2.CreateContainerRequest, context: ServicerContext
    ) -> runbox_pb2.CreateContainerResponse:
        instance = self._loop.run(self.ctx.containers.create(container_spec(request)))
        return runbox_pb2.CreateContainerResponse(success=True, container_id=instance.id, name=instance.name or "")

    @envelope(runbox_pb2.StatusResponse)
    def StartContainer(self, request: runbox_pb2.ContainerRequest, context: ServicerContext) -> runbox_pb2.StatusResponse:
        self._loop.run(self.ctx.containers.start(_require(request.container_id, "container_id")))
        return runbox_pb2.StatusResponse(success=True)

    @envelope(runbox_pb2.StatusResponse)
    def StopContainer(
        self, request: runbox_pb2.StopContainerRequest, context: ServicerContext
    ) -> runbox_pb2.StatusResponse:
        container_id = _require(request.container_id, "container_id")
        if request.HasField("grace_period"):
            self._loop.run(self.ctx.containers.stop(container_id, grace_period=request.grace_period))
        else:
            self._loop.run(self.ctx.containers.stop(container_id))
        return runbox_pb2.StatusResponse(success=True)

    @envelope(runbox_pb2.StatusResponse)
    def RemoveContainer(
        self, request: runbox_pb2.RemoveContainerRequest, context: ServicerContext
    ) -> runbox_pb2.StatusResponse:
        self._loop.run(
            self.ctx.containers.remove(
                _require(request.container_id, "container_id"),
                force=request.force,
                remove_volumes=request.remove_volumes,
            )
        )
        return runbox_pb2.StatusResponse(success=True)

    @envelope(runbox_pb2.ExecContainerResponse)
    def ExecContainer(
        self, request: runbox_pb2.ExecContainerRequest, context: ServicerContext
    ) -> runbox_pb2.ExecContainerResponse:
        if not request.command:
            raise ValueError("command is required")
        result = self._loop.run(
            self.ctx.containers.exec(_require(request.container_id, "container_id"), list(request.command))
        )
        return to_message(runbox_pb2.ExecContainerResponse, {"success": True, **asdict(result)})

    @envelope(runbox_pb2.ContainerLogsResponse)
    def ContainerLogs(
        self, request: runbox_pb2.ContainerLogsRequest, context: ServicerContext
    ) -> runbox_pb2.ContainerLogsResponse:
        tail = request.tail if request.HasField("tail") else 100
        logs = self._loop.run(
            self.ctx.containers.logs(
                _require(request.container_id, "container_id"), tail=tail, timestamps=request.timestamps
            )
        )
        return runbox_pb2.ContainerLogsResponse(success=True, logs=logs)

    @envelope(runbox_pb2.StructResponse)
    def ContainerStats(self, request: runbox_pb2.ContainerRequest, context: ServicerContext) -> runbox_pb2.StructResponse:
        stats = self._loop.run(self.ctx.containers.stats(_require(request.container_id, "container_id")))
        return runbox_pb2.StructResponse(success=True, data=to_struct(stats))

    def StreamStats(
        self, request: runbox_pb2.ContainerRequest, context: ServicerContext
    ) -> Iterator[runbox_pb2.StructResponse]:
        """Stream stats samples until the container stops or the client leaves."""
        container_id = request.container_id
        if not container_id:
            yield runbox_pb2.StructResponse(success=False, error="container_id is required")
            return

        async def start(push):
            async for sample in self.ctx.containers.stream_stats(container_id):
                push(runbox_pb2.StructResponse(success=True, data=to_struct(sample)))

        yield from self._stream(
            context, start, None, lambda e: runbox_pb2.StructResponse(success=False, error=str(e))
        )

    @envelope(runbox_pb2.ContainerStateResponse)
    def ContainerState(
        self, request: runbox_pb2.ContainerRequest, context: ServicerContext
    ) -> runbox_pb2.ContainerStateResponse:
        state = self._loop.run(self.ctx.containers.state(_require(request.container_id, "container_id")))
        return runbox_pb2.ContainerStateResponse(success=True, state=state.value)

    # Execution

    @envelope(runbox_pb2.RunResponse)
    def Run(self, request: runbox_pb2.RunRequest, context: ServicerContext) -> runbox_pb2.RunResponse:
        return run_response(self._loop.run(self.ctx.engine.run(self._run_config(request))))

    def RunStream(self, request: runbox_pb2.RunRequest, context: ServicerContext) -> Iterator[runbox_pb2.RunEvent]:
        """Stream status and output events, then the result."""
        try:
            config = self._run_config(request)
        except ValueError as e:
            yield runbox_pb2.RunEvent(result=failed_run(e))
            return

        def start(push):
            return self.ctx.engine.run(
                config,
                on_progress=lambda status: push(runbox_pb2.RunEvent(status=status)),
                on_output=lambda stream, text: push(
                    runbox_pb2.RunEvent(output=runbox_pb2.OutputChunk(stream=stream, data=text))
                ),
            )

        yield from self._stream(
            context,
            start,
            lambda result: runbox_pb2.RunEvent(result=run_response(result)),
            lambda e: runbox_pb2.RunEvent(result=failed_run(e)),
        )

    @envelope(runbox_pb2.GetLanguagesResponse)
    def GetLanguages(
        self, request: runbox_pb2.GetLanguagesRequest, context: ServicerContext
    ) -> runbox_pb2.GetLanguagesResponse:
        return runbox_pb2.GetLanguagesResponse(success=True, languages=self.ctx.engine.supported_languages())

    @envelope(runbox_pb2.GetLanguageConfigResponse)
    def GetLanguageConfig(
        self, request: runbox_pb2.GetLanguageConfigRequest, context: ServicerContext
    ) -> runbox_pb2.GetLanguageConfigResponse:
        profile = self.ctx.engine.get_profile(request.language)
        if profile is None:
            return runbox_pb2.GetLanguageConfigResponse(
                success=False, error=f"Unsupported language: {request.language}"
            )
        return runbox_pb2.GetLanguageConfigResponse(
            success=True, image=profile.image, extensions=list(profile.extensions)
        )

    # Shells

    @envelope(runbox_pb2.StartShellResponse)
    def StartShell(
        self, request: runbox_pb2.StartShellRequest, context: ServicerContext
    ) -> runbox_pb2.StartShellResponse:
        config = ShellConfig(
            image=request.image or None,
            workspace_path=request.workspace_path or None,
            language=request.language or None,
            command=list(request.command) or None,
        )
        session = self._loop.run(self.ctx.shells.start_shell(_require(request.shell_id, "shell_id"), config))
        shell = to_message(runbox_pb2.ShellInfo, session.describe())
        if not session.is_active:
            errors = [m.data for m in session.backlog if m.type == MessageType.ERROR]
            error = errors[-1] if errors else f"Failed to start shell {session.session_id}"
            return runbox_pb2.StartShellResponse(success=False, error=error, shell=shell)
        return runbox_pb2.StartShellResponse(success=True, shell=shell)

    @envelope(runbox_pb2.StatusResponse)
    def WriteShell(self, request: runbox_pb2.WriteShellRequest, context: ServicerContext) -> runbox_pb2.StatusResponse:
        session = self.ctx.shells.require_shell(request.shell_id)
        if request.newline:
            self._loop.run(session.write_line(request.data))
        else:
            self._loop.run(session.write(request.data))
        return runbox_pb2.StatusResponse(success=True)

    @envelope(runbox_pb2.StatusResponse)
    def ResizeShell(self, request: runbox_pb2.ResizeShellRequest, context: ServicerContext) -> runbox_pb2.StatusResponse:
        session = self.ctx.shells.require_shell(request.shell_id)
        self._loop.run(session.resize(request.cols, request.rows))
        return runbox_pb2.StatusResponse(success=True)

    @envelope(runbox_pb2.StatusResponse)
    def StopShell(self, request: runbox_pb2.ShellRequest, context: ServicerContext) -> runbox_pb2.StatusResponse:
        self._loop.run(self.ctx.shells.stop_shell(request.shell_id))
        return runbox_pb2.StatusResponse(success=True)

    @envelope(runbox_pb2.ListShellsResponse)
    def ListShells(self, request: runbox_pb2.ListShellsRequest, context: ServicerContext) -> runbox_pb2.ListShellsResponse:
        return runbox_pb2.ListShellsResponse(
            success=True,
            shells=[to_message(runbox_pb2.ShellInfo, info) for info in self.ctx.shells.list_sessions()],
        )

    def ShellMessages(self, request: runbox_pb2.ShellRequest, context: ServicerContext) -> Iterator[runbox_pb2.ShellMessage]:
        """Stream one shell's messages until it closes or the client goes away.

        Each call gets its own subscription, so concurrent callers all see
        the full output.
        """
        session = self.ctx.shells.get_shell(request.shell_id)
        if session is None:
            yield runbox_pb2.ShellMessage(
                type=MessageType.ERROR.value, data=str(SessionNotFoundError(request.shell_id))
            )
            return

        subscription = self._loop.call(session.subscribe)
        try:
            while context.is_active():
                try:
                    message = self._loop.run(asyncio.wait_for(subscription.get(), self.poll_interval))
                except asyncio.TimeoutError:
                    continue
                yield runbox_pb2.ShellMessage(type=message.type.value, data=message.data)
                if message.type == MessageType.CLOSE:
                    return
        finally:
            self._loop.call(session.unsubscribe, subscription)

    # Helpers

    def _run_config(self, request: runbox_pb2.RunRequest) -> RunConfig:
        return RunConfig(
            file_path=request.file_path,
            workspace_path=request.workspace_path,
            language=request.language or None,
        )

    def _stream(
        self,
        context: ServicerContext,
        start: Callable[[Callable[[Any], None]], Any],
        finish: Optional[Callable[[Any], Any]],
        failed: Callable[[Exception], Any],
    ) -> Iterator[Any]:
        """Run a coroutine on the loop, relaying whatever it pushes, then its outcome."""
        updates: queue.Queue = queue.Queue()
        done = object()
        future = self._loop.submit(start(updates.put))
        future.add_done_callback(lambda _: updates.put(done))
        context.add_callback(future.cancel)

        while True:
            item = updates.get()
            if item is done:
                break
            yield item

        try:
            outcome = future.result()
        except futures.CancelledError:
            return
        except RunboxError as e:
            yield failed(e)
            return
        if finish is not None:
            yield finish(outcome)


def create_server(
    ctx: AppContext, loop_thread: AsyncLoopThread, port: int, max_workers: int = 10
) -> tuple[grpc.Server, int]:
    """Build a server bound to ``port`` (0 picks a free one)."""
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=max_workers))
    runbox_pb2_grpc.add_RunboxServiceServicer_to_server(RunboxServicer(ctx, loop_thread), server)
    bound = server.add_insecure_port(f"[::]:{port}")
    return server, bound


def serve(settings: Optional[Settings] = None) -> None:
    """Start the gRPC server."""
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    ctx = AppContext.build(settings)

    # Start background event loop for async operations
    loop_thread = AsyncLoopThread()
    loop_thread.start()

    try:
        loop_thread.run(ctx.start())
    except EngineConnectionError as e:
        logger.warning(f"Docker unavailable at startup ({e.cause.value}): {e}")

    server, port = create_server(ctx, loop_thread, settings.grpc_port)
    server.start()
    logger.info(f"gRPC server started on port {port}")

    try:
        server.wait_for_termination()
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        loop_thread.run(ctx.stop())
        loop_thread.stop()
        server.stop(grace=5)


if __name__ == "__main__":
    serve()
