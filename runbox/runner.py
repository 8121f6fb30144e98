"""One-shot execution of source files in ephemeral containers."""

import asyncio
import logging
import time
import uuid
from pathlib import Path, PurePosixPath
from typing import Callable, Optional

from runbox.containers import AttachedStream, ContainerLifecycle
from runbox.demux import OutputCollector
from runbox.errors import (
    ContainerError,
    ContainerNotFoundError,
    ExecutionTimeoutError,
    ImageError,
    RunboxError,
    StreamError,
    UnsupportedLanguageError,
)
from runbox.images import ImageRegistry
from runbox.languages import LANGUAGE_PROFILES, LanguageProfile, language_for_extension
from runbox.models import (
    WORKSPACE_MOUNT,
    ContainerSpec,
    ExecutionResult,
    ExecutionState,
    Mount,
    ResourceLimits,
    RunConfig,
)

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]
OutputCallback = Callable[[str, str], None]


def format_pull_event(ref: str, event: dict) -> Optional[str]:
    """Render a pull progress event as a one-line status."""
    status = event.get("status")
    if not status:
        return None
    parts = [f"{ref}:"]
    if event.get("id"):
        parts.append(f"{event['id']}")
    parts.append(status)
    if event.get("progress"):
        parts.append(event["progress"])
    return " ".join(parts)


class ExecutionEngine:
    """Runs a source file in a fresh, resource-capped container.

    Each run creates its own container, attaches to its output before
    starting it, and removes it before returning. Nothing is shared between
    runs.
    """

    def __init__(
        self,
        images: ImageRegistry,
        containers: ContainerLifecycle,
        profiles: Optional[dict[str, LanguageProfile]] = None,
        timeout: float = 30.0,
        limits: Optional[ResourceLimits] = None,
        workspace_mount: str = WORKSPACE_MOUNT,
        drain_timeout: float = 2.0,
    ):
        self.images = images
        self.containers = containers
        self.profiles = profiles if profiles is not None else LANGUAGE_PROFILES
        self.timeout = timeout
        self.limits = limits or ResourceLimits()
        self.workspace_mount = workspace_mount
        self.drain_timeout = drain_timeout

    def supported_languages(self) -> list[str]:
        return list(self.profiles)

    def get_profile(self, language: Optional[str]) -> Optional[LanguageProfile]:
        if not language:
            return None
        return self.profiles.get(language.lower())

    def detect_language(self, file_path: str) -> Optional[str]:
        return language_for_extension(file_path, self.profiles)

    async def is_image_available(self, image: str) -> bool:
        try:
            return await self.images.available(image)
        except ImageError as e:
            logger.warning(f"Could not list images: {e}")
            return False

    async def ensure_image(self, image: str, on_progress: Optional[StatusCallback] = None) -> bool:
        """Make sure ``image`` is present locally, pulling it if needed.

        Returns True if a pull happened.

        Raises:
            ImageError: listing or pulling failed.
        """
        pulling = False

        def forward(event: dict) -> None:
            nonlocal pulling
            if not pulling:
                pulling = True
                _notify(on_progress, f"Pulling image {image}...")
            line = format_pull_event(image, event)
            if line:
                _notify(on_progress, line)

        pulled = await self.images.ensure(image, forward)
        if pulled:
            _notify(on_progress, f"Image {image} ready")
        return pulled

    def container_path(self, config: RunConfig) -> str:
        """Map ``config.file_path`` to its location inside the workspace mount."""
        workspace = Path(config.workspace_path).resolve()
        source = Path(config.file_path)
        if not source.is_absolute():
            source = workspace / source
        try:
            relative = source.resolve().relative_to(workspace)
        except ValueError:
            raise ValueError(f"{config.file_path} is outside workspace {config.workspace_path}")
        return str(PurePosixPath(self.workspace_mount, *relative.parts))

    def build_spec(self, profile: LanguageProfile, config: RunConfig) -> ContainerSpec:
        return ContainerSpec(
            image=profile.image,
            command=profile.command(self.container_path(config)),
            working_dir=self.workspace_mount,
            mounts=[Mount(str(Path(config.workspace_path).resolve()), self.workspace_mount, read_only=True)],
            limits=self.limits,
            network_mode="none",
            tty=False,
            stdin_open=False,
            name=f"runbox-run-{uuid.uuid4().hex[:12]}",
            labels={"runbox": "true", "runbox.role": "run", "runbox.language": profile.language},
        )

    async def run(
        self,
        config: RunConfig,
        on_progress: Optional[StatusCallback] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> ExecutionResult:
        """Run ``config.file_path`` and collect its output.

        Never raises for runtime failures: unsupported languages, pull
        failures, container errors and timeouts all come back as a result
        with ``success=False``.
        """
        started = time.monotonic()
        state = ExecutionState.PENDING
        language = config.language or self.detect_language(config.file_path)
        profile = self.get_profile(language)
        if profile is None:
            error = UnsupportedLanguageError(language)
            logger.info(str(error))
            return _failed(str(error), started)

        collector = OutputCollector(on_output)
        container_id = None
        stream: Optional[AttachedStream] = None
        reader: Optional[asyncio.Task] = None
        try:
            state = ExecutionState.IMAGE_ENSURING
            _notify(on_progress, f"Checking image {profile.image}...")
            await self.ensure_image(profile.image, on_progress)

            state = ExecutionState.CONTAINER_CREATING
            _notify(on_progress, "Creating container...")
            spec = self.build_spec(profile, config)
            instance = await self.containers.create(spec)
            container_id = instance.id

            stream = await self.containers.attach(container_id, stdout=True, stderr=True)
            reader = asyncio.ensure_future(_collect(stream, collector))

            state = ExecutionState.RUNNING
            _notify(on_progress, "Running code...")
            await self.containers.start(container_id)

            try:
                exit_code = await asyncio.wait_for(self.containers.wait(container_id), self.timeout)
            except asyncio.TimeoutError:
                raise ExecutionTimeoutError(self.timeout)

            await self._drain(reader, stream)
            collector.finish()
            duration = time.monotonic() - started
            logger.info(f"Run of {config.file_path} exited with {exit_code} in {duration:.2f}s")
            return ExecutionResult(
                success=exit_code == 0,
                stdout=collector.stdout,
                stderr=collector.stderr,
                exit_code=exit_code,
                duration=duration,
                state=ExecutionState.COMPLETED,
            )

        except ExecutionTimeoutError as e:
            logger.warning(f"Run of {config.file_path} timed out after {self.timeout}s")
            collector.finish()
            return ExecutionResult(
                success=False,
                stdout=collector.stdout,
                stderr=collector.stderr,
                duration=time.monotonic() - started,
                state=ExecutionState.TIMED_OUT,
                error=str(e),
                timed_out=True,
            )
        except (RunboxError, ValueError) as e:
            logger.error(f"Run of {config.file_path} failed during {state.value}: {e}")
            return _failed(str(e), started, collector.stdout, collector.stderr)
        finally:
            if reader is not None:
                if not reader.done():
                    reader.cancel()
                elif not reader.cancelled() and reader.exception():
                    logger.warning(f"Output stream failed: {reader.exception()}")
            if stream is not None:
                stream.close()
            if container_id is not None:
                await self._discard(container_id)

    async def _drain(self, reader: asyncio.Task, stream: AttachedStream) -> None:
        """Wait for the attach stream to deliver its last bytes."""
        try:
            await asyncio.wait_for(asyncio.shield(reader), self.drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("Output stream did not close after exit; truncating")
        except StreamError as e:
            logger.warning(str(e))

    async def _discard(self, container_id: str) -> None:
        try:
            await self.containers.stop(container_id, grace_period=0)
        except ContainerNotFoundError:
            return
        except ContainerError as e:
            logger.debug(f"Stop before remove failed: {e}")
        try:
            await self.containers.remove(container_id, force=True)
        except ContainerNotFoundError:
            pass
        except ContainerError as e:
            logger.error(f"Failed to remove run container {container_id[:12]}: {e}")


async def _collect(stream: AttachedStream, collector: OutputCollector) -> None:
    async for chunk in stream.chunks():
        collector.feed(chunk)


def _notify(callback: Optional[StatusCallback], status: str) -> None:
    if callback:
        callback(status)


def _failed(error: str, started: float, stdout: str = "", stderr: str = "") -> ExecutionResult:
    return ExecutionResult(
        success=False,
        stdout=stdout,
        stderr=stderr,
        duration=time.monotonic() - started,
        state=ExecutionState.FAILED,
        error=error,
    )
