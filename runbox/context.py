"""Wiring of the engine services."""

import functools
import logging
from dataclasses import dataclass
from typing import Optional

from runbox.config import Settings
from runbox.connection import EngineConnection
from runbox.containers import ContainerLifecycle
from runbox.images import ImageRegistry
from runbox.models import ConnectionInfo
from runbox.runner import ExecutionEngine
from runbox.shell import InteractiveSession, SessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """One instance of each service, sharing a single engine connection."""

    settings: Settings
    connection: EngineConnection
    images: ImageRegistry
    containers: ContainerLifecycle
    engine: ExecutionEngine
    shells: SessionRegistry

    @classmethod
    def build(cls, settings: Optional[Settings] = None, connection: Optional[EngineConnection] = None) -> "AppContext":
        settings = settings or Settings()
        connection = connection or EngineConnection()
        images = ImageRegistry(connection)
        containers = ContainerLifecycle(connection)
        engine = ExecutionEngine(
            images,
            containers,
            timeout=settings.run_timeout,
            limits=settings.limits,
            workspace_mount=settings.workspace_mount,
            drain_timeout=settings.drain_timeout,
        )
        factory = functools.partial(
            InteractiveSession,
            images=images,
            containers=containers,
            workspace_mount=settings.workspace_mount,
            stop_grace_period=settings.shell_stop_grace,
        )
        return cls(
            settings=settings,
            connection=connection,
            images=images,
            containers=containers,
            engine=engine,
            shells=SessionRegistry(factory),
        )

    async def start(self) -> ConnectionInfo:
        return await self.connection.connect()

    async def stop(self) -> None:
        """Stop every shell and release the engine connection."""
        await self.shells.stop_all()
        self.connection.close()
        logger.info("Runbox context stopped")
