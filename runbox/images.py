"""Local image inventory and registry pulls."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from runbox.connection import EngineConnection
from runbox.errors import ImageError, ImageNotFoundError, ImagePullError
from runbox.models import ImageSummary

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[dict], Any]

_RUNTIME_ERRORS = (DockerException, requests.RequestException)


def normalize_reference(ref: str) -> str:
    """Apply Docker's implicit ``latest`` tag to an untagged reference."""
    if "@" in ref:
        return ref
    last = ref.rsplit("/", 1)[-1]
    return ref if ":" in last else f"{ref}:latest"


class ImageRegistry:
    """Image operations against the shared Docker client.

    Runtime exceptions are converted to ``ImageError`` subclasses here.
    """

    def __init__(self, connection: EngineConnection):
        self.connection = connection

    async def _run(self, func, *args):
        return await asyncio.get_event_loop().run_in_executor(None, func, *args)

    async def list(self) -> list[ImageSummary]:
        def list_images():
            return [
                ImageSummary(
                    id=image.id,
                    tags=list(image.tags),
                    size=image.attrs.get("Size", 0),
                    created=image.attrs.get("Created"),
                )
                for image in self.connection.client.images.list()
            ]

        try:
            return await self._run(list_images)
        except _RUNTIME_ERRORS as e:
            raise ImageError(f"Failed to list images: {e}") from e

    async def available(self, ref: str) -> bool:
        """True iff a local image carries exactly this tag."""
        wanted = normalize_reference(ref)
        for image in await self.list():
            if wanted in image.tags:
                return True
        return False

    async def pull(self, ref: str, on_progress: Optional[ProgressCallback] = None) -> None:
        """Pull ``ref``, forwarding each progress event verbatim.

        Events are delivered on the event loop, in the order the daemon sent
        them, before this coroutine returns.

        Raises:
            ImagePullError: the daemon rejected the pull or reported an
                error frame.
        """
        ref = normalize_reference(ref)
        loop = asyncio.get_event_loop()

        def do_pull():
            for event in self.connection.client.api.pull(ref, stream=True, decode=True):
                if on_progress:
                    loop.call_soon_threadsafe(on_progress, event)
                if "error" in event:
                    raise ImagePullError(f"Failed to pull {ref}: {event['error']}")

        logger.info(f"Pulling image {ref}")
        try:
            await self._run(do_pull)
        except ImagePullError:
            raise
        except _RUNTIME_ERRORS as e:
            raise ImagePullError(f"Failed to pull {ref}: {e}") from e
        logger.info(f"Pulled image {ref}")

    async def ensure(self, ref: str, on_progress: Optional[ProgressCallback] = None) -> bool:
        """Pull ``ref`` unless it is already present. Returns True if pulled."""
        if await self.available(ref):
            return False
        await self.pull(ref, on_progress)
        return True

    async def inspect(self, ref: str) -> dict:
        try:
            return await self._run(self.connection.client.api.inspect_image, ref)
        except (ImageNotFound, NotFound) as e:
            raise ImageNotFoundError(f"Image not found: {ref}") from e
        except _RUNTIME_ERRORS as e:
            raise ImageError(f"Failed to inspect {ref}: {e}") from e

    async def remove(self, ref: str, force: bool = False, prune_untagged: bool = True) -> None:
        try:
            await self._run(
                lambda: self.connection.client.images.remove(
                    image=ref, force=force, noprune=not prune_untagged
                )
            )
        except (ImageNotFound, NotFound) as e:
            raise ImageNotFoundError(f"Image not found: {ref}") from e
        except APIError as e:
            raise ImageError(f"Failed to remove {ref}: {e.explanation or e}") from e
        except _RUNTIME_ERRORS as e:
            raise ImageError(f"Failed to remove {ref}: {e}") from e
        logger.info(f"Removed image {ref}")

    async def search(self, term: str, limit: Optional[int] = None) -> list[dict]:
        try:
            return await self._run(
                lambda: self.connection.client.images.search(term, limit=limit)
            )
        except _RUNTIME_ERRORS as e:
            raise ImageError(f"Image search failed: {e}") from e
