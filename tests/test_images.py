"""Tests for ImageRegistry."""

from unittest.mock import MagicMock

import pytest
import requests
from docker.errors import APIError, ImageNotFound

from runbox.errors import ImageError, ImageNotFoundError, ImagePullError
from runbox.images import ImageRegistry, normalize_reference


def image(*tags, id="sha256:abc"):
    img = MagicMock()
    img.id = id
    img.tags = list(tags)
    img.attrs = {"Size": 1024, "Created": "2024-01-01T00:00:00Z"}
    return img


class TestNormalizeReference:
    def test_untagged_gets_latest(self):
        assert normalize_reference("alpine") == "alpine:latest"

    def test_tagged_is_unchanged(self):
        assert normalize_reference("python:3.11-slim") == "python:3.11-slim"

    def test_registry_port_is_not_a_tag(self):
        assert normalize_reference("localhost:5000/tools") == "localhost:5000/tools:latest"

    def test_digest_is_unchanged(self):
        assert normalize_reference("alpine@sha256:deadbeef") == "alpine@sha256:deadbeef"


class TestAvailable:
    @pytest.mark.asyncio
    async def test_exact_tag_match(self, connection):
        connection.client.images.list.return_value = [image("python:3.11-slim")]
        registry = ImageRegistry(connection)
        assert await registry.available("python:3.11-slim") is True

    @pytest.mark.asyncio
    async def test_other_tag_of_same_repository_is_not_available(self, connection):
        connection.client.images.list.return_value = [image("python:3.12-slim")]
        registry = ImageRegistry(connection)
        assert await registry.available("python:3.11-slim") is False
        assert await registry.available("python") is False

    @pytest.mark.asyncio
    async def test_implicit_latest(self, connection):
        connection.client.images.list.return_value = [image("alpine:latest")]
        registry = ImageRegistry(connection)
        assert await registry.available("alpine") is True

    @pytest.mark.asyncio
    async def test_list_failure_is_normalized(self, connection):
        connection.client.images.list.side_effect = requests.ConnectionError("socket closed")
        registry = ImageRegistry(connection)
        with pytest.raises(ImageError):
            await registry.available("alpine")


class TestList:
    @pytest.mark.asyncio
    async def test_list_returns_summaries(self, connection):
        connection.client.images.list.return_value = [image("node:20-alpine", "node:20", id="sha256:1")]
        summaries = await ImageRegistry(connection).list()
        assert len(summaries) == 1
        assert summaries[0].id == "sha256:1"
        assert summaries[0].tags == ["node:20-alpine", "node:20"]
        assert summaries[0].size == 1024


class TestPull:
    @pytest.mark.asyncio
    async def test_progress_events_forwarded_in_order(self, connection):
        events = [
            {"status": "Pulling from library/alpine", "id": "latest"},
            {"status": "Downloading", "id": "abc", "progress": "[==>  ]"},
            {"status": "Status: Downloaded newer image for alpine:latest"},
        ]
        connection.client.api.pull.return_value = iter(events)
        seen = []

        await ImageRegistry(connection).pull("alpine", seen.append)

        assert seen == events
        connection.client.api.pull.assert_called_once_with("alpine:latest", stream=True, decode=True)

    @pytest.mark.asyncio
    async def test_error_frame_rejects(self, connection):
        connection.client.api.pull.return_value = iter(
            [{"status": "Pulling"}, {"error": "manifest for nope:1 not found"}]
        )
        seen = []

        with pytest.raises(ImagePullError, match="manifest for nope:1 not found"):
            await ImageRegistry(connection).pull("nope:1", seen.append)

        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_api_error_is_normalized(self, connection):
        connection.client.api.pull.side_effect = APIError("denied")
        with pytest.raises(ImagePullError):
            await ImageRegistry(connection).pull("private/thing:1")


class TestEnsure:
    @pytest.mark.asyncio
    async def test_available_image_is_not_pulled(self, connection):
        connection.client.images.list.return_value = [image("python:3.11-slim")]
        registry = ImageRegistry(connection)

        assert await registry.ensure("python:3.11-slim") is False
        assert await registry.ensure("python:3.11-slim") is False
        connection.client.api.pull.assert_not_called()

    @pytest.mark.asyncio
    async def test_second_ensure_after_pull_does_not_pull(self, connection):
        connection.client.images.list.side_effect = [[], [image("alpine:latest")]]
        connection.client.api.pull.return_value = iter([{"status": "done"}])
        registry = ImageRegistry(connection)

        assert await registry.ensure("alpine:latest") is True
        assert await registry.ensure("alpine:latest") is False
        assert connection.client.api.pull.call_count == 1


class TestInspectRemoveSearch:
    @pytest.mark.asyncio
    async def test_inspect(self, connection):
        connection.client.api.inspect_image.return_value = {"Id": "sha256:1"}
        assert await ImageRegistry(connection).inspect("alpine") == {"Id": "sha256:1"}

    @pytest.mark.asyncio
    async def test_inspect_missing(self, connection):
        connection.client.api.inspect_image.side_effect = ImageNotFound("no such image")
        with pytest.raises(ImageNotFoundError):
            await ImageRegistry(connection).inspect("missing:1")

    @pytest.mark.asyncio
    async def test_remove_passes_options(self, connection):
        await ImageRegistry(connection).remove("alpine:latest", force=True, prune_untagged=False)
        connection.client.images.remove.assert_called_once_with(
            image="alpine:latest", force=True, noprune=True
        )

    @pytest.mark.asyncio
    async def test_remove_conflict(self, connection):
        connection.client.images.remove.side_effect = APIError("conflict", explanation="image is in use")
        with pytest.raises(ImageError, match="image is in use"):
            await ImageRegistry(connection).remove("alpine:latest")

    @pytest.mark.asyncio
    async def test_search(self, connection):
        connection.client.images.search.return_value = [{"name": "alpine", "star_count": 10000}]
        results = await ImageRegistry(connection).search("alpine", limit=5)
        assert results[0]["name"] == "alpine"
        connection.client.images.search.assert_called_once_with("alpine", limit=5)
