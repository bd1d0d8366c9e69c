"""Tests for the HTTP generation provider."""

import json

import httpx
import pytest

from media_jobs.errors import ProviderError
from media_jobs.models import ProviderConfig
from media_jobs.providers import HttpGenerationProvider, extract_artifact_url


def make_provider(handler, **overrides):
    settings = {"base_url": "https://queue.test", "poll_interval_s": 0.01, "max_wait_s": 1.0, **overrides}
    config = ProviderConfig(**settings)
    client = httpx.AsyncClient(base_url=config.base_url, transport=httpx.MockTransport(handler))
    return HttpGenerationProvider(config, client=client)


class TestExtractArtifactUrl:
    @pytest.mark.parametrize("data, expected", [
        ({"video": {"url": "v1"}}, "v1"),
        ({"video_url": "v2"}, "v2"),
        ({"image": {"url": "i1"}}, "i1"),
        ({"images": [{"url": "i2"}, {"url": "i3"}]}, "i2"),
        ({"url": "u"}, "u"),
        ({"output": {"url": "o1"}}, "o1"),
        ({"output": "o2"}, "o2"),
    ])
    def test_known_shapes(self, data, expected):
        assert extract_artifact_url(data) == expected

    def test_video_wins_over_url(self):
        assert extract_artifact_url({"url": "u", "video": {"url": "v"}}) == "v"

    def test_nothing_found(self):
        assert extract_artifact_url({"images": []}) is None
        assert extract_artifact_url(None) is None


class TestQueueProtocol:
    """Test submit/poll/result against a mocked provider."""

    async def test_submit_poll_result(self):
        calls = []
        polls = iter(["IN_QUEUE", "IN_PROGRESS", "COMPLETED"])

        def handler(request):
            calls.append((request.method, request.url.path))
            if request.method == "POST":
                return httpx.Response(200, json={
                    "request_id": "r1",
                    "status_url": "https://queue.test/status/r1",
                    "response_url": "https://queue.test/result/r1",
                })
            if request.url.path == "/status/r1":
                return httpx.Response(200, json={"status": next(polls)})
            return httpx.Response(200, json={"video": {"url": "https://cdn.test/out.mp4"}})

        provider = make_provider(handler)
        url = await provider.create_video("a cat", {"duration": 8})

        assert url == "https://cdn.test/out.mp4"
        assert calls[0] == ("POST", "/fal-ai/veo3/fast/text-to-video")
        assert calls.count(("GET", "/status/r1")) == 3
        assert calls[-1] == ("GET", "/result/r1")

    async def test_transform_sends_seed(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"images": [{"url": "https://cdn.test/x.png"}]})

        provider = make_provider(handler)
        url = await provider.transform_image("red", "https://cdn.test/in.png", {"width": 512})

        assert url == "https://cdn.test/x.png"
        assert bodies == [{"prompt": "red", "image_url": "https://cdn.test/in.png", "width": 512}]

    async def test_provider_reported_error(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json={"request_id": "r1"})
            return httpx.Response(200, json={"status": "FAILED", "error": "nsfw content"})

        with pytest.raises(ProviderError, match="nsfw content"):
            await make_provider(handler).create_image("x", {})

    async def test_timeout(self):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, json={"request_id": "r1"})
            return httpx.Response(200, json={"status": "IN_PROGRESS"})

        provider = make_provider(handler, max_wait_s=0.05)
        with pytest.raises(ProviderError, match="timed out"):
            await provider.create_video("x", {})

    @pytest.mark.parametrize("code, retryable", [(500, True), (429, True), (400, False), (401, False)])
    async def test_http_errors(self, code, retryable):
        provider = make_provider(lambda request: httpx.Response(code, json={"detail": "nope"}))

        with pytest.raises(ProviderError) as exc:
            await provider.create_image("x", {})
        assert exc.value.retryable is retryable

    async def test_missing_artifact_url(self):
        provider = make_provider(lambda request: httpx.Response(200, json={"seed": 42}))

        with pytest.raises(ProviderError, match="No artifact URL"):
            await provider.create_image("x", {})


class TestText:
    async def test_generate_text(self):
        provider = make_provider(lambda request: httpx.Response(200, json={"output": "FADE IN:"}))
        assert await provider.generate_text("opening", {}) == "FADE IN:"

    async def test_revise_includes_draft(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"text": "shorter draft"})

        provider = make_provider(handler)
        result = await provider.revise_text("make it shorter", "long draft", {"system_prompt": "editor"})

        assert result == "shorter draft"
        assert "long draft" in bodies[0]["prompt"]
        assert bodies[0]["system_prompt"] == "editor"

    async def test_no_text(self):
        provider = make_provider(lambda request: httpx.Response(200, json={"output": ""}))
        with pytest.raises(ProviderError):
            await provider.generate_text("x", {})


async def test_api_key_header(monkeypatch):
    monkeypatch.setenv("FAL_KEY", "secret")
    provider = HttpGenerationProvider(ProviderConfig())

    assert provider.client.headers["Authorization"] == "Key secret"
    await provider.aclose()
