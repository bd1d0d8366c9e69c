"""Tests for image, video and content planning processors."""

import httpx
import pytest

from media_jobs.blob import BlobStore
from media_jobs.errors import DownloadError, ProviderError, ValidationError
from media_jobs.models import GenerationConfig, ImageGenerationOptions, VideoGenerationOptions
from media_jobs.queue import JobType, Worker
from media_jobs.workers import (
    ArtifactFetcher,
    ContentPlanningProcessor,
    ImageGenerationProcessor,
    VideoGenerationProcessor,
)

from conftest import FakeContext, FakeImageProvider, FakeTextProvider, FakeVideoProvider, wait_for_status


def artifact_fetcher(payload=b"artifact-bytes", status_code=200, blob_store=None):
    def handler(request):
        return httpx.Response(status_code, content=payload)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ArtifactFetcher(blob_store=blob_store, client=client)


class TestVideoGeneration:
    """Test the video generation processor."""

    async def test_text_to_video(self):
        provider = FakeVideoProvider()
        ctx = FakeContext({"prompt": "a cat surfing"})

        output = await VideoGenerationProcessor(provider)(ctx)

        assert provider.calls[0][0] == "create"
        assert output["type"] == "video"
        assert output["video_url"] == "https://cdn.example/video.mp4"
        assert output["original_url"] == output["video_url"]
        assert output["image_url"] is None
        assert output["options"] == VideoGenerationOptions().model_dump()
        assert ctx.progress_updates == [10, 30, 90]

    async def test_image_to_video(self):
        provider = FakeVideoProvider()
        ctx = FakeContext({"prompt": "wave", "image_url": "https://cdn.example/seed.png"})

        output = await VideoGenerationProcessor(provider)(ctx)

        kind, prompt, image_url, _ = provider.calls[0]
        assert (kind, prompt, image_url) == ("transform", "wave", "https://cdn.example/seed.png")
        assert output["image_url"] == "https://cdn.example/seed.png"

    async def test_options_override_defaults(self):
        provider = FakeVideoProvider()
        defaults = VideoGenerationOptions(resolution="1080p")
        ctx = FakeContext({"prompt": "x", "options": {"aspect_ratio": "9:16"}})

        output = await VideoGenerationProcessor(provider, defaults)(ctx)

        assert output["options"]["aspect_ratio"] == "9:16"
        assert output["options"]["resolution"] == "1080p"
        assert provider.calls[0][3] == output["options"]

    async def test_invalid_options_rejected(self):
        provider = FakeVideoProvider()
        ctx = FakeContext({"prompt": "x", "options": {"duration": 60}})

        with pytest.raises(ValidationError):
            await VideoGenerationProcessor(provider)(ctx)
        assert provider.calls == []

    async def test_missing_prompt_rejected(self):
        with pytest.raises(ValidationError) as exc:
            await VideoGenerationProcessor(FakeVideoProvider())(FakeContext({}))
        assert "prompt" in str(exc.value)
        assert exc.value.retryable is False

    async def test_provider_error_propagates(self):
        provider = FakeVideoProvider(error=ProviderError("quota exceeded"))

        with pytest.raises(ProviderError):
            await VideoGenerationProcessor(provider)(FakeContext({"prompt": "x"}))

    async def test_persist_outputs_copies_into_blob_store(self, tmp_path):
        store = BlobStore(tmp_path)
        processor = VideoGenerationProcessor(
            FakeVideoProvider(),
            generation=GenerationConfig(persist_outputs=True),
            blob_store=store,
            fetcher=artifact_fetcher(b"mp4-bytes"),
        )
        ctx = FakeContext({"prompt": "x"})

        output = await processor(ctx)

        assert output["video_url"].startswith("/blob/proj-1/videos/video_")
        assert output["original_url"] == "https://cdn.example/video.mp4"
        assert output["file_size"] == len(b"mp4-bytes")
        assert store.get("proj-1", "videos", output["filename"]) == b"mp4-bytes"
        assert ctx.progress_updates[-1] == 95

    def test_persist_outputs_needs_fetcher(self, tmp_path):
        with pytest.raises(ValueError):
            VideoGenerationProcessor(
                FakeVideoProvider(),
                generation=GenerationConfig(persist_outputs=True),
                blob_store=BlobStore(tmp_path),
            )


class TestImageGeneration:
    """Test the image generation processors."""

    async def test_character_uses_defaults(self):
        provider = FakeImageProvider()
        ctx = FakeContext({"prompt": "a knight"})

        output = await ImageGenerationProcessor(provider, JobType.CHARACTER_IMAGE)(ctx)

        assert provider.calls == [("create", "a knight", None, {"width": 1024, "height": 1024})]
        assert output["type"] == "character-image"
        assert output["image_url"] == "https://cdn.example/image.png"
        assert ctx.progress_updates == [10, 30, 90]

    async def test_explicit_size_wins(self):
        provider = FakeImageProvider()
        defaults = ImageGenerationOptions(width=512, height=512)
        ctx = FakeContext({"prompt": "a cup", "width": 768})

        output = await ImageGenerationProcessor(provider, JobType.OBJECT_IMAGE, defaults)(ctx)

        assert output["options"] == {"width": 768, "height": 512}

    async def test_edit_requires_source(self):
        provider = FakeImageProvider()

        with pytest.raises(ValidationError):
            await ImageGenerationProcessor(provider, JobType.IMAGE_EDIT)(FakeContext({"prompt": "red"}))
        assert provider.calls == []

    async def test_edit_transforms_source(self):
        provider = FakeImageProvider()
        ctx = FakeContext({"prompt": "make it red", "source_url": "https://cdn.example/in.png"})

        output = await ImageGenerationProcessor(provider, JobType.IMAGE_EDIT)(ctx)

        assert provider.calls[0][:3] == ("transform", "make it red", "https://cdn.example/in.png")
        assert output["source_url"] == "https://cdn.example/in.png"

    def test_rejects_non_image_job_type(self):
        with pytest.raises(ValueError):
            ImageGenerationProcessor(FakeImageProvider(), JobType.VIDEO_STITCHING)

    async def test_persist_to_asset_folder(self, tmp_path):
        store = BlobStore(tmp_path)
        processor = ImageGenerationProcessor(
            FakeImageProvider(),
            JobType.CHARACTER_IMAGE,
            generation=GenerationConfig(persist_outputs=True),
            blob_store=store,
            fetcher=artifact_fetcher(b"png"),
        )

        output = await processor(FakeContext({"prompt": "x"}))

        assert output["image_url"].startswith("/blob/proj-1/characters/character_")
        assert output["image_url"].endswith(".png")


class TestContentPlanning:
    async def test_generate(self):
        provider = FakeTextProvider()
        ctx = FakeContext({"prompt": "a heist film", "plan_type": "script"})

        output = await ContentPlanningProcessor(provider)(ctx)

        assert provider.calls[0][0] == "create"
        assert output["type"] == "script"
        assert output["content"] == "INT. STUDIO - DAY"
        assert output["source_text"] is None

    async def test_revise_with_system_prompt(self):
        provider = FakeTextProvider()
        ctx = FakeContext({
            "prompt": "shorter",
            "source_text": "a long draft",
            "system_prompt": "You are an editor.",
        })

        output = await ContentPlanningProcessor(provider)(ctx)

        assert provider.calls == [
            ("transform", "shorter", "a long draft", {"system_prompt": "You are an editor."})
        ]
        assert output["options"] == {"plan_type": "text", "system_prompt": "You are an editor."}

    async def test_unknown_plan_type(self):
        with pytest.raises(ValidationError):
            await ContentPlanningProcessor(FakeTextProvider())(
                FakeContext({"prompt": "x", "plan_type": "poem"})
            )


class TestArtifactFetcher:
    async def test_http_error_retryability(self):
        with pytest.raises(DownloadError) as server_error:
            await artifact_fetcher(status_code=503).fetch("https://cdn.example/a.mp4")
        with pytest.raises(DownloadError) as not_found:
            await artifact_fetcher(status_code=404).fetch("https://cdn.example/a.mp4")

        assert server_error.value.retryable is True
        assert not_found.value.retryable is False
        assert not_found.value.status_code == 404

    async def test_malformed_url(self):
        with pytest.raises(DownloadError) as exc:
            await artifact_fetcher().fetch("https://cdn.example/a\x00.mp4")
        assert exc.value.url == "https://cdn.example/a\x00.mp4"

    async def test_reads_blob_urls_from_store(self, tmp_path):
        store = BlobStore(tmp_path)
        url = store.save("proj-1", "videos", "clip.mp4", b"local")

        fetcher = artifact_fetcher(b"remote", blob_store=store)

        assert await fetcher.fetch(url) == b"local"
        assert await fetcher.fetch("https://cdn.example/clip.mp4") == b"remote"

    async def test_missing_blob(self, tmp_path):
        fetcher = artifact_fetcher(blob_store=BlobStore(tmp_path))

        with pytest.raises(DownloadError) as exc:
            await fetcher.fetch("/blob/proj-1/videos/missing.mp4")
        assert exc.value.retryable is False


async def test_video_job_end_to_end(runtime):
    processor = VideoGenerationProcessor(FakeVideoProvider())
    await runtime.start([Worker(runtime, "video-generation", processor)])

    job_id = runtime.queues.enqueue("video-generation", "proj-1", {"prompt": "sunrise"})
    record = await wait_for_status(runtime, job_id)

    assert record.status.value == "completed"
    assert record.progress == 100
    assert record.output_data["video_url"] == "https://cdn.example/video.mp4"


async def test_invalid_payload_fails_without_retry(runtime):
    provider = FakeImageProvider()
    await runtime.start([Worker(runtime, "image-edit", ImageGenerationProcessor(provider, JobType.IMAGE_EDIT))])

    job_id = runtime.queues.enqueue("image-edit", "proj-1", {"prompt": "no source"})
    record = await wait_for_status(runtime, job_id)

    assert record.status.value == "failed"
    assert "source_url" in record.error_message
    assert runtime.broker.get_job(job_id).attempt_count == 1
