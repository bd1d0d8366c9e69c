"""Image and video generation processors.

Both follow the same checkpoint protocol:

    10  job accepted
    30  provider call about to be issued
    90  provider returned an artifact URL
    95  artifact copied into the blob store (only with persist_outputs)

The seed field (``source_url`` for images, ``image_url`` for videos) selects
the transform variant of the provider; without it the create variant runs.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import pydantic

from ..blob import AssetType, BlobStore, generate_asset_filename
from ..errors import ValidationError
from ..models import (
    GenerationConfig,
    ImageGenerationInput,
    ImageGenerationOptions,
    VideoGenerationInput,
    VideoGenerationOptions,
)
from ..providers import ImageProvider, VideoProvider
from ..queue import JobContext, JobType
from .common import ArtifactFetcher, parse_input, url_extension, utc_timestamp

logger = logging.getLogger(__name__)

IMAGE_ASSET_TYPES = {
    JobType.CHARACTER_IMAGE: AssetType.CHARACTERS,
    JobType.OBJECT_IMAGE: AssetType.OBJECTS,
    JobType.IMAGE_EDIT: AssetType.IMAGES,
}


class _GenerationProcessor:
    """Shared persistence step for provider artifacts."""

    def __init__(
        self,
        generation: Optional[GenerationConfig] = None,
        blob_store: Optional[BlobStore] = None,
        fetcher: Optional[ArtifactFetcher] = None,
    ):
        self.generation = generation or GenerationConfig()
        self.blob_store = blob_store
        self.fetcher = fetcher

        if self.generation.persist_outputs and (blob_store is None or fetcher is None):
            raise ValueError("persist_outputs requires a blob store and an artifact fetcher")

    async def _persist(
        self, ctx: JobContext, url: str, asset_type: AssetType, prefix: str, default_ext: str
    ) -> Dict[str, Any]:
        content = await self.fetcher.fetch(url)
        filename = generate_asset_filename(url_extension(url, default_ext), prefix=prefix)
        blob_url = await asyncio.to_thread(
            self.blob_store.save, ctx.project_id, asset_type, filename, content
        )
        await ctx.update_progress(95)
        return {"url": blob_url, "filename": filename, "file_size": len(content)}


class VideoGenerationProcessor(_GenerationProcessor):
    """``video-generation`` jobs: text-to-video or image-to-video."""

    def __init__(self, provider: VideoProvider, defaults: Optional[VideoGenerationOptions] = None, **kwargs):
        super().__init__(**kwargs)
        self.provider = provider
        self.defaults = defaults or VideoGenerationOptions()

    def resolve_options(self, overrides: Dict[str, Any]) -> VideoGenerationOptions:
        try:
            return VideoGenerationOptions.model_validate({**self.defaults.model_dump(), **overrides})
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid video options: {e}") from e

    async def __call__(self, ctx: JobContext) -> Dict[str, Any]:
        await ctx.update_progress(10)
        data = parse_input(VideoGenerationInput, ctx.input_data)
        options = self.resolve_options(data.options).model_dump()

        await ctx.update_progress(30)
        if data.image_url:
            logger.info("Job %s: image-to-video: %.50s", ctx.job_id, data.prompt)
            video_url = await self.provider.animate_image(data.prompt, data.image_url, options)
        else:
            logger.info("Job %s: text-to-video: %.50s", ctx.job_id, data.prompt)
            video_url = await self.provider.create_video(data.prompt, options)
        await ctx.update_progress(90)

        output = {
            "type": "video",
            "video_url": video_url,
            "original_url": video_url,
            "prompt": data.prompt,
            "image_url": data.image_url,
            "options": options,
            "metadata": data.metadata,
            "generated_at": utc_timestamp(),
        }

        if self.generation.persist_outputs:
            saved = await self._persist(ctx, video_url, AssetType.VIDEOS, "video", "mp4")
            output.update(video_url=saved["url"], filename=saved["filename"], file_size=saved["file_size"])

        return output


class ImageGenerationProcessor(_GenerationProcessor):
    """``character-image``, ``object-image`` and ``image-edit`` jobs."""

    def __init__(
        self,
        provider: ImageProvider,
        job_type: JobType,
        defaults: Optional[ImageGenerationOptions] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        if job_type not in IMAGE_ASSET_TYPES:
            raise ValueError(f"Not an image job type: {job_type}")
        self.provider = provider
        self.job_type = JobType(job_type)
        self.defaults = defaults or ImageGenerationOptions()
        # Editing without a source image is meaningless
        self.require_source = self.job_type == JobType.IMAGE_EDIT

    async def __call__(self, ctx: JobContext) -> Dict[str, Any]:
        await ctx.update_progress(10)
        data = parse_input(ImageGenerationInput, ctx.input_data)
        if self.require_source and not data.source_url:
            raise ValidationError("source_url is required for image-edit jobs")

        options = {
            "width": data.width or self.defaults.width,
            "height": data.height or self.defaults.height,
        }

        await ctx.update_progress(30)
        if data.source_url:
            image_url = await self.provider.transform_image(data.prompt, data.source_url, options)
        else:
            image_url = await self.provider.create_image(data.prompt, options)
        await ctx.update_progress(90)

        output = {
            "type": self.job_type.value,
            "image_url": image_url,
            "original_url": image_url,
            "prompt": data.prompt,
            "source_url": data.source_url,
            "options": options,
            "metadata": data.metadata,
            "generated_at": utc_timestamp(),
        }

        if self.generation.persist_outputs:
            asset_type = IMAGE_ASSET_TYPES[self.job_type]
            saved = await self._persist(ctx, image_url, asset_type, asset_type.value.rstrip("s"), "png")
            output.update(image_url=saved["url"], filename=saved["filename"], file_size=saved["file_size"])

        return output
