"""Video stitching processor: download, merge, upload, link, clean up.

Checkpoints:
    10       job accepted, input validated
    10..40   one step per downloaded input, in list order
    40       merge started
    80       merged file uploaded next
    95       uploaded; project record update follows

Transient files live in ``<temp_dir>/<job_id>_input_<i>.mp4`` and
``<temp_dir>/<job_id>_merged.mp4`` and are removed on every exit path.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..blob import generate_asset_filename
from ..merge import VideoMerger
from ..models import StitchingConfig, StitchingInput
from ..projects import ProjectStore
from ..queue import JobContext
from ..storage import DurableStorage
from .common import ArtifactFetcher, parse_input, utc_timestamp

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


class StitchingProcessor:
    """``video-stitching`` jobs."""

    def __init__(
        self,
        fetcher: ArtifactFetcher,
        merger: VideoMerger,
        storage: DurableStorage,
        config: Optional[StitchingConfig] = None,
        projects: Optional[ProjectStore] = None,
    ):
        self.fetcher = fetcher
        self.merger = merger
        self.storage = storage
        self.config = config or StitchingConfig()
        self.projects = projects
        self.temp_dir = Path(self.config.temp_dir)

    def input_path(self, job_id: str, index: int) -> Path:
        return self.temp_dir / f"{job_id}_input_{index}.mp4"

    def merged_path(self, job_id: str) -> Path:
        return self.temp_dir / f"{job_id}_merged.mp4"

    async def __call__(self, ctx: JobContext) -> Dict[str, Any]:
        await ctx.update_progress(10)
        data = parse_input(StitchingInput, ctx.input_data)
        urls = data.video_urls
        logger.info("Job %s: stitching %d videos", ctx.job_id, len(urls))

        self.temp_dir.mkdir(parents=True, exist_ok=True)
        temp_paths: List[Path] = []
        try:
            inputs = await self._download_all(ctx, urls, temp_paths)

            await ctx.update_progress(40)
            merged = self.merged_path(ctx.job_id)
            temp_paths.append(merged)
            await asyncio.to_thread(self.merger.merge, inputs, merged, data.options)

            await ctx.update_progress(80)
            content = await asyncio.to_thread(merged.read_bytes)
            prefix = _UNSAFE_NAME_CHARS.sub("_", data.output_name).strip("_") or "final"
            filename = generate_asset_filename("mp4", prefix=prefix)
            upload = await asyncio.to_thread(
                self.storage.upload, content, filename, "video/mp4", None, ctx.project_id
            )

            await ctx.update_progress(95)
            await self._link_to_project(ctx.project_id, upload.url)

            return {
                "type": "final_video",
                "video_url": upload.url,
                "filename": filename,
                "input_videos": list(urls),
                "video_count": len(urls),
                "file_size": upload.size,
                "options": data.options.model_dump(exclude_none=True),
                "completed_at": utc_timestamp(),
            }
        finally:
            self._cleanup(temp_paths)

    async def _download_all(self, ctx: JobContext, urls: List[str], temp_paths: List[Path]) -> List[Path]:
        """Download inputs sequentially, in list order."""
        total = len(urls)
        inputs = []
        for index, url in enumerate(urls):
            content = await self.fetcher.fetch(url)

            path = self.input_path(ctx.job_id, index)
            temp_paths.append(path)
            await asyncio.to_thread(path.write_bytes, content)
            inputs.append(path)

            logger.debug("Job %s: downloaded input %d/%d (%d bytes)", ctx.job_id, index + 1, total, len(content))
            await ctx.update_progress(10 + (30 * (index + 1)) // total)
        return inputs

    async def _link_to_project(self, project_id: str, url: str) -> None:
        """Store the final URL on the project; failures never fail the job."""
        if self.projects is None or not self.config.persist_project_url:
            return
        try:
            await self.projects.update_final_video_url(project_id, url, datetime.now(timezone.utc))
        except Exception as e:
            logger.warning("Failed to update project %s with final video: %s", project_id, e)

    def _cleanup(self, paths: List[Path]) -> None:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to remove temp file %s: %s", path, e)
