"""Job processors and the startup registry that binds them to queues."""

from typing import List, Optional

from ..merge import VideoMerger
from ..projects import ProjectStore
from ..providers import ImageProvider, TextProvider, VideoProvider
from ..queue import JobType, Runtime, Worker
from ..storage import DurableStorage
from .common import ArtifactFetcher
from .media import ImageGenerationProcessor, VideoGenerationProcessor
from .planning import ContentPlanningProcessor
from .stitching import StitchingProcessor


def build_workers(
    runtime: Runtime,
    image_provider: ImageProvider,
    video_provider: VideoProvider,
    text_provider: TextProvider,
    storage: DurableStorage,
    fetcher: ArtifactFetcher,
    merger: Optional[VideoMerger] = None,
    projects: Optional[ProjectStore] = None,
) -> List[Worker]:
    """One worker per job type, in a fixed order.

    The runtime must be open; each worker reads its concurrency and retry
    policy from its queue.
    """
    config = runtime.config
    persistence = {
        "generation": config.generation,
        "blob_store": runtime.blob_store,
        "fetcher": fetcher,
    }
    merger = merger or VideoMerger(config.merge, temp_dir=config.stitching.temp_dir)

    return [
        Worker(runtime, JobType.CHARACTER_IMAGE.value, ImageGenerationProcessor(
            image_provider, JobType.CHARACTER_IMAGE, config.image, **persistence)),
        Worker(runtime, JobType.OBJECT_IMAGE.value, ImageGenerationProcessor(
            image_provider, JobType.OBJECT_IMAGE, config.image, **persistence)),
        Worker(runtime, JobType.IMAGE_EDIT.value, ImageGenerationProcessor(
            image_provider, JobType.IMAGE_EDIT, config.image, **persistence)),
        Worker(runtime, JobType.VIDEO_GENERATION.value, VideoGenerationProcessor(
            video_provider, config.video, **persistence)),
        Worker(runtime, JobType.CONTENT_PLANNING.value, ContentPlanningProcessor(text_provider)),
        Worker(runtime, JobType.VIDEO_STITCHING.value, StitchingProcessor(
            fetcher, merger, storage, config.stitching, projects)),
    ]


__all__ = [
    "ArtifactFetcher",
    "ContentPlanningProcessor",
    "ImageGenerationProcessor",
    "StitchingProcessor",
    "VideoGenerationProcessor",
    "build_workers",
]
