"""Pydantic models for configuration and job payload validation."""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


# ============================================================================
# Configuration
# ============================================================================


class RetryPolicy(BaseModel):
    """Broker-level retry policy for one queue."""

    max_attempts: int = Field(default=3, ge=1, description="Total delivery attempts per job")
    backoff_type: Literal["fixed", "exponential"] = Field(
        default="exponential", description="Delay growth between attempts"
    )
    backoff_delay_s: float = Field(
        default=2.0, ge=0.0, description="Base delay before a failed job is redelivered"
    )

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before redelivering after the given failed attempt (1-based)."""
        if self.backoff_type == "fixed":
            return self.backoff_delay_s
        return self.backoff_delay_s * (2 ** max(attempt - 1, 0))


class QueueConfig(BaseModel):
    """Per-queue concurrency and retry settings."""

    concurrency: int = Field(default=1, gt=0, description="Max jobs processed in parallel")
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


def _default_queues() -> Dict[str, QueueConfig]:
    generation_retry = RetryPolicy(max_attempts=3, backoff_type="exponential", backoff_delay_s=2.0)
    return {
        "character-image": QueueConfig(concurrency=3, retry=generation_retry),
        "object-image": QueueConfig(concurrency=3, retry=generation_retry),
        "image-edit": QueueConfig(concurrency=2, retry=generation_retry),
        "video-generation": QueueConfig(concurrency=30, retry=generation_retry),
        "content-planning": QueueConfig(concurrency=4, retry=generation_retry),
        "video-stitching": QueueConfig(concurrency=1, retry=RetryPolicy(max_attempts=1)),
    }


class BrokerConfig(BaseModel):
    """SQLite broker settings."""

    db_path: str = Field(default="media_jobs.db", description="SQLite database file")
    block_timeout_s: float = Field(
        default=5.0, gt=0.0, description="Max time a consumer waits on the broker per fetch"
    )
    heartbeat_interval_s: float = Field(
        default=30.0, gt=0.0, description="How often an active job refreshes its heartbeat"
    )
    stall_timeout_s: float = Field(
        default=300.0, gt=0.0, description="Active job without heartbeat for this long is stalled"
    )
    stall_check_interval_s: float = Field(
        default=60.0, gt=0.0, description="How often the stall monitor scans active jobs"
    )


class BlobConfig(BaseModel):
    """Local blob store settings."""

    root: str = Field(default="blob", description="Directory holding project assets")
    url_prefix: str = Field(default="/blob", description="Public URL prefix for blob assets")


class StorageConfig(BaseModel):
    """Durable storage used for final artifacts."""

    backend: Literal["blob", "s3"] = Field(default="blob", description="Upload target")
    bucket: str = Field(default="media", description="Bucket name (s3 backend)")
    folder: Optional[str] = Field(default="videos", description="Key prefix inside the bucket")
    endpoint_url: Optional[str] = Field(default=None, description="S3-compatible endpoint")
    public_url_base: Optional[str] = Field(
        default=None, description="Base URL used to build public object URLs"
    )
    access_key_env: str = Field(default="STORAGE_ACCESS_KEY_ID")
    secret_key_env: str = Field(default="STORAGE_SECRET_ACCESS_KEY")


class DatabaseConfig(BaseModel):
    """Project record store settings."""

    url: str = Field(default="sqlite:///./media_jobs_projects.db", description="Database URL")


class ProviderConfig(BaseModel):
    """HTTP generation provider settings."""

    base_url: str = Field(default="https://queue.fal.run", description="Provider API base URL")
    api_key_env: str = Field(default="FAL_KEY", description="Env var holding the API key")
    image_create_model: str = Field(default="fal-ai/flux/dev")
    image_transform_model: str = Field(default="fal-ai/flux/dev/image-to-image")
    video_create_model: str = Field(default="fal-ai/veo3/fast/text-to-video")
    video_transform_model: str = Field(default="fal-ai/veo3/fast/image-to-video")
    text_model: str = Field(default="fal-ai/any-llm")
    poll_interval_s: float = Field(default=3.0, gt=0.0)
    max_wait_s: float = Field(default=300.0, gt=0.0)
    request_timeout_s: float = Field(default=60.0, gt=0.0)


class VideoGenerationOptions(BaseModel):
    """Resolved options for a video generation call."""

    aspect_ratio: Literal["16:9", "9:16", "1:1"] = Field(default="16:9")
    duration: int = Field(default=8, gt=0, le=8, description="Clip length in seconds")
    generate_audio: bool = Field(default=True)
    resolution: Literal["720p", "1080p"] = Field(default="720p")


class ImageGenerationOptions(BaseModel):
    """Resolved options for an image generation call."""

    width: int = Field(default=1024, gt=0)
    height: int = Field(default=1024, gt=0)


class MergeConfig(BaseModel):
    """FFmpeg runner settings used by the merge tool."""

    global_timeout_s: int = Field(default=1800, gt=0)
    no_progress_timeout_s: int = Field(default=120, gt=0)
    kill_grace_period_s: int = Field(default=5, gt=0)
    save_artifacts_on_failure: bool = Field(default=False)
    ffmpeg_loglevel: str = Field(default="info")
    video_codec: str = Field(default="libx264")
    audio_codec: str = Field(default="aac")
    preset: str = Field(default="fast")
    crf: int = Field(default=23, ge=0, le=51)


class StitchingConfig(BaseModel):
    """Stitching worker settings."""

    temp_dir: str = Field(default="tmp/stitching", description="Transient file namespace")
    download_timeout_s: float = Field(default=120.0, gt=0.0)
    persist_project_url: bool = Field(
        default=True, description="Write the final URL back onto the project record"
    )


class GenerationConfig(BaseModel):
    """Media generation worker settings."""

    persist_outputs: bool = Field(
        default=False, description="Download provider artifacts into the blob store"
    )


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")


class MediaJobsConfig(BaseModel):
    """Complete application configuration with validation."""

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    queues: Dict[str, QueueConfig] = Field(default_factory=_default_queues)
    blob: BlobConfig = Field(default_factory=BlobConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    video: VideoGenerationOptions = Field(default_factory=VideoGenerationOptions)
    image: ImageGenerationOptions = Field(default_factory=ImageGenerationOptions)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    stitching: StitchingConfig = Field(default_factory=StitchingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("queues")
    @classmethod
    def fill_missing_queues(cls, v: Dict[str, QueueConfig]) -> Dict[str, QueueConfig]:
        """Partial queue sections keep the defaults for unnamed queues."""
        merged = _default_queues()
        merged.update(v)
        return merged

    @classmethod
    def from_dict(cls, data: dict) -> "MediaJobsConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_overrides(self, overrides: dict) -> "MediaJobsConfig":
        """Apply flat CLI/env overrides and return new config instance."""
        config_dict = self.model_dump()

        if "db" in overrides:
            config_dict["broker"]["db_path"] = overrides["db"]
        if "blob_root" in overrides:
            config_dict["blob"]["root"] = overrides["blob_root"]
        if "database_url" in overrides:
            config_dict["database"]["url"] = overrides["database_url"]
        if "log_level" in overrides:
            config_dict["logging"]["level"] = overrides["log_level"]
        if "temp_dir" in overrides:
            config_dict["stitching"]["temp_dir"] = overrides["temp_dir"]

        return MediaJobsConfig.from_dict(config_dict)


# ============================================================================
# Job payloads
# ============================================================================


class StitchOptions(BaseModel):
    """Merge options passed through to the merge tool unchanged."""

    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)
    fps: Optional[int] = Field(default=None, gt=0)
    bitrate: Optional[str] = Field(default=None, description="e.g. '4000k'")
    fast_concat: bool = Field(default=False, description="Stream copy, inputs must share codecs")

    model_config = {"extra": "allow"}


class StitchingInput(BaseModel):
    video_urls: List[str] = Field(..., min_length=1, description="Ordered input artifact URLs")
    output_name: str = Field(default="final", min_length=1)
    options: StitchOptions = Field(default_factory=StitchOptions)


class VideoGenerationInput(BaseModel):
    prompt: str = Field(..., min_length=1)
    image_url: Optional[str] = Field(default=None, description="Seed image for image-to-video")
    options: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ImageGenerationInput(BaseModel):
    prompt: str = Field(..., min_length=1)
    source_url: Optional[str] = Field(default=None, description="Seed image to transform")
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ContentPlanningInput(BaseModel):
    prompt: str = Field(..., min_length=1)
    plan_type: Literal["script", "plot", "scene", "frame", "text"] = Field(default="text")
    source_text: Optional[str] = Field(default=None, description="Existing draft to revise")
    system_prompt: Optional[str] = Field(default=None)
    context: Dict[str, Any] = Field(default_factory=dict)
