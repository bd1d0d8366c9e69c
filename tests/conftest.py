import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from media_jobs.models import MediaJobsConfig
from media_jobs.queue import Runtime


@pytest.fixture
def config(tmp_path):
    """Config with every path inside tmp_path and fast broker timings."""
    return MediaJobsConfig.from_dict({
        "broker": {
            "db_path": str(tmp_path / "broker.db"),
            "block_timeout_s": 0.05,
            "heartbeat_interval_s": 0.05,
            "stall_timeout_s": 60.0,
            "stall_check_interval_s": 60.0,
        },
        "blob": {"root": str(tmp_path / "blob")},
        "stitching": {"temp_dir": str(tmp_path / "stitch-tmp")},
    })


@pytest.fixture
async def runtime(config):
    rt = Runtime(config).open()
    yield rt
    await rt.shutdown()


async def wait_for_status(runtime, job_id, statuses=("completed", "failed"), timeout=5.0):
    """Poll the tracker until the job reaches one of ``statuses``."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        record = runtime.tracker.get_job_status(job_id)
        if record is not None and record.status.value in statuses:
            return record
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"Job {job_id} did not reach {statuses}, last: {record}")
        await asyncio.sleep(0.02)


class FakeContext:
    """Stand-in for JobContext when calling processors directly."""

    def __init__(self, input_data: Dict[str, Any], job_id: str = "job-1", project_id: str = "proj-1"):
        self.job_id = job_id
        self.project_id = project_id
        self.input_data = input_data
        self.attempt = 1
        self.progress_updates: List[int] = []

    async def update_progress(self, progress: int) -> None:
        self.progress_updates.append(progress)


class ConcatMerger:
    """Merges by byte concatenation so segment order is observable."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.calls = []
        self.fail_with = fail_with

    def merge(self, ordered_paths, output_path, options=None):
        self.calls.append(([str(p) for p in ordered_paths], str(output_path), options))
        if self.fail_with is not None:
            raise self.fail_with
        Path(output_path).write_bytes(b"".join(Path(p).read_bytes() for p in ordered_paths))


class FakeVideoProvider:
    def __init__(self, url="https://cdn.example/video.mp4", error: Optional[Exception] = None):
        self.url = url
        self.error = error
        self.calls = []

    async def create_video(self, prompt, options):
        self.calls.append(("create", prompt, None, options))
        if self.error:
            raise self.error
        return self.url

    async def animate_image(self, prompt, image_url, options):
        self.calls.append(("transform", prompt, image_url, options))
        if self.error:
            raise self.error
        return self.url


class FakeImageProvider:
    def __init__(self, url="https://cdn.example/image.png"):
        self.url = url
        self.calls = []

    async def create_image(self, prompt, options):
        self.calls.append(("create", prompt, None, options))
        return self.url

    async def transform_image(self, prompt, source_url, options):
        self.calls.append(("transform", prompt, source_url, options))
        return self.url


class FakeTextProvider:
    def __init__(self, text="INT. STUDIO - DAY"):
        self.text = text
        self.calls = []

    async def generate_text(self, prompt, options):
        self.calls.append(("create", prompt, None, options))
        return self.text

    async def revise_text(self, prompt, source_text, options):
        self.calls.append(("transform", prompt, source_text, options))
        return self.text
