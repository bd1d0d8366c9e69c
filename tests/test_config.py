from pathlib import Path

import pytest

from media_jobs.config import env_overrides, load_yaml, merge_dicts, resolve_config
from media_jobs.models import MediaJobsConfig, RetryPolicy

DEFAULT_YAML = Path(__file__).parent.parent / "config" / "default.yaml"


def test_default_config_loads():
    """Test default.yaml loads without errors."""
    config = resolve_config(config_path=DEFAULT_YAML)
    assert isinstance(config, MediaJobsConfig)
    assert config.broker.db_path == "media_jobs.db"
    assert config.blob.url_prefix == "/blob"


def test_default_queue_concurrency():
    """Stitching is serialized, video generation runs wide."""
    config = resolve_config(config_path=DEFAULT_YAML)
    assert config.queues["video-stitching"].concurrency == 1
    assert config.queues["video-generation"].concurrency == 30
    assert config.queues["image-edit"].concurrency == 2


def test_default_retry_policies():
    """Generation queues retry 3 times with exponential backoff; stitching runs once."""
    config = resolve_config(config_path=DEFAULT_YAML)
    retry = config.queues["video-generation"].retry
    assert retry.max_attempts == 3
    assert retry.backoff_type == "exponential"
    assert retry.backoff_delay_s == 2.0
    assert config.queues["video-stitching"].retry.max_attempts == 1


def test_default_video_options():
    config = resolve_config(config_path=DEFAULT_YAML)
    assert config.video.aspect_ratio == "16:9"
    assert config.video.duration == 8
    assert config.video.generate_audio is True
    assert config.video.resolution == "720p"


def test_cli_override_db(monkeypatch):
    """Test CLI args override YAML defaults."""
    monkeypatch.delenv("MEDIA_JOBS_DB", raising=False)
    config = resolve_config({"db": "/tmp/other.db"}, config_path=DEFAULT_YAML)
    assert config.broker.db_path == "/tmp/other.db"


def test_cli_none_values_ignored():
    config = resolve_config({"db": None, "log_level": None}, config_path=DEFAULT_YAML)
    assert config.broker.db_path == "media_jobs.db"


def test_env_override(monkeypatch):
    monkeypatch.setenv("MEDIA_JOBS_BLOB_ROOT", "/srv/blob")
    config = resolve_config(config_path=DEFAULT_YAML)
    assert config.blob.root == "/srv/blob"


def test_cli_beats_env(monkeypatch):
    monkeypatch.setenv("MEDIA_JOBS_LOG_LEVEL", "DEBUG")
    config = resolve_config({"log_level": "ERROR"}, config_path=DEFAULT_YAML)
    assert config.logging.level == "ERROR"


def test_env_overrides_reads_only_known_names():
    overrides = env_overrides({"MEDIA_JOBS_DB": "x.db", "OTHER": "1", "MEDIA_JOBS_TEMP_DIR": ""})
    assert overrides == {"db": "x.db"}


def test_partial_queue_section_keeps_defaults():
    """Overriding one queue leaves the others at their defaults."""
    config = MediaJobsConfig.from_dict({"queues": {"video-generation": {"concurrency": 5}}})
    assert config.queues["video-generation"].concurrency == 5
    assert config.queues["video-stitching"].concurrency == 1
    assert len(config.queues) == 6


def test_invalid_concurrency_rejected():
    with pytest.raises(ValueError):
        MediaJobsConfig.from_dict({"queues": {"video-generation": {"concurrency": 0}}})


def test_video_duration_capped():
    with pytest.raises(ValueError):
        MediaJobsConfig.from_dict({"video": {"duration": 12}})


def test_load_yaml_missing_file(tmp_path):
    assert load_yaml(tmp_path / "nope.yaml") == {}


def test_merge_dicts_recursive():
    base = {"broker": {"db_path": "a.db", "block_timeout_s": 5}, "blob": {"root": "blob"}}
    override = {"broker": {"db_path": "b.db"}}
    merged = merge_dicts(base, override)
    assert merged["broker"] == {"db_path": "b.db", "block_timeout_s": 5}
    assert merged["blob"] == {"root": "blob"}


class TestRetryPolicy:
    """Test backoff delay computation."""

    def test_exponential_delays(self):
        policy = RetryPolicy(max_attempts=3, backoff_type="exponential", backoff_delay_s=2.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    def test_fixed_delays(self):
        policy = RetryPolicy(backoff_type="fixed", backoff_delay_s=1.5)
        assert policy.delay_for(1) == policy.delay_for(4) == 1.5
