from pathlib import Path

import pytest
from pydantic import ValidationError

from video_queue.config import load_yaml, merge_dicts, resolve_config
from video_queue.models import QueueConfig


def test_default_config_loads():
    """Test default.yaml loads without errors."""
    config = resolve_config()
    assert isinstance(config, QueueConfig)
    assert config.store.db_path == "queue.db"
    assert config.dispatcher.max_concurrent_jobs == 3
    assert config.retry.backoff_unit_s == 1.0
    assert config.handlers == {}


def test_cli_override_db():
    """Test CLI args override YAML defaults."""
    config = resolve_config({"db": "/tmp/other.db"})
    assert config.store.db_path == "/tmp/other.db"


def test_cli_override_workers():
    config = resolve_config({"workers": 8})
    assert config.dispatcher.max_concurrent_jobs == 8


def test_cli_override_log_level():
    config = resolve_config({"log_level": "debug"})
    assert config.logging.level == "DEBUG"


def test_cli_unrelated_keys_ignored():
    config = resolve_config({"command": "status", "job_id": "abc"})
    assert config.dispatcher.max_concurrent_jobs == 3


def test_invalid_cli_override_rejected():
    with pytest.raises(ValidationError):
        resolve_config({"workers": 0})


def test_explicit_config_file(tmp_path):
    """Test an explicit YAML file layers over the defaults."""
    config_file = tmp_path / "queue.yaml"
    config_file.write_text(
        "dispatcher:\n"
        "  max_concurrent_jobs: 5\n"
        "retry:\n"
        "  backoff_unit_s: 0.5\n"
        "logging:\n"
        "  json: true\n"
        "handlers:\n"
        "  video_processing: myapp.handlers:transcode\n"
    )

    config = resolve_config(config_path=config_file)

    assert config.dispatcher.max_concurrent_jobs == 5
    assert config.dispatcher.dequeue_timeout_s == 5.0
    assert config.retry.backoff_unit_s == 0.5
    assert config.retry.max_attempts == 3
    assert config.logging.json_output is True
    assert config.handlers == {"video_processing": "myapp.handlers:transcode"}


def test_cli_beats_config_file(tmp_path):
    config_file = tmp_path / "queue.yaml"
    config_file.write_text("dispatcher:\n  max_concurrent_jobs: 5\n")

    config = resolve_config({"workers": 2}, config_path=config_file)
    assert config.dispatcher.max_concurrent_jobs == 2


def test_invalid_config_file_rejected(tmp_path):
    config_file = tmp_path / "queue.yaml"
    config_file.write_text("store:\n  namespace: Not Valid\n")

    with pytest.raises(ValidationError):
        resolve_config(config_path=config_file)


def test_missing_yaml_returns_empty_dict():
    """Test graceful handling of missing config files."""
    assert load_yaml(Path("nonexistent.yaml")) == {}


def test_empty_yaml_returns_empty_dict(tmp_path):
    empty = tmp_path / "empty.yaml"
    empty.write_text("")
    assert load_yaml(empty) == {}


def test_merge_dicts_nested():
    base = {"dispatcher": {"max_concurrent_jobs": 3, "dequeue_timeout_s": 5.0}, "handlers": {}}
    override = {"dispatcher": {"max_concurrent_jobs": 6}, "handlers": {"a": "m:f"}}

    merged = merge_dicts(base, override)

    assert merged == {
        "dispatcher": {"max_concurrent_jobs": 6, "dequeue_timeout_s": 5.0},
        "handlers": {"a": "m:f"},
    }
    assert base["dispatcher"]["max_concurrent_jobs"] == 3
