import pytest
import structlog

from video_queue.log import configure_logging


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


def renderer():
    return structlog.get_config()["processors"][-1]


def test_console_renderer_by_default():
    configure_logging("INFO")
    assert structlog.is_configured()
    assert isinstance(renderer(), structlog.dev.ConsoleRenderer)


def test_json_renderer():
    configure_logging("DEBUG", json_output=True)
    assert isinstance(renderer(), structlog.processors.JSONRenderer)


def test_level_is_case_insensitive():
    configure_logging("warning")
    assert structlog.is_configured()
