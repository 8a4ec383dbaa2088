"""Tests for settings validation."""

import pytest
from pydantic import ValidationError

from docingest.config import Settings
from docingest.processing.tokens import TokenCounter


def test_defaults() -> None:
    settings = Settings()

    assert settings.MAX_CONCURRENT_JOBS == 10
    assert settings.DEFAULT_MAX_TOKENS_PER_CHUNK == 6000
    assert settings.MAX_FILE_SIZE == 50 * 1024 * 1024


def test_log_level_normalized() -> None:
    assert Settings(LOG_LEVEL="debug").LOG_LEVEL == "DEBUG"


def test_invalid_log_level() -> None:
    with pytest.raises(ValidationError):
        Settings(LOG_LEVEL="LOUD")


@pytest.mark.parametrize("size", [99, 32001])
def test_chunk_size_range(size) -> None:
    with pytest.raises(ValidationError):
        Settings(DEFAULT_MAX_TOKENS_PER_CHUNK=size)


def test_ratio_overrides_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("MODEL_RATIO_OVERRIDES", '{" Claude-3-Opus ": 1.5}')

    settings = Settings()

    assert settings.MODEL_RATIO_OVERRIDES == {"claude-3-opus": 1.5}
    counter = TokenCounter(settings.MODEL_RATIO_OVERRIDES)
    assert counter.ratio_overrides == {"claude-3-opus": 1.5}


def test_non_positive_ratio_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(MODEL_RATIO_OVERRIDES={"claude-3-opus": 0})
