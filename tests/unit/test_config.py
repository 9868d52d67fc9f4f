"""Unit tests for Settings configuration loading."""

import pytest

from sharpframe.config import get_settings


def test_default_worker_count():
    settings = get_settings()
    assert settings.num_workers == 3


def test_default_seek_timeout():
    settings = get_settings()
    assert settings.seek_timeout_s == 3.5


def test_default_analysis_width():
    settings = get_settings()
    assert settings.analysis_width == 160


def test_default_frame_timing():
    settings = get_settings()
    assert settings.default_frame_rate == 30.0
    assert settings.frame_time_offset_factor == 0.01
    assert settings.time_epsilon == 0.001


def test_settings_load_from_env(monkeypatch):
    monkeypatch.setenv("NUM_WORKERS", "5")
    monkeypatch.setenv("FOCUS_RADIUS", "4")
    monkeypatch.setenv("PLAYBACK_PACING_S", "0")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.num_workers == 5
    assert settings.focus_radius == 4
    assert settings.playback_pacing_s == 0.0


def test_get_settings_is_cached():
    assert get_settings() is get_settings()


@pytest.mark.parametrize(
    "name,value",
    [
        ("NUM_WORKERS", "0"),
        ("SEEK_TIMEOUT_S", "0"),
        ("ANALYSIS_WIDTH", "2"),
        ("FOCUS_RADIUS", "-1"),
    ],
)
def test_invalid_values_raise(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    get_settings.cache_clear()
    with pytest.raises(Exception):
        get_settings()
