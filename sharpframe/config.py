from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Capacity of the scoring worker pool (one isolated process per slot)
    num_workers: int = Field(default=3, ge=1)

    # A seek that has not completed after this long is treated as failed
    seek_timeout_s: float = Field(default=3.5, gt=0)
    analysis_width: int = Field(default=160, ge=3)
    default_frame_rate: float = Field(default=30.0, gt=0)
    # Fraction of one frame duration added to every frame's presentation time
    # so seeks never land exactly on a frame boundary.
    frame_time_offset_factor: float = 0.01
    time_epsilon: float = 0.001

    focus_radius: int = Field(default=10, ge=0)
    interaction_settle_s: float = Field(default=0.5, ge=0)
    playback_pacing_s: float = Field(default=0.3, ge=0)
    ready_grace_s: float = Field(default=0.05, ge=0)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
