from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Sample rates offered by the editor; anything else is rejected at load time
    analysis_fps: int = 6
    default_threshold: float = Field(default=300.0, ge=0.0)

    # Planar frames are downscaled so the longer edge fits this cap
    planar_max_dimension: int = Field(default=1080, ge=3)
    # Square per-view buffer used while scoring 360 views
    analysis_face_size: int = Field(default=512, ge=3)
    # Export re-projects at this size, independent of the analysis size
    export_face_size: int = Field(default=1024, ge=3)
    jpeg_quality: int = Field(default=95, ge=0, le=100)

    seek_timeout_s: float = Field(default=30.0, gt=0.0)
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    max_sessions: int = Field(default=8, ge=1)

    log_level: str = "INFO"

    @field_validator("analysis_fps")
    @classmethod
    def check_fps(cls, value: int) -> int:
        if value not in (3, 6, 12):
            raise ValueError(f"analysis_fps must be one of 3, 6, 12; got {value}")
        return value

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
