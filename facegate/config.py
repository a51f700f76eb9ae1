from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Blur thresholds are in 8-bit intensity units; calibrate per camera and
    # lighting by watching the DEBUG variance logs.
    laplacian_threshold: float = Field(default=100.0, ge=0)
    tenengrad_threshold: float = Field(default=1000.0, ge=0)

    # Explicit pixel size wins; otherwise derived from the shorter frame side
    min_face_box_size: int | None = Field(default=None, gt=0)
    min_face_box_ratio: float = Field(default=0.2, gt=0, le=1)

    mode: Literal["manual", "auto"] = "manual"
    cooldown_duration_ms: int = Field(default=5000, ge=0)
    tick_interval_ms: int = Field(default=16, ge=0)

    frame_width: int = Field(default=640, gt=0)
    frame_height: int = Field(default=480, gt=0)
    camera_index: int = 0

    detection_confidence: float = Field(default=0.5, ge=0, le=1)
    detector_model_selection: int = Field(default=0, ge=0, le=1)

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="FACEGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def face_box_min_px(self) -> int:
        """Effective minimum face box side, in frame pixels."""
        if self.min_face_box_size is not None:
            return self.min_face_box_size
        shorter = min(self.frame_width, self.frame_height)
        return max(1, round(shorter * self.min_face_box_ratio))

    @property
    def resolution(self) -> tuple[int, int]:
        return self.frame_width, self.frame_height


@lru_cache
def get_settings() -> Settings:
    return Settings()
