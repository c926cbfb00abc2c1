"""Centralized configuration for KioskFace.

Uses Pydantic BaseSettings with environment variable loading and validation.
All KF_* environment variables are validated at import time.
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Liveness pipeline settings loaded from environment variables."""

    # Logging
    log_format: str = Field(default="text", description="Log format: text or json")
    log_level: str = Field(default="INFO", description="Python log level")

    # Models
    model_dir: str | None = Field(
        default=None, description="Directory holding the dlib .dat model files"
    )
    predictor_sha256: str | None = Field(
        default=None, description="Expected SHA-256 of the 68-point shape predictor"
    )
    encoder_sha256: str | None = Field(
        default=None, description="Expected SHA-256 of the ResNet descriptor model"
    )

    # Camera
    camera_index: int = Field(default=0, ge=0, description="OpenCV camera index")
    camera_width: int = Field(default=640, ge=1, description="Requested frame width")
    camera_height: int = Field(default=480, ge=1, description="Requested frame height")

    # Detector cascade: "input_size:confidence" pairs, tried in order
    detector_tiers: str = Field(
        default="512:0.40,416:0.35,320:0.30",
        description="Comma-separated input_size:confidence detector tiers",
    )

    # Face presence
    straight_frames_target: int = Field(default=5, ge=1)
    straight_frames_min: int = Field(default=3, ge=1)
    face_timeout_ms: int = Field(default=12000, ge=1)
    face_poll_interval_ms: int = Field(default=150, ge=0)
    straight_yaw_max: float = Field(default=0.25, gt=0)
    straight_pitch_max: float = Field(default=0.25, gt=0)

    # Core checks
    texture_min_variance: float = Field(default=50.0, ge=0)
    eye_open_ear: float = Field(default=0.14, gt=0)
    eye_open_fraction: float = Field(default=0.4, gt=0, le=1)
    consistency_distance: float = Field(default=0.55, gt=0)
    consistency_fraction: float = Field(default=0.55, gt=0, le=1)

    # Screen / print scoring (empirical, tune against a labelled corpus)
    screen_moire_high: float = Field(default=0.30)
    screen_moire_low: float = Field(default=0.20)
    screen_reflection: float = Field(default=0.10)
    screen_blue_high: float = Field(default=0.22)
    screen_blue_low: float = Field(default=0.15)
    screen_saturation_var: float = Field(default=0.0015)
    screen_color_var: float = Field(default=120.0)
    screen_brightness_var: float = Field(default=150.0)
    screen_weight_high: int = Field(default=2, ge=0)
    screen_weight_low: int = Field(default=1, ge=0)
    screen_score_cutoff: int = Field(default=4, ge=1)

    # Matching
    match_threshold: float = Field(default=0.6, gt=0, description="1:N login acceptance distance")
    duplicate_threshold: float = Field(
        default=0.45, gt=0, description="Signup duplicate rejection distance"
    )
    descriptor_frames: int = Field(default=5, ge=1)
    descriptor_frame_delay_ms: int = Field(default=300, ge=0)

    # Thumbnails
    max_thumbnails: int = Field(default=6, ge=0)
    thumbnail_quality: int = Field(default=50, ge=1, le=95)

    # Auth collaborator
    auth_base_url: str = Field(default="http://localhost:5000", description="Auth service URL")
    auth_timeout_s: float = Field(default=10.0, gt=0)

    model_config = {"env_prefix": "KF_", "case_sensitive": False, "extra": "ignore"}

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("text", "json"):
            msg = f"KF_LOG_FORMAT must be 'text' or 'json', got '{v}'"
            raise ValueError(msg)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        import logging

        v = v.upper()
        if not hasattr(logging, v):
            msg = f"KF_LOG_LEVEL must be a valid Python log level, got '{v}'"
            raise ValueError(msg)
        return v

    @field_validator("predictor_sha256", "encoder_sha256")
    @classmethod
    def validate_sha256(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip().lower()
        if len(v) != 64 or any(c not in "0123456789abcdef" for c in v):
            msg = f"Model hashes must be 64 hex characters, got '{v}'"
            raise ValueError(msg)
        return v

    @field_validator("detector_tiers")
    @classmethod
    def validate_detector_tiers(cls, v: str) -> str:
        tiers = [t.strip() for t in v.split(",") if t.strip()]
        if not tiers:
            msg = "KF_DETECTOR_TIERS must list at least one input_size:confidence tier"
            raise ValueError(msg)
        for tier in tiers:
            size, sep, conf = tier.partition(":")
            try:
                if not sep or int(size) <= 0:
                    raise ValueError
                float(conf)
            except ValueError:
                msg = f"KF_DETECTOR_TIERS entry must look like '512:0.4', got '{tier}'"
                raise ValueError(msg)  # noqa: B904
        return v

    @property
    def detector_tier_list(self) -> list[tuple[int, float]]:
        """Return parsed (input_size, confidence) tiers in cascade order."""
        tiers = []
        for tier in self.detector_tiers.split(","):
            if not tier.strip():
                continue
            size, _, conf = tier.strip().partition(":")
            tiers.append((int(size), float(conf)))
        return tiers


# Singleton, validated at import time.
settings = Settings()
