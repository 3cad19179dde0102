"""Configuration management for the crack comparison pipeline."""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Config(BaseSettings):
    """Pipeline configuration from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CRACK_VISION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["local", "json"] = Field(
        default="local",
        description="'local' for coloured console output, 'json' for structured log lines",
    )

    # Image loading
    http_timeout_seconds: float = Field(
        default=20.0, description="Timeout for fetching a source image over HTTP"
    )
    max_image_bytes: int = Field(
        default=50 * 1024 * 1024,  # 50MB
        description="Reject source images larger than this many bytes",
    )
    max_dimension: int = Field(
        default=1_200,
        description="Longest side after preprocessing; larger images are downsampled",
    )

    # Feature detection and matching
    feature_detector: Literal["orb", "sift"] = Field(
        default="orb", description="Keypoint detector/descriptor strategy"
    )
    max_features: int = Field(
        default=500, description="Maximum number of keypoints kept per image"
    )
    ratio_threshold: float = Field(
        default=0.75,
        description="Lowe's ratio test threshold for feature matching (0.75 recommended)",
    )

    # Homography estimation
    alignment_enabled: bool = Field(
        default=True,
        description="When false, skip feature matching and compare a plain resize",
    )
    min_match_count: int = Field(
        default=10, description="Minimum ratio-test matches before fitting a homography"
    )
    ransac_reproj_threshold: float = Field(
        default=3.0, description="RANSAC reprojection threshold in pixels"
    )
    ransac_max_iters: int = Field(default=2_000, description="Maximum RANSAC iterations")
    ransac_confidence: float = Field(default=0.995, description="RANSAC confidence level")
    ransac_seed: int = Field(default=0, description="Seed for OpenCV's RANSAC sampler")
    min_inlier_ratio: float = Field(
        default=0.25, description="Smallest share of matches that must be RANSAC inliers"
    )

    # Change mask
    content_threshold: int = Field(
        default=1, description="Aligned luma above this value counts as warped content"
    )
    diff_threshold: int = Field(
        default=50,
        description="Blurred difference (0-255) at or above which a pixel counts as changed",
    )
    blur_kernel_size: int = Field(default=5, description="Gaussian blur kernel size")
    morph_kernel_size: int = Field(default=5, description="Closing structuring element size")
    morph_iterations: int = Field(default=2, description="Closing iterations")
    min_blob_area: int = Field(
        default=800, description="Connected changes smaller than this (px^2) are dropped"
    )

    # Worker and scheduling
    debounce_seconds: float = Field(
        default=0.3, description="Delay before a background-priority run starts"
    )
    worker_timeout_seconds: float = Field(
        default=30.0, description="Upper bound on a single worker run before it is torn down"
    )
    worker_start_method: Literal["forkserver", "spawn"] = Field(
        default="forkserver",
        description="multiprocessing start method for the vision worker process",
    )

    @field_validator("ratio_threshold")
    @classmethod
    def validate_ratio_threshold(cls, v: float) -> float:
        """Validate ratio test threshold."""
        if not (0.0 < v < 1.0):
            raise ValueError("ratio_threshold must be in (0, 1)")
        return v

    @field_validator("min_inlier_ratio")
    @classmethod
    def validate_min_inlier_ratio(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError("min_inlier_ratio must be in [0, 1]")
        return v

    @field_validator("blur_kernel_size", "morph_kernel_size")
    @classmethod
    def validate_kernel_size(cls, v: int) -> int:
        """Kernel sizes must be positive and odd."""
        if v < 1 or v % 2 == 0:
            raise ValueError("kernel sizes must be positive odd integers")
        return v

    @field_validator("min_match_count")
    @classmethod
    def validate_min_match_count(cls, v: int) -> int:
        """A homography needs at least four correspondences."""
        if v < 4:
            raise ValueError("min_match_count must be at least 4")
        return v


_config: Config | None = None


class _LazyConfig:
    """Proxy that lazily loads config on first attribute access."""

    def __getattr__(self, name: str):
        global _config
        if _config is None:
            _config = Config()
        return getattr(_config, name)


def reset_config() -> None:
    """Drop the cached config so the next access re-reads the environment."""
    global _config
    _config = None


config = _LazyConfig()
