"""Data types shared by the comparison pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from pydantic import BaseModel


@dataclass(frozen=True, eq=False)
class ImageBuffer:
    """RGBA pixels, row-major, shape (height, width, 4), dtype uint8."""

    width: int
    height: int
    pixels: np.ndarray = field(repr=False)

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Image dimensions must be positive, got {self.width}x{self.height}")
        if self.pixels.dtype != np.uint8:
            raise ValueError(f"Expected uint8 pixels, got {self.pixels.dtype}")
        if self.pixels.shape != (self.height, self.width, 4):
            raise ValueError(
                f"Expected pixels with shape ({self.height}, {self.width}, 4), "
                f"got {self.pixels.shape}"
            )

    @classmethod
    def from_array(cls, array: np.ndarray) -> ImageBuffer:
        """Wrap an (H, W, 4) RGBA array, or promote (H, W, 3) RGB / (H, W) grey to RGBA."""
        if array.ndim == 2:
            array = np.dstack([array, array, array])
        if array.ndim != 3 or array.shape[2] not in (3, 4):
            raise ValueError(f"Expected (H, W), (H, W, 3) or (H, W, 4) array, got {array.shape}")
        if array.shape[2] == 3:
            alpha = np.full(array.shape[:2] + (1,), 255, dtype=np.uint8)
            array = np.concatenate([array.astype(np.uint8, copy=False), alpha], axis=2)
        array = np.ascontiguousarray(array, dtype=np.uint8)
        return cls(width=array.shape[1], height=array.shape[0], pixels=array)

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height

    def copy(self) -> ImageBuffer:
        return ImageBuffer(width=self.width, height=self.height, pixels=self.pixels.copy())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ImageBuffer):
            return NotImplemented
        return self.size == other.size and np.array_equal(self.pixels, other.pixels)


@dataclass(frozen=True, eq=False)
class KeypointSet:
    """Keypoint positions and descriptors detected in one image."""

    points: np.ndarray  # (N, 2) float32, x/y
    descriptors: np.ndarray | None  # (N, D); None when nothing was detected
    norm: int  # cv2.NORM_HAMMING or cv2.NORM_L2
    responses: np.ndarray | None = None

    def __len__(self) -> int:
        return int(self.points.shape[0])

    @property
    def empty(self) -> bool:
        return len(self) == 0 or self.descriptors is None or len(self.descriptors) == 0


@dataclass(frozen=True)
class MatchPair:
    """A ratio-test survivor: query indexes the current image, train the baseline."""

    query_idx: int
    train_idx: int
    distance: float
    second_distance: float


@dataclass(frozen=True)
class CropRect:
    x: int
    y: int
    width: int
    height: int

    def slice(self, array: np.ndarray) -> np.ndarray:
        return array[self.y : self.y + self.height, self.x : self.x + self.width]


@dataclass(frozen=True, eq=False)
class ChangeMask:
    """Boolean changed-pixel map over the crop of the comparison region."""

    mask: np.ndarray  # (crop_h, crop_w) bool
    crop: CropRect
    region_count: int = 0

    @property
    def changed_pixels(self) -> int:
        return int(np.count_nonzero(self.mask))


class AlignmentStats(BaseModel):
    """Statistics and parameters from one comparison run."""

    detector: str | None = None
    baseline_keypoints: int = 0
    current_keypoints: int = 0
    match_count: int = 0
    inlier_count: int = 0
    inlier_ratio: float = 0.0
    used_fallback: bool = False
    fallback_reason: str | None = None
    crop: tuple[int, int, int, int] | None = None  # x, y, width, height
    changed_pixels: int = 0
    changed_regions: int = 0
    homography: list[list[float]] | None = None  # 3x3 matrix as nested list
