"""Pipeline states, priorities and result types."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from crack_vision.lib.image_io import encode_png, to_data_url
from crack_vision.models import AlignmentStats, ImageBuffer

FALLBACK_STATUS_MESSAGE = "alignment failed, raw comparison shown"
PENDING_STATUS_MESSAGE = "waiting to start"


class PipelineState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    MATCHING = "matching"
    ALIGNING = "aligning"
    DIFFING = "diffing"
    DONE = "done"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.ABORTED)


class PipelinePriority(str, Enum):
    BACKGROUND = "background"  # debounced
    FOREGROUND = "foreground"  # immediate


@dataclass(frozen=True)
class PipelineStatus:
    state: PipelineState
    message: str = ""


@dataclass(frozen=True, eq=False)
class PipelineSuccess:
    """A finished comparison.

    `image` is None for pass-through results (identical or missing inputs);
    the caller then shows the image at `source_ref` as is.
    """

    image: ImageBuffer | None = None
    used_fallback: bool = False
    source_ref: str | None = None
    stats: AlignmentStats | None = field(default=None, repr=False)

    @property
    def is_passthrough(self) -> bool:
        return self.image is None

    def to_png_bytes(self) -> bytes:
        if self.image is None:
            raise ValueError(f"Pass-through result has no pixels: {self.source_ref}")
        return encode_png(self.image)

    def to_data_url(self) -> str:
        if self.image is None:
            raise ValueError(f"Pass-through result has no pixels: {self.source_ref}")
        return to_data_url(self.image)

    @classmethod
    def passthrough(cls, source_ref: str) -> PipelineSuccess:
        return cls(image=None, used_fallback=False, source_ref=source_ref)


@dataclass(frozen=True)
class PipelineFailure:
    reason: str


PipelineResult = PipelineSuccess | PipelineFailure


__all__ = [
    "FALLBACK_STATUS_MESSAGE",
    "PENDING_STATUS_MESSAGE",
    "PipelineFailure",
    "PipelinePriority",
    "PipelineResult",
    "PipelineState",
    "PipelineStatus",
    "PipelineSuccess",
]
