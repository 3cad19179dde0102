"""Vision worker: matching, alignment, diffing and highlighting off the event loop.

The controller starts one process per run and talks to it over a Pipe:
- parent -> child: exactly one WorkerRequest
- child -> parent: zero or more WorkerProgress, then exactly one WorkerResponse

compare_images() is the whole computation as a plain function so it can be
exercised without a process; worker_main() adapts it to the pipe.
"""

from __future__ import annotations

import asyncio
import gc
import logging
import multiprocessing
import signal
from collections.abc import Callable
from dataclasses import dataclass, field
from multiprocessing import forkserver
from multiprocessing.connection import Connection
from multiprocessing.context import BaseContext
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from crack_vision.config import config
from crack_vision.jobs.types import PipelineState
from crack_vision.lib.alignment import align_image
from crack_vision.lib.change_mask import compute_change_mask
from crack_vision.lib.feature_matching import get_feature_matcher, to_grayscale
from crack_vision.lib.highlight import highlight_changes
from crack_vision.lib.homography import estimate_homography
from crack_vision.models import AlignmentStats, ImageBuffer
from crack_vision.utils.job_errors import RecoverableAlignmentError, WorkerError
from crack_vision.utils.log_utils import configure_logging, log_phase

logger = logging.getLogger(__name__)

ProgressReporter = Callable[[PipelineState, str], None]

# Imported into the fork server once so each worker starts warm
FORKSERVER_PRELOAD = ["cv2", "numpy", "crack_vision.jobs.worker"]


class PipelineParams(BaseModel):
    """Tunable parameters sent to the worker with every request."""

    model_config = ConfigDict(frozen=True)

    feature_detector: Literal["orb", "sift"] = "orb"
    max_features: int = 500
    ratio_threshold: float = 0.75
    alignment_enabled: bool = True
    min_match_count: int = 10
    ransac_reproj_threshold: float = 3.0
    ransac_max_iters: int = 2_000
    ransac_confidence: float = 0.995
    ransac_seed: int | None = 0
    min_inlier_ratio: float = 0.25
    content_threshold: int = 1
    diff_threshold: int = 50
    blur_kernel_size: int = 5
    morph_kernel_size: int = 5
    morph_iterations: int = 2
    min_blob_area: int = 800

    @classmethod
    def from_config(cls, **overrides: Any) -> PipelineParams:
        """Build params from the process config; None-valued overrides are ignored."""
        values = {name: getattr(config, name) for name in cls.model_fields}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def change_mask_options(self) -> dict[str, int]:
        return {
            "content_threshold": self.content_threshold,
            "diff_threshold": self.diff_threshold,
            "blur_kernel_size": self.blur_kernel_size,
            "morph_kernel_size": self.morph_kernel_size,
            "morph_iterations": self.morph_iterations,
            "min_blob_area": self.min_blob_area,
        }


@dataclass
class WorkerRequest:
    run_id: str
    baseline: ImageBuffer | None
    current: ImageBuffer | None
    params: PipelineParams = field(default_factory=PipelineParams)
    log_level: str = "INFO"
    log_format: str = "local"

    def release(self) -> None:
        """Drop the pixel references once the request has been sent."""
        self.baseline = None
        self.current = None


@dataclass(frozen=True)
class WorkerProgress:
    state: PipelineState
    message: str = ""


@dataclass(frozen=True, eq=False)
class WorkerResponse:
    success: bool
    image: ImageBuffer | None = None
    used_fallback: bool = False
    error: str | None = None
    stats: AlignmentStats | None = None


def _no_progress(state: PipelineState, message: str) -> None:
    pass


def compare_images(
    request: WorkerRequest,
    report: ProgressReporter | None = None,
) -> WorkerResponse:
    """Align the current image onto the baseline and highlight what changed.

    Infeasible alignment (no features, too few matches, degenerate transform)
    is absorbed into the resize fallback. Anything else propagates.

    Args:
        request: Images and parameters for one run
        report: Called with (state, message) as each stage starts

    Returns:
        Successful WorkerResponse carrying the highlighted baseline crop
    """
    report = report or _no_progress
    params = request.params
    baseline, current = request.baseline, request.current
    if baseline is None or current is None:
        raise ValueError("Request has no pixels (already released)")

    baseline_gray = current_gray = baseline_kp = current_kp = matches = None
    aligned = change = None
    homography = None
    fallback_reason: str | None = None
    stats = AlignmentStats(detector=params.feature_detector if params.alignment_enabled else None)

    try:
        report(PipelineState.MATCHING, "matching features")
        if not params.alignment_enabled:
            fallback_reason = "Alignment disabled"
        else:
            try:
                with log_phase(logger, "Matching features", run_id=request.run_id):
                    matcher = get_feature_matcher(
                        params.feature_detector,
                        max_features=params.max_features,
                        ratio_threshold=params.ratio_threshold,
                    )
                    baseline_gray = to_grayscale(baseline.pixels)
                    current_gray = to_grayscale(current.pixels)
                    baseline_kp = matcher.detect(baseline_gray)
                    current_kp = matcher.detect(current_gray)
                    stats.baseline_keypoints = len(baseline_kp)
                    stats.current_keypoints = len(current_kp)

                    matches = matcher.match(current_kp, baseline_kp)
                    stats.match_count = len(matches)

                estimate = estimate_homography(
                    current_kp,
                    baseline_kp,
                    matches,
                    min_matches=params.min_match_count,
                    reproj_threshold=params.ransac_reproj_threshold,
                    max_iters=params.ransac_max_iters,
                    confidence=params.ransac_confidence,
                    min_inlier_ratio=params.min_inlier_ratio,
                    frame_size=current.size,
                    seed=params.ransac_seed,
                )
                stats.inlier_count = estimate.inlier_count
                stats.inlier_ratio = estimate.inlier_ratio
                homography = estimate.matrix
                fallback_reason = estimate.reason
            except RecoverableAlignmentError as e:
                fallback_reason = str(e)

        report(PipelineState.ALIGNING, "aligning images")
        with log_phase(logger, "Aligning", run_id=request.run_id):
            aligned, used_fallback = align_image(
                current, homography, baseline.width, baseline.height
            )

        report(PipelineState.DIFFING, "computing differences")
        with log_phase(logger, "Diffing", run_id=request.run_id):
            change = compute_change_mask(
                baseline, aligned, used_fallback, **params.change_mask_options()
            )
            output = highlight_changes(baseline, change)

        stats.used_fallback = used_fallback
        stats.fallback_reason = fallback_reason if used_fallback else None
        stats.crop = (change.crop.x, change.crop.y, change.crop.width, change.crop.height)
        stats.changed_pixels = change.changed_pixels
        stats.changed_regions = change.region_count
        stats.homography = homography.tolist() if homography is not None else None

        return WorkerResponse(
            success=True,
            image=output,
            used_fallback=used_fallback,
            stats=stats,
        )
    finally:
        del baseline_gray, current_gray, baseline_kp, current_kp, matches
        del aligned, change, homography
        gc.collect()


def worker_main(conn: Connection) -> None:
    """Process entry point: serve one request from `conn` and exit."""
    # The controller owns shutdown; Ctrl-C in a terminal must not kill workers first
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    try:
        request: WorkerRequest = conn.recv()
        configure_logging(request.log_level, request.log_format)

        def report(state: PipelineState, message: str) -> None:
            conn.send(WorkerProgress(state=state, message=message))

        try:
            response = compare_images(request, report)
        except Exception as e:
            logger.exception(f"[worker.error] {type(e).__name__}: {e}")
            response = WorkerResponse(success=False, error=f"{type(e).__name__}: {e}")

        del request
        conn.send(response)
    except (EOFError, BrokenPipeError):
        # Controller went away; nobody is left to answer
        pass
    finally:
        conn.close()


class WorkerRuntime:
    """Process-wide, memoised initialisation of the worker start method.

    The first caller picks the multiprocessing context, registers the fork
    server preload and starts the fork server. Concurrent first callers
    await the same in-flight initialisation. A failed initialisation is not
    memoised so a later run can retry.
    """

    def __init__(self, start_method: str | None = None) -> None:
        self._start_method = start_method
        self._context: BaseContext | None = None
        self._init_task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def ready(self) -> bool:
        return self._context is not None

    @property
    def start_method(self) -> str | None:
        return self._context.get_start_method() if self._context is not None else None

    async def ensure_ready(self) -> BaseContext:
        """Return the multiprocessing context, initialising it on first use.

        Raises:
            WorkerError: If the vision runtime cannot be initialised
        """
        if self._context is not None:
            return self._context

        loop = asyncio.get_running_loop()
        if self._init_task is None or self._loop is not loop:
            self._loop = loop
            self._init_task = loop.create_task(asyncio.to_thread(self._initialise))

        task = self._init_task
        try:
            # Shielded so one cancelled caller does not cancel it for the rest
            context = await asyncio.shield(task)
        except (ImportError, OSError, ValueError) as e:
            if self._init_task is task:
                self._init_task = None
            raise WorkerError(f"Vision runtime unavailable ({type(e).__name__}: {e})") from e

        self._context = context
        return context

    def _initialise(self) -> BaseContext:
        method = self._start_method or config.worker_start_method
        if method not in multiprocessing.get_all_start_methods():
            logger.debug(f"[worker.runtime] {method} unavailable, using spawn")
            method = "spawn"

        context = multiprocessing.get_context(method)
        if method == "forkserver":
            context.set_forkserver_preload(FORKSERVER_PRELOAD)
            # Start the server now so the first run does not pay for the preload
            forkserver.ensure_running()

        logger.debug(f"[worker.runtime] ready ({method})")
        return context


# Module-level singleton instance
_runtime: WorkerRuntime | None = None


def get_worker_runtime() -> WorkerRuntime:
    """
    Get or create the process-wide worker runtime.

    Returns:
        WorkerRuntime: Shared runtime (singleton)
    """
    global _runtime

    if _runtime is None:
        _runtime = WorkerRuntime()

    return _runtime


def reset_worker_runtime() -> None:
    """Reset the worker runtime singleton."""
    global _runtime
    _runtime = None
