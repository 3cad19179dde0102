"""Robust planar homography estimation from matched keypoints.

Fits a 3x3 projective transform mapping current-image coordinates to
baseline-image coordinates with RANSAC. An absent result is a signalled
fallback condition, never an error: the aligner resizes instead of warping.

Key functions:
- estimate_homography(): RANSAC fit with minimum-match and degeneracy checks
- validate_homography(): Reject empty, singular or frame-folding transforms
"""

import logging
from dataclasses import dataclass

import cv2
import numpy as np

from crack_vision.models import KeypointSet, MatchPair
from crack_vision.utils.job_errors import DegenerateHomography

logger = logging.getLogger(__name__)

# Four correspondences are the mathematical minimum for a homography
MIN_SOLVABLE_MATCHES = 4


@dataclass(frozen=True, eq=False)
class HomographyEstimate:
    matrix: np.ndarray | None  # 3x3 float64, current -> baseline
    inlier_count: int
    match_count: int
    reason: str | None = None  # why matrix is absent

    @property
    def present(self) -> bool:
        return self.matrix is not None

    @property
    def inlier_ratio(self) -> float:
        return self.inlier_count / self.match_count if self.match_count > 0 else 0.0


def validate_homography(
    matrix: np.ndarray | None,
    frame_size: tuple[int, int] | None = None,
    min_abs_det: float = 1e-6,
) -> np.ndarray:
    """Check a solver result and return it normalised so that H[2, 2] == 1.

    Args:
        matrix: Candidate 3x3 matrix (None when the solver failed)
        frame_size: (width, height) of the current image; when given, the
            projected frame must stay a convex quadrilateral
        min_abs_det: Smallest accepted |det| of the normalised matrix

    Returns:
        Normalised 3x3 float64 matrix

    Raises:
        DegenerateHomography: If the matrix is empty, non-finite, singular or folds the frame
    """
    if matrix is None or matrix.size == 0:
        raise DegenerateHomography("Solver returned no transform")
    if matrix.shape != (3, 3):
        raise DegenerateHomography(f"Expected 3x3 transform, got {matrix.shape}")
    if not np.all(np.isfinite(matrix)):
        raise DegenerateHomography("Transform has non-finite entries")
    if abs(matrix[2, 2]) < 1e-12:
        raise DegenerateHomography("Transform maps points to infinity")

    normalised = matrix.astype(np.float64) / matrix[2, 2]
    det = float(np.linalg.det(normalised))
    if not np.isfinite(det) or abs(det) < min_abs_det:
        raise DegenerateHomography(f"Transform is singular (det={det:.3g})")

    if frame_size is not None:
        width, height = frame_size
        corners = np.array(
            [[0, 0], [width, 0], [width, height], [0, height]], dtype=np.float64
        ).reshape(-1, 1, 2)
        homogeneous = np.hstack([corners.reshape(-1, 2), np.ones((4, 1))]) @ normalised.T
        if np.any(homogeneous[:, 2] <= 0):
            raise DegenerateHomography("Transform projects frame corners behind the camera")
        projected = cv2.perspectiveTransform(corners, normalised).astype(np.float32)
        if not cv2.isContourConvex(projected):
            raise DegenerateHomography("Transform folds the image frame")

    return normalised


def estimate_homography(
    current: KeypointSet,
    baseline: KeypointSet,
    matches: list[MatchPair],
    *,
    min_matches: int = 10,
    reproj_threshold: float = 3.0,
    max_iters: int = 2_000,
    confidence: float = 0.995,
    min_inlier_ratio: float = 0.25,
    frame_size: tuple[int, int] | None = None,
    seed: int | None = 0,
) -> HomographyEstimate:
    """Estimate the current -> baseline homography with RANSAC.

    Args:
        current: Keypoints of the current image
        baseline: Keypoints of the baseline image
        matches: Ratio-test matches (query = current, train = baseline)
        min_matches: Practical floor on matches before fitting (never below 4)
        reproj_threshold: RANSAC inlier reprojection threshold in pixels
        max_iters: Maximum RANSAC iterations
        confidence: RANSAC confidence level
        min_inlier_ratio: Smallest accepted share of matches that are inliers
        frame_size: (width, height) of the current image for the fold check
        seed: Seed for OpenCV's RNG (None leaves it untouched)

    Returns:
        HomographyEstimate; `matrix` is None when alignment is infeasible
    """
    match_count = len(matches)
    floor = max(min_matches, MIN_SOLVABLE_MATCHES)

    if match_count < floor:
        return HomographyEstimate(
            matrix=None,
            inlier_count=0,
            match_count=match_count,
            reason=f"Insufficient matches: {match_count} < {floor}",
        )

    src_pts = np.float32([current.points[m.query_idx] for m in matches]).reshape(-1, 1, 2)
    dst_pts = np.float32([baseline.points[m.train_idx] for m in matches]).reshape(-1, 1, 2)

    if seed is not None:
        cv2.setRNGSeed(seed)

    matrix, mask = cv2.findHomography(
        src_pts,
        dst_pts,
        method=cv2.RANSAC,
        ransacReprojThreshold=reproj_threshold,
        maxIters=max_iters,
        confidence=confidence,
    )

    inlier_count = int(np.count_nonzero(mask)) if mask is not None else 0

    try:
        # Any four samples fit exactly, so inliers must clear the same floor as matches
        if inlier_count < floor:
            raise DegenerateHomography(f"Too few RANSAC inliers: {inlier_count} < {floor}")
        if inlier_count < min_inlier_ratio * match_count:
            raise DegenerateHomography(
                f"Too few RANSAC inliers: {inlier_count}/{match_count} below ratio {min_inlier_ratio}"
            )
        normalised = validate_homography(matrix, frame_size=frame_size)
    except DegenerateHomography as e:
        logger.debug(f"[homography.absent] {e}")
        return HomographyEstimate(
            matrix=None,
            inlier_count=inlier_count,
            match_count=match_count,
            reason=str(e),
        )

    return HomographyEstimate(
        matrix=normalised,
        inlier_count=inlier_count,
        match_count=match_count,
    )
