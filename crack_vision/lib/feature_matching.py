"""Keypoint detection and descriptor matching.

The detector/descriptor pair is a strategy behind FeatureMatcher so the
homography and diff stages are written once:
- OrbMatcher: binary descriptors, Hamming distance
- SiftMatcher: float descriptors, L2 distance

Key functions:
- to_grayscale(): RGBA pixels to single-channel luma
- get_feature_matcher(): Build the configured strategy
- FeatureMatcher.detect(): Keypoints and descriptors for one image
- FeatureMatcher.match(): k=2 nearest neighbours with Lowe's ratio test
"""

from abc import ABC, abstractmethod

import cv2
import numpy as np

from crack_vision.models import KeypointSet, MatchPair
from crack_vision.utils.job_errors import InsufficientFeatures


def to_grayscale(rgba: np.ndarray) -> np.ndarray:
    """Convert RGBA image to grayscale (0.299R + 0.587G + 0.114B).

    Args:
        rgba: RGBA image (H, W, 4) with dtype uint8

    Returns:
        Grayscale image (H, W) with dtype uint8

    Raises:
        ValueError: If image is not RGBA format
    """
    if rgba.ndim != 3 or rgba.shape[2] != 4:
        raise ValueError(f"Expected RGBA image with shape (H, W, 4), got {rgba.shape}")

    return cv2.cvtColor(rgba, cv2.COLOR_RGBA2GRAY)


class FeatureMatcher(ABC):
    """Detect keypoints and match descriptors between two images."""

    name: str = ""
    norm: int = cv2.NORM_L2

    def __init__(self, max_features: int = 500, ratio_threshold: float = 0.75) -> None:
        if max_features < 1:
            raise ValueError(f"max_features must be positive, got {max_features}")
        if not (0.0 < ratio_threshold < 1.0):
            raise ValueError(f"ratio_threshold must be in (0, 1), got {ratio_threshold}")
        self.max_features = max_features
        self.ratio_threshold = ratio_threshold

    @abstractmethod
    def _create_detector(self): ...

    def detect(self, gray_image: np.ndarray) -> KeypointSet:
        """Detect up to max_features keypoints, strongest response first.

        Args:
            gray_image: Grayscale image (H, W) with dtype uint8

        Returns:
            KeypointSet (possibly empty)

        Raises:
            ValueError: If gray_image is not grayscale
        """
        if gray_image.ndim != 2:
            raise ValueError(f"Expected grayscale image with shape (H, W), got {gray_image.shape}")

        detector = self._create_detector()
        keypoints, descriptors = detector.detectAndCompute(gray_image, None)

        if not keypoints or descriptors is None:
            return KeypointSet(
                points=np.empty((0, 2), dtype=np.float32),
                descriptors=None,
                norm=self.norm,
                responses=np.empty((0,), dtype=np.float32),
            )

        responses = np.array([kp.response for kp in keypoints], dtype=np.float32)
        # Stable sort keeps detector order among equal responses
        order = np.argsort(-responses, kind="stable")[: self.max_features]

        points = np.array([keypoints[i].pt for i in order], dtype=np.float32).reshape(-1, 2)
        return KeypointSet(
            points=points,
            descriptors=descriptors[order],
            norm=self.norm,
            responses=responses[order],
        )

    def match(self, current: KeypointSet, baseline: KeypointSet) -> list[MatchPair]:
        """Match current descriptors against baseline descriptors.

        Brute-force k=2 nearest neighbours followed by Lowe's ratio test.
        Queries with fewer than two neighbours are discarded.

        Args:
            current: Keypoints of the current image (query side)
            baseline: Keypoints of the baseline image (train side)

        Returns:
            Ratio-test survivors in query order

        Raises:
            InsufficientFeatures: If either side has no descriptors
        """
        if current.empty or baseline.empty:
            raise InsufficientFeatures(
                f"No descriptors to match: current={len(current)}, baseline={len(baseline)}"
            )

        bf = cv2.BFMatcher(self.norm, crossCheck=False)
        knn_matches = bf.knnMatch(current.descriptors, baseline.descriptors, k=2)

        good_matches = []
        for match_pair in knn_matches:
            # Need at least 2 matches to apply ratio test
            if len(match_pair) < 2:
                continue
            m, n = match_pair[0], match_pair[1]
            if m.distance < self.ratio_threshold * n.distance:
                good_matches.append(
                    MatchPair(
                        query_idx=m.queryIdx,
                        train_idx=m.trainIdx,
                        distance=float(m.distance),
                        second_distance=float(n.distance),
                    )
                )

        return good_matches


class OrbMatcher(FeatureMatcher):
    """Oriented FAST + rotated BRIEF; rotation and scale tolerant, binary descriptors."""

    name = "orb"
    norm = cv2.NORM_HAMMING

    def _create_detector(self):
        return cv2.ORB_create(nfeatures=self.max_features)


class SiftMatcher(FeatureMatcher):
    """SIFT keypoints with 128-d float descriptors."""

    name = "sift"
    norm = cv2.NORM_L2

    def _create_detector(self):
        return cv2.SIFT_create(nfeatures=self.max_features)


FEATURE_MATCHERS: dict[str, type[FeatureMatcher]] = {
    OrbMatcher.name: OrbMatcher,
    SiftMatcher.name: SiftMatcher,
}


def get_feature_matcher(
    name: str,
    max_features: int = 500,
    ratio_threshold: float = 0.75,
) -> FeatureMatcher:
    """Build the feature matcher registered under `name` ("orb" or "sift")."""
    matcher_cls = FEATURE_MATCHERS.get(name.lower())
    if matcher_cls is None:
        raise ValueError(f"Unsupported feature detector: {name}")
    return matcher_cls(max_features=max_features, ratio_threshold=ratio_threshold)
