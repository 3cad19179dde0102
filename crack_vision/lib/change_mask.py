"""Change mask between a baseline image and the aligned current image.

The steps run in a fixed order so identical inputs always give the same mask:
1. RGBA to luma for both images
2. Content mask: aligned luma above a small threshold (warped area)
3. Crop both lumas to the bounding rectangle of the content
4. Absolute difference, then a 5x5 Gaussian blur
5. Binarise at the diff threshold
6. Morphological closing to join fragmented crack strokes
7. Drop connected regions smaller than the minimum blob area
8. Outside the fallback path, keep only pixels inside warped content
"""

import cv2
import numpy as np

from crack_vision.lib.feature_matching import to_grayscale
from crack_vision.models import ChangeMask, CropRect, ImageBuffer


def content_mask(aligned_gray: np.ndarray, content_threshold: int = 1) -> np.ndarray:
    """Pixels where the warp put real content (luma above content_threshold)."""
    return aligned_gray > content_threshold


def content_bounds(mask: np.ndarray) -> CropRect:
    """Bounding rectangle of all content regions; the full frame when there are none.

    Args:
        mask: Boolean content mask (H, W)

    Returns:
        CropRect enclosing every contour of the mask
    """
    height, width = mask.shape[:2]
    contours, _ = cv2.findContours(
        mask.astype(np.uint8), cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE
    )
    if not contours:
        return CropRect(0, 0, width, height)

    x, y, w, h = cv2.boundingRect(np.vstack(contours))
    return CropRect(int(x), int(y), int(w), int(h))


def remove_small_regions(mask: np.ndarray, min_area: int) -> tuple[np.ndarray, int]:
    """Drop 8-connected regions with fewer than min_area pixels.

    Args:
        mask: Binary mask (H, W) with dtype bool or uint8
        min_area: Smallest region kept, in pixels

    Returns:
        (cleaned boolean mask, number of regions kept)
    """
    mask_uint8 = mask.astype(np.uint8) if mask.dtype == bool else (mask > 0).astype(np.uint8)
    num_labels, labels, stats, _ = cv2.connectedComponentsWithStats(mask_uint8, connectivity=8)

    # Label 0 is the background
    keep = np.zeros(num_labels, dtype=bool)
    keep[1:] = stats[1:, cv2.CC_STAT_AREA] >= min_area

    return keep[labels], int(np.count_nonzero(keep))


def compute_change_mask(
    baseline: ImageBuffer,
    aligned: ImageBuffer,
    used_fallback: bool,
    *,
    content_threshold: int = 1,
    diff_threshold: int = 50,
    blur_kernel_size: int = 5,
    morph_kernel_size: int = 5,
    morph_iterations: int = 2,
    min_blob_area: int = 800,
) -> ChangeMask:
    """Compute which baseline pixels changed in the aligned current image.

    Args:
        baseline: Baseline image
        aligned: Current image already in the baseline's pixel grid
        used_fallback: True when `aligned` is a plain resize (no content gating)
        content_threshold: Aligned luma above this counts as warped content
        diff_threshold: Blurred difference at or above this is a change (0-255)
        blur_kernel_size: Gaussian kernel size (odd)
        morph_kernel_size: Rectangular closing element size (odd)
        morph_iterations: Closing iterations
        min_blob_area: Smallest changed region kept, in pixels

    Returns:
        ChangeMask over the content crop

    Raises:
        ValueError: If the two images differ in size
    """
    if baseline.size != aligned.size:
        raise ValueError(
            f"Image dimensions must match: baseline {baseline.size} != aligned {aligned.size}"
        )

    baseline_gray = to_grayscale(baseline.pixels)
    aligned_gray = to_grayscale(aligned.pixels)

    content = content_mask(aligned_gray, content_threshold)
    crop = content_bounds(content)

    base_crop = crop.slice(baseline_gray)
    aligned_crop = crop.slice(aligned_gray)

    diff = cv2.absdiff(base_crop, aligned_crop)
    # uint8 blur keeps flat regions exact, so a uniform diff of N stays N
    blurred = cv2.GaussianBlur(diff, (blur_kernel_size, blur_kernel_size), 0)
    changed = (blurred >= diff_threshold).astype(np.uint8)

    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (morph_kernel_size, morph_kernel_size))
    closed = cv2.morphologyEx(changed, cv2.MORPH_CLOSE, kernel, iterations=morph_iterations)

    mask, region_count = remove_small_regions(closed, min_blob_area)

    if not used_fallback:
        mask &= crop.slice(content)
        # Gating can split or remove regions
        _, region_count = remove_small_regions(mask, 1)

    return ChangeMask(mask=mask, crop=crop, region_count=region_count)
