"""Warp the current image into the baseline frame."""

import cv2
import numpy as np

from crack_vision.models import ImageBuffer

# Fully transparent black marks pixels with no warped content
EMPTY_FILL = (0, 0, 0, 0)


def apply_homography(
    image: np.ndarray,
    homography: np.ndarray,
    output_shape: tuple[int, int],
) -> np.ndarray:
    """Apply a perspective transformation to warp an image.

    Args:
        image: Input image (H1, W1, 4) in RGBA format
        homography: 3x3 perspective transformation matrix
        output_shape: Desired output shape (width, height)

    Returns:
        Warped image with shape (height, width, 4) in RGBA format

    Raises:
        ValueError: If homography shape is not (3, 3)
    """
    if homography.shape != (3, 3):
        raise ValueError(f"Expected homography shape (3, 3), got {homography.shape}")

    width, height = output_shape

    # Note: cv2.warpPerspective expects dsize=(width, height)
    return cv2.warpPerspective(
        image,
        homography,
        dsize=(width, height),
        flags=cv2.INTER_CUBIC,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=EMPTY_FILL,
    )


def align_image(
    current: ImageBuffer,
    homography: np.ndarray | None,
    target_width: int,
    target_height: int,
) -> tuple[ImageBuffer, bool]:
    """Bring the current image into the baseline's pixel grid.

    With a homography the current image is warped (bicubic, uncovered area
    filled with transparent black). Without one it is plainly resized to the
    target size; an absent homography is never treated as identity.

    Args:
        current: Current image
        homography: current -> baseline transform, or None
        target_width: Baseline width
        target_height: Baseline height

    Returns:
        (aligned image of size target_width x target_height, used_fallback)
    """
    if target_width <= 0 or target_height <= 0:
        raise ValueError(f"Target size must be positive, got {target_width}x{target_height}")

    if homography is not None:
        warped = apply_homography(current.pixels, homography, (target_width, target_height))
        return ImageBuffer(width=target_width, height=target_height, pixels=warped), False

    if current.size == (target_width, target_height):
        return current.copy(), True

    resized = cv2.resize(
        current.pixels, (target_width, target_height), interpolation=cv2.INTER_AREA
    )
    return ImageBuffer(width=target_width, height=target_height, pixels=resized), True
