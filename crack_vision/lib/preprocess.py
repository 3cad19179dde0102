"""Bound image size before the vision stages run."""

import cv2

from crack_vision.models import ImageBuffer


def bounded_size(width: int, height: int, max_dim: int) -> tuple[int, int]:
    """Target (width, height) whose longer side is at most max_dim, aspect ratio kept."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {width}x{height}")
    if max_dim < 1:
        raise ValueError(f"max_dim must be at least 1, got {max_dim}")

    if max(width, height) <= max_dim:
        return width, height

    if width >= height:
        return max_dim, max(1, round(height * max_dim / width))
    return max(1, round(width * max_dim / height)), max_dim


def bound_image(image: ImageBuffer, max_dim: int) -> ImageBuffer:
    """Downsample so the longer side equals max_dim.

    Images already within the bound are returned unchanged (same object), so
    bound_image(bound_image(img, d), d) == bound_image(img, d).

    Args:
        image: Source image
        max_dim: Maximum allowed width or height

    Returns:
        The bounded image

    Raises:
        ValueError: If max_dim < 1
    """
    width, height = bounded_size(image.width, image.height, max_dim)
    if (width, height) == image.size:
        return image

    resized = cv2.resize(image.pixels, (width, height), interpolation=cv2.INTER_AREA)
    return ImageBuffer(width=width, height=height, pixels=resized)
