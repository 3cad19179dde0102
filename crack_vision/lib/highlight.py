"""Paint changed pixels onto the baseline image."""

from crack_vision.models import ChangeMask, ImageBuffer

HIGHLIGHT_COLOR = (255, 0, 0, 255)  # Opaque red, RGBA


def highlight_changes(
    baseline: ImageBuffer,
    change_mask: ChangeMask,
    color: tuple[int, int, int, int] = HIGHLIGHT_COLOR,
) -> ImageBuffer:
    """Copy the baseline crop and paint every changed pixel in `color`.

    The baseline itself is never modified.

    Args:
        baseline: Baseline image the mask was computed against
        change_mask: Mask and the crop rectangle it covers
        color: RGBA highlight colour

    Returns:
        ImageBuffer the size of the crop

    Raises:
        ValueError: If the mask does not match the crop size
    """
    crop = change_mask.crop
    if change_mask.mask.shape != (crop.height, crop.width):
        raise ValueError(
            f"Mask shape {change_mask.mask.shape} does not match crop {crop.width}x{crop.height}"
        )

    output = crop.slice(baseline.pixels).copy()
    output[change_mask.mask] = color

    return ImageBuffer(width=crop.width, height=crop.height, pixels=output)
