"""Shared fixtures for crack comparison tests."""

from __future__ import annotations

import os
from pathlib import Path
from typing import NamedTuple

import cv2
import numpy as np
import pytest
from PIL import Image, ImageDraw

from crack_vision.clients.http import close_http_client
from crack_vision.config import reset_config
from crack_vision.models import ImageBuffer


@pytest.fixture(autouse=True)
def clean_env():
    """Isolate every test from CRACK_VISION_* variables and cached singletons."""
    original = {k: v for k, v in os.environ.items() if k.startswith("CRACK_VISION_")}
    for key in original:
        os.environ.pop(key)
    reset_config()
    close_http_client()
    yield
    for key in [k for k in os.environ if k.startswith("CRACK_VISION_")]:
        os.environ.pop(key)
    os.environ.update(original)
    reset_config()
    close_http_client()


def draw_scene(width: int = 320, height: int = 240, seed: int = 7) -> np.ndarray:
    """Textured RGBA scene with plenty of corners for feature detection.

    Every pixel has luma well above zero so the whole frame counts as content.
    """
    rng = np.random.default_rng(seed)
    img = Image.new("RGB", (width, height), color=(128, 128, 128))
    draw = ImageDraw.Draw(img)

    for _ in range(70):
        x0 = int(rng.integers(0, width - 12))
        y0 = int(rng.integers(0, height - 12))
        x1 = x0 + int(rng.integers(8, 50))
        y1 = y0 + int(rng.integers(8, 50))
        fill = tuple(int(c) for c in rng.integers(30, 230, size=3))
        if rng.random() < 0.5:
            draw.rectangle((x0, y0, x1, y1), fill=fill)
        else:
            draw.ellipse((x0, y0, x1, y1), fill=fill)

    for _ in range(25):
        points = [tuple(int(v) for v in rng.integers(0, (width, height))) for _ in range(2)]
        fill = tuple(int(c) for c in rng.integers(30, 230, size=3))
        draw.line(points, fill=fill, width=int(rng.integers(2, 5)))

    return np.array(img.convert("RGBA"), dtype=np.uint8)


def solid_rgba(width: int, height: int, value: int) -> np.ndarray:
    """Opaque grey image of a single intensity."""
    pixels = np.full((height, width, 4), value, dtype=np.uint8)
    pixels[..., 3] = 255
    return pixels


@pytest.fixture
def scene_image() -> ImageBuffer:
    """Textured 320x240 baseline scene."""
    return ImageBuffer.from_array(draw_scene())


@pytest.fixture
def flat_image() -> ImageBuffer:
    """Featureless mid-grey 320x240 image."""
    return ImageBuffer.from_array(solid_rgba(320, 240, 128))


@pytest.fixture
def write_png(tmp_path: Path):
    """Factory writing an RGBA array or ImageBuffer to a PNG and returning its path."""

    def _write(image: ImageBuffer | np.ndarray, name: str = "image.png") -> str:
        pixels = image.pixels if isinstance(image, ImageBuffer) else image
        path = tmp_path / name
        Image.fromarray(pixels).save(path, format="PNG")
        return str(path)

    return _write


@pytest.fixture
def make_scene():
    """Factory for textured RGBA scenes: make_scene(width, height, seed)."""
    return draw_scene


@pytest.fixture
def make_solid():
    """Factory for flat opaque grey images: make_solid(width, height, value)."""
    return solid_rgba


class ShiftedPair(NamedTuple):
    """Baseline, a shifted current view, and where things are in it."""

    baseline: ImageBuffer
    current: ImageBuffer
    shift: tuple[int, int]  # current -> baseline translation (dx, dy)
    patch: tuple[int, int, int]  # changed square in current coordinates (x, y, size)


@pytest.fixture
def shifted_pair() -> ShiftedPair:
    """Two overlapping views of one scene, the current one with a changed 60x60 patch."""
    dx, dy = 15, 10
    px, py, size = 100, 100, 60

    scene = draw_scene(360, 280, seed=21)
    baseline = scene[0:240, 0:320].copy()
    current = scene[dy : dy + 240, dx : dx + 320].copy()

    patch = current[py : py + size, px : px + size]
    luma = cv2.cvtColor(np.ascontiguousarray(patch), cv2.COLOR_RGBA2GRAY)
    patch[..., :3] = np.where(luma[..., None] < 128, 250, 5)

    return ShiftedPair(
        ImageBuffer.from_array(baseline),
        ImageBuffer.from_array(current),
        shift=(dx, dy),
        patch=(px, py, size),
    )
