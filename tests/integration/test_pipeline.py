"""End-to-end comparisons through the controller and a real worker process."""

import asyncio

import numpy as np
import pytest

from crack_vision.jobs.controller import PipelineController
from crack_vision.jobs.types import (
    FALLBACK_STATUS_MESSAGE,
    PipelineFailure,
    PipelineState,
    PipelineSuccess,
)
from crack_vision.lib.highlight import HIGHLIGHT_COLOR
from crack_vision.lib.image_io import decode_image
from crack_vision.models import ImageBuffer

pytestmark = pytest.mark.integration

WORKER_STAGES = (PipelineState.MATCHING, PipelineState.ALIGNING, PipelineState.DIFFING)


def _compare(baseline_path: str, current_path: str, **controller_kwargs):
    async def scenario():
        controller = PipelineController(**controller_kwargs)
        result = await asyncio.wait_for(controller.run(baseline_path, current_path).wait(), 60)
        return controller, result

    return asyncio.run(scenario())


class TestComparison:
    def test_shifted_view_is_aligned_and_patch_highlighted(self, shifted_pair, write_png):
        """The full pipeline registers the views and marks the changed patch."""
        # Arrange
        baseline, current, (dx, dy), (px, py, size) = shifted_pair
        baseline_path = write_png(baseline, "baseline.png")
        current_path = write_png(current, "current.png")

        # Act
        controller, result = _compare(baseline_path, current_path)

        # Assert
        assert isinstance(result, PipelineSuccess)
        assert result.used_fallback is False
        assert result.source_ref == baseline_path
        assert result.stats.inlier_count >= 10

        crop_x, crop_y, _, _ = result.stats.crop
        x0, y0 = px + dx - crop_x + 10, py + dy - crop_y + 10
        inner = result.image.pixels[y0 : y0 + size - 20, x0 : x0 + size - 20]
        assert np.all(inner == HIGHLIGHT_COLOR, axis=-1).mean() > 0.9

        status = controller.status()
        assert status.state is PipelineState.DONE
        assert "changed region" in status.message

    def test_featureless_current_falls_back(self, scene_image, flat_image, write_png):
        """A current image with no keypoints still succeeds, flagged as fallback."""
        baseline_path = write_png(scene_image, "baseline.png")
        current_path = write_png(flat_image, "current.png")

        controller, result = _compare(baseline_path, current_path)

        assert isinstance(result, PipelineSuccess)
        assert result.used_fallback is True
        assert result.image.size == scene_image.size
        assert controller.status().message == FALLBACK_STATUS_MESSAGE

    def test_unrelated_scenes_fall_back(self, make_scene, write_png):
        """Two different textured scenes finish as a raw comparison."""
        baseline_path = write_png(ImageBuffer.from_array(make_scene(seed=31)), "baseline.png")
        current_path = write_png(ImageBuffer.from_array(make_scene(seed=32)), "current.png")

        controller, result = _compare(baseline_path, current_path)

        assert isinstance(result, PipelineSuccess)
        assert result.used_fallback is True
        assert result.stats.homography is None
        assert controller.status().message == FALLBACK_STATUS_MESSAGE

    def test_result_encodes_losslessly(self, shifted_pair, write_png):
        """to_png_bytes round-trips the highlighted image exactly."""
        baseline_path = write_png(shifted_pair.baseline, "baseline.png")
        current_path = write_png(shifted_pair.current, "current.png")

        _, result = _compare(baseline_path, current_path)

        assert decode_image(result.to_png_bytes()) == result.image
        assert result.to_data_url().startswith("data:image/png;base64,")

    def test_large_inputs_are_bounded(self, make_scene, write_png):
        """Inputs above max_dimension are compared at the reduced size."""
        image = ImageBuffer.from_array(make_scene(width=640, height=480, seed=4))
        path_a = write_png(image, "a.png")
        path_b = write_png(image, "b.png")

        _, result = _compare(path_a, path_b, max_dimension=320)

        assert isinstance(result, PipelineSuccess)
        assert max(result.image.size) <= 320


class TestWorkerLifecycle:
    def test_timeout_is_failure(self, shifted_pair, write_png):
        """A worker that runs past its timeout is killed and reported."""
        baseline_path = write_png(shifted_pair.baseline, "baseline.png")
        current_path = write_png(shifted_pair.current, "current.png")

        controller, result = _compare(baseline_path, current_path, worker_timeout_seconds=0.001)

        assert isinstance(result, PipelineFailure)
        assert "timed out" in result.reason
        assert not controller.busy

    def test_abort_during_worker_run(self, make_scene, write_png):
        """Aborting a running comparison kills the worker and fires nothing."""
        big = ImageBuffer.from_array(make_scene(width=1600, height=1200, seed=8))
        other = ImageBuffer.from_array(make_scene(width=1600, height=1200, seed=9))
        baseline_path = write_png(big, "baseline.png")
        current_path = write_png(other, "current.png")

        async def scenario():
            # Arrange
            controller = PipelineController(max_dimension=1600)
            calls = []
            subscription = controller.run(baseline_path, current_path)
            subscription.on_complete(calls.append)

            for _ in range(2000):
                if controller.state in WORKER_STAGES or subscription.done:
                    break
                await asyncio.sleep(0.005)
            if subscription.done:
                pytest.skip("comparison finished before it could be aborted")
            process = controller._process

            # Act
            controller.abort()
            await asyncio.sleep(0.2)

            # Assert
            assert calls == []
            assert controller.state is PipelineState.ABORTED
            assert process is not None and not process.is_alive()
            with pytest.raises(asyncio.CancelledError):
                await subscription

        asyncio.run(scenario())
