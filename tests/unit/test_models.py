"""Unit tests for the shared data model."""

import pytest
from pydantic import ValidationError

from crack_vision.models import AlignmentStats


class TestAlignmentStats:
    def test_uses_plain_pydantic_config(self):
        """Every field is a plain type, so no extra model config is needed."""
        assert "arbitrary_types_allowed" not in AlignmentStats.model_config

    def test_defaults(self):
        """A fresh record describes a run that has not matched anything."""
        stats = AlignmentStats()

        assert stats.inlier_count == 0
        assert stats.used_fallback is False
        assert stats.homography is None

    def test_rejects_wrong_types(self):
        """Counts are validated as integers."""
        with pytest.raises(ValidationError):
            AlignmentStats(inlier_count="many")

    def test_serialises_to_plain_data(self):
        """Stats dump to JSON-friendly values for logging."""
        stats = AlignmentStats(detector="orb", crop=(1, 2, 30, 40), homography=[[1.0, 0.0, 0.0]] * 3)

        dumped = stats.model_dump()

        assert dumped["crop"] == (1, 2, 30, 40)
        assert dumped["homography"][0] == [1.0, 0.0, 0.0]
