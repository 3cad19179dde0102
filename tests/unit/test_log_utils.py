"""Unit tests for logging utilities."""

import json
import logging
from unittest.mock import Mock
from uuid import UUID

import pytest

from crack_vision.utils.log_utils import (
    JsonFormatter,
    format_context,
    format_duration,
    format_size,
    get_memory_mb,
    log_image_loaded,
    log_phase,
    log_run_aborted,
    log_run_coalesced,
    log_run_completed,
    log_run_failed,
    log_run_fallback,
    log_run_rejected,
    log_run_started,
    log_status_updated,
    log_worker_spawned,
    log_worker_terminated,
    parse_log_level,
)


class TestFormatSize:
    def test_formats_bytes(self):
        """Format size in bytes."""
        assert format_size(500) == "500b"
        assert format_size(0) == "0b"

    def test_formats_kilobytes(self):
        """Format size in kilobytes."""
        assert format_size(1024) == "1.0kb"
        assert format_size(1536) == "1.5kb"

    def test_formats_megabytes(self):
        """Format size in megabytes."""
        assert format_size(1024 * 1024) == "1.0mb"
        assert format_size(int(2.5 * 1024 * 1024)) == "2.5mb"


class TestFormatDuration:
    def test_formats_milliseconds(self):
        """Format duration in milliseconds."""
        assert format_duration(250) == "250ms"
        assert format_duration(999) == "999ms"

    def test_formats_seconds(self):
        """Format duration in seconds."""
        assert format_duration(1000) == "1.0s"
        assert format_duration(15200) == "15.2s"


class TestFormatContext:
    def test_formats_run_only(self):
        """Format context with a run id only."""
        assert format_context(run_id="12345678-abcd") == "run-12345678"

    def test_formats_full_pair(self):
        """Format context with run id and both image references."""
        result = format_context(
            run_id="1234abcd5678",
            baseline_ref="https://cdn.example.com/site/2023/a.jpg?token=x",
            current_ref="/data/site/b.png",
        )

        assert result == "run-1234abcd > base:a.jpg > cur:b.png"

    def test_handles_short_ids(self):
        """Short ids are kept whole."""
        assert format_context(run_id="abc") == "run-abc"

    def test_handles_none_values(self):
        """No context yields an empty string."""
        assert format_context() == ""
        assert format_context(run_id=None, baseline_ref=None) == ""

    def test_handles_uuid_objects(self):
        """UUID run ids are accepted."""
        run_id = UUID("12345678-1234-1234-1234-123456789012")

        assert format_context(run_id=run_id) == "run-12345678"


class TestParseLogLevel:
    def test_parses_known_levels(self):
        """Level names map to logging constants, case-insensitively."""
        assert parse_log_level("debug") == logging.DEBUG
        assert parse_log_level("WARNING") == logging.WARNING

    def test_defaults_to_info(self):
        """Unknown level names fall back to INFO."""
        assert parse_log_level("verbose") == logging.INFO


class TestJsonFormatter:
    def test_formats_record_as_json(self):
        """Each record becomes one JSON object with a severity field."""
        # Arrange
        record = logging.LogRecord(
            name="crack_vision.test",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="[run.fallback] %s",
            args=("no matches",),
            exc_info=None,
        )

        # Act
        payload = json.loads(JsonFormatter().format(record))

        # Assert
        assert payload["severity"] == "WARNING"
        assert payload["message"] == "[run.fallback] no matches"
        assert payload["logger"] == "crack_vision.test"


class TestGetMemoryMb:
    def test_returns_float_or_none(self):
        """Get memory returns float or None."""
        result = get_memory_mb()
        assert result is None or (isinstance(result, float) and result > 0)


class TestLoggingFunctions:
    """Test logging functions don't crash and produce expected output."""

    @pytest.fixture
    def mock_logger(self):
        """Create mock logger."""
        return Mock(spec=logging.Logger)

    def test_log_run_started(self, mock_logger):
        """log_run_started logs the priority and returns a timestamp."""
        start_time = log_run_started(
            mock_logger,
            "background",
            run_id="87654321abcdef",
            baseline_ref="base.jpg",
            current_ref="cur.jpg",
        )

        assert isinstance(start_time, float)
        assert start_time > 0
        call_text = mock_logger.info.call_args[0][0]
        assert "[run.started]" in call_text
        assert "background" in call_text
        assert "run-87654321" in call_text
        assert "base:base.jpg" in call_text

    def test_log_run_completed(self, mock_logger):
        """log_run_completed includes inliers, regions and size."""
        log_run_completed(
            mock_logger,
            start_time=1000.0,
            run_id="87654321abcdef",
            used_fallback=False,
            inlier_count=42,
            match_count=60,
            changed_regions=3,
            width=640,
            height=480,
        )

        assert mock_logger.info.call_count == 1
        call_text = mock_logger.info.call_args[0][0]
        assert "[run.completed]" in call_text
        assert "inliers: 42/60" in call_text
        assert "3 regions" in call_text
        assert "640x480" in call_text
        assert "fallback" not in call_text

    def test_log_run_completed_marks_fallback(self, mock_logger):
        """Fallback runs are tagged in the completion line."""
        log_run_completed(mock_logger, start_time=1000.0, used_fallback=True)

        assert "fallback" in mock_logger.info.call_args[0][0]

    def test_log_run_fallback(self, mock_logger):
        """Fallback is a warning carrying the reason."""
        log_run_fallback(mock_logger, "Insufficient matches: 3 < 10", run_id="abcdef123456")

        assert mock_logger.warning.call_count == 1
        call_text = mock_logger.warning.call_args[0][0]
        assert "[run.fallback]" in call_text
        assert "Insufficient matches" in call_text

    def test_log_run_failed(self, mock_logger):
        """Failure logs the event and the exception type."""
        log_run_failed(mock_logger, ValueError("bad image"), run_id="abcdef123456")

        assert mock_logger.error.call_count == 2
        assert "[run.failed]" in mock_logger.error.call_args_list[0][0][0]
        assert "ValueError: bad image" in mock_logger.error.call_args_list[1][0][0]

    def test_log_run_aborted(self, mock_logger):
        """Abort logs at info level."""
        log_run_aborted(mock_logger, run_id="abcdef123456")

        assert "[run.aborted] run-abcdef12" in mock_logger.info.call_args[0][0]

    def test_log_run_coalesced(self, mock_logger):
        """Coalesced runs log at debug level."""
        log_run_coalesced(mock_logger, run_id="abcdef123456")

        assert "[run.coalesced]" in mock_logger.debug.call_args[0][0]

    def test_log_run_rejected(self, mock_logger):
        """Rejections log a warning with the reason."""
        log_run_rejected(mock_logger, "run already in flight")

        assert "[run.rejected] run already in flight" in mock_logger.warning.call_args[0][0]

    def test_log_image_loaded(self, mock_logger):
        """Image load logs dimensions, size and duration."""
        log_image_loaded(
            mock_logger,
            "https://cdn.example.com/cracks/wall.jpg",
            1200,
            900,
            size_bytes=2 * 1024 * 1024,
            duration_ms=1500,
        )

        call_text = mock_logger.info.call_args[0][0]
        assert "[image.loaded] wall.jpg" in call_text
        assert "1200x900" in call_text
        assert "2.0mb" in call_text
        assert "1.5s" in call_text

    def test_log_worker_lifecycle(self, mock_logger):
        """Worker spawn and teardown log at debug level."""
        log_worker_spawned(mock_logger, 4242, "forkserver")
        log_worker_terminated(mock_logger, 4242, 0, "completed")

        first, second = (c[0][0] for c in mock_logger.debug.call_args_list)
        assert "[worker.spawned] pid 4242 (forkserver)" in first
        assert "[worker.terminated] pid 4242 exit 0 (completed)" in second

    def test_log_status_updated(self, mock_logger):
        """State transitions log old and new state."""
        log_status_updated(mock_logger, "loading", "matching", "matching features")

        call_text = mock_logger.debug.call_args[0][0]
        assert "[status.updated]" in call_text
        assert "loading → matching" in call_text
        assert "matching features" in call_text

    def test_log_phase_logs_start_and_end(self, mock_logger):
        """log_phase logs before and after the wrapped block."""
        with log_phase(mock_logger, "Diffing", run_id="abcdef123456"):
            pass

        messages = [c[0][0] for c in mock_logger.debug.call_args_list]
        assert messages[0] == "Diffing... (run-abcdef12)"
        assert messages[1].startswith("Diffing done (")
