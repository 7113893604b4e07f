"""Tests for progress parsing and formatting helpers."""

import pytest

from headless_usb.storage.progress import (
    compute_ratio,
    format_eta,
    format_progress_lines,
    human_size,
    parse_dd_progress,
    parse_percent,
)


class TestFormatEta:
    def test_minutes_seconds(self):
        assert format_eta(125) == "02:05"

    def test_hours(self):
        assert format_eta(3725) == "1:02:05"

    def test_none_and_negative(self):
        assert format_eta(None) is None
        assert format_eta(-1) is None


class TestParseDdProgress:
    def test_full_line(self):
        bytes_copied, rate = parse_dd_progress(
            "1048576000 bytes (1.0 GB, 1000 MiB) copied, 5 s, 210 MB/s"
        )

        assert bytes_copied == 1048576000
        assert rate == pytest.approx(210 * 1000**2)

    def test_binary_rate_units(self):
        _, rate = parse_dd_progress("1024 bytes copied, 1 s, 1.5 MiB/s")

        assert rate == pytest.approx(1.5 * 1024**2)

    def test_records_line_has_no_progress(self):
        assert parse_dd_progress("625+0 records in") == (None, None)


class TestParsePercent:
    def test_percent(self):
        assert parse_percent("Complete: 42.5%") == 42.5

    def test_no_percent(self):
        assert parse_percent("Working") is None


class TestHumanSize:
    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, "0B"),
            (512, "512B"),
            (2048, "2.0KB"),
            (128 * 1024 * 1024, "128.0MB"),
            (16 * 1024**3, "16.0GB"),
        ],
    )
    def test_human_size(self, value, expected):
        assert human_size(value) == expected


class TestFormatProgressLines:
    def test_with_total(self):
        lines = format_progress_lines("Writing", 512 * 1024**2, 1024**3)

        assert lines == ["Writing", "Wrote 512.0MB / 1.0GB 50.0%"]

    def test_with_rate_eta_and_spinner(self):
        lines = format_progress_lines(
            "Writing", 1024, 2048, rate=1024 * 1024, eta="00:10", spinner="⠋", subtitle="sdb"
        )

        assert lines[0] == "Writing ⠋"
        assert lines[1] == "sdb"
        assert lines[-1] == "1.0MB/s ETA 00:10"

    def test_unknown_progress(self):
        assert format_progress_lines("Writing", None, None) == ["Writing", "Working..."]


class TestComputeRatio:
    def test_ratio(self):
        assert compute_ratio(50, 100) == 0.5

    def test_clamped(self):
        assert compute_ratio(150, 100) == 1.0

    def test_unknown(self):
        assert compute_ratio(None, 100) is None
        assert compute_ratio(50, 0) is None
