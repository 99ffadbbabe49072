"""Tests for progress formatting helpers."""

from fvf_burner.storage.progress import format_eta, format_progress_line, human_size


class TestHumanSize:
    """Tests for human_size()."""

    def test_none_is_zero(self):
        assert human_size(None) == "0B"

    def test_units(self):
        assert human_size(512) == "512.0B"
        assert human_size(1024 * 1024) == "1.0MiB"
        assert human_size(20 * 1024**3) == "20.0GiB"


class TestFormatEta:
    """Tests for format_eta()."""

    def test_minutes_and_seconds(self):
        assert format_eta(75) == "01:15"

    def test_hours(self):
        assert format_eta(3725) == "1:02:05"

    def test_invalid(self):
        assert format_eta(None) is None
        assert format_eta(-1) is None


class TestFormatProgressLine:
    """Tests for format_progress_line()."""

    def test_unknown_progress(self):
        assert format_progress_line("WRITING", None, None) == "WRITING | working..."

    def test_with_total_rate_and_eta(self):
        line = format_progress_line("WRITING", 512 * 1024**2, 1024**3, rate=50 * 1024**2, eta="00:10")
        assert line == "WRITING | wrote 512.0MiB of 1.0GiB (50.0%) | 50.0MiB/s ETA 00:10"

    def test_without_total(self):
        assert format_progress_line("CREATING", 2048, None) == "CREATING | wrote 2.0KiB"
