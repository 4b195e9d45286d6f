"""Tests for quality fallback selection."""

import pytest

from streamrecd.quality import QualityCandidate, parse_quality, select_quality


class TestParseQuality:

    @pytest.mark.parametrize("label,height,fps", [
        ("1080p60", 1080, 60),
        ("720p", 720, 30),
        ("720p60_alt", 720, 60),
        ("480p+", 480, 30),
        ("1440p,hevc", 1440, 30),
    ])
    def test_parses_height_and_fps(self, label, height, fps):
        assert parse_quality(label) == QualityCandidate(label=label, height=height, fps=fps)

    @pytest.mark.parametrize("label", ["best", "worst", "audio_only", "p720", "60p"])
    def test_rejects_non_resolution_labels(self, label):
        assert parse_quality(label) is None


class TestSelectQuality:

    def test_no_available_qualities(self):
        assert select_quality("720p", []) == "720p"
        assert select_quality("", []) == "best"

    def test_blank_request_means_best(self):
        assert select_quality("  ", ["720p", "best"]) == "best"

    def test_best_and_worst_pass_through(self):
        assert select_quality("BEST", ["720p"]) == "best"
        assert select_quality("worst", ["720p"]) == "worst"

    def test_exact_match_is_case_insensitive(self):
        assert select_quality("720P60", ["720p60", "480p"]) == "720p60"

    def test_prefers_highest_not_above_request(self):
        assert select_quality("1080p", ["480p", "720p", "1440p"]) == "720p"

    def test_prefers_60fps_at_same_height(self):
        assert select_quality("1080p", ["720p", "720p60", "480p"]) == "720p60"
        assert select_quality("1080p", ["720p60_alt", "720p", "480p"]) == "720p60_alt"

    def test_highest_fps_when_no_60(self):
        assert select_quality("1080p", ["720p", "720p50", "480p"]) == "720p50"

    def test_closest_above_when_nothing_lower(self):
        assert select_quality("360p", ["720p", "1080p60", "480p60"]) == "480p60"

    def test_closest_above_prefers_higher_fps(self):
        assert select_quality("360p", ["480p", "480p60", "720p"]) == "480p60"

    def test_unparseable_request_falls_back(self):
        assert select_quality("audio", ["720p", "best"]) == "best"
        assert select_quality("audio", ["720p", "480p"]) == "720p"

    def test_no_parseable_candidates(self):
        assert select_quality("720p", ["audio_only", "best"]) == "best"
        assert select_quality("720p", ["audio_only", "source"]) == "audio_only"

    @pytest.mark.parametrize("requested,available,expected", [
        ("720p", ["1080p", "720p", "480p"], "720p"),
        ("1080p", ["720p", "480p"], "720p"),
        ("1080p", ["720p", "720p60", "480p"], "720p60"),
        ("360p", ["720p", "1080p"], "720p"),
        ("source", ["best", "720p", "worst"], "best"),
    ])
    def test_reference_cases(self, requested, available, expected):
        assert select_quality(requested, available) == expected

    def test_result_is_one_of_available_or_keyword(self):
        available = ["160p", "360p", "480p", "720p60", "1080p60"]
        for requested in ["144p", "480p", "900p", "4320p", "high"]:
            chosen = select_quality(requested, available)
            assert chosen in available or chosen in ("best", "worst")
