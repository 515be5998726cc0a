"""
Unit Tests for Prediction Format Validation
"""
import pytest

from prediction_system.services.prediction_format import (
    format_hint,
    is_valid_prediction,
    parse_score_pair,
)


class TestParseScorePair:

    def test_plain_pair(self):
        assert parse_score_pair("13-9") == (13, 9)

    def test_surrounding_whitespace_is_ignored(self):
        assert parse_score_pair(" 13-9 ") == (13, 9)
        assert parse_score_pair("13 - 9") == (13, 9)

    @pytest.mark.parametrize("candidate", [
        None, "", "13", "13-", "-9", "13-9-1", "abc-def", "+13-9", "13--9", "13_9", "１３-９",
    ])
    def test_rejects_anything_ambiguous(self, candidate):
        assert parse_score_pair(candidate) is None


class TestIsValidPrediction:

    @pytest.mark.parametrize("candidate", ["13-0", "13-9", "9-13", "0-13", "13-13", "13-12"])
    def test_accepts_winning_side_at_max(self, candidate):
        assert is_valid_prediction(candidate, 13)

    @pytest.mark.parametrize("candidate", ["13", "13-14", "14-10", "14-13", "12-11", "abc-def", "13-", ""])
    def test_rejects_invalid(self, candidate):
        assert not is_valid_prediction(candidate, 13)

    def test_every_pair_with_exactly_one_side_at_max(self):
        max_score = 13
        for low in range(max_score + 1):
            assert is_valid_prediction(f"{max_score}-{low}", max_score)
            assert is_valid_prediction(f"{low}-{max_score}", max_score)

    def test_neither_side_at_max_is_rejected(self):
        max_score = 16
        for left in range(max_score):
            for right in range(max_score):
                assert not is_valid_prediction(f"{left}-{right}", max_score)

    def test_respects_other_max_scores(self):
        assert is_valid_prediction("16-14", 16)
        assert not is_valid_prediction("13-9", 16)
        assert is_valid_prediction("1-0", 1)

    def test_leading_zeros_compare_numerically(self):
        assert is_valid_prediction("13-09", 13)


def test_format_hint_mentions_max_score():
    assert format_hint(13) == "Use the allowed formats, xx-xx. Each side must be either in 13."
