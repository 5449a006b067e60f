from datetime import datetime, timedelta, timezone

import pytest

from crosslink.identity.similarity import (
    HOURS_PER_WEEK,
    activity_correlation,
    histogram_vector,
    hour_of_week_bucket,
    username_similarity,
)


class TestUsernameSimilarity:
    def test_exact_match_is_case_insensitive(self):
        assert username_similarity("CryptoKing", "cryptoking") == 100.0

    def test_containment_scores_85(self):
        assert username_similarity("cryptoking", "cryptoking_99") == 85.0
        assert username_similarity("the_cryptoking", "cryptoking") == 85.0

    def test_edit_distance_is_normalized_by_longer_name(self):
        # one substitution over eight characters
        assert username_similarity("satoshi1", "satoshi2") == pytest.approx(87.5)

    def test_unrelated_names_score_low(self):
        assert username_similarity("alice", "zzzzzzzzzz") < 20.0

    def test_never_negative(self):
        assert username_similarity("ab", "xyzxyzxyz") >= 0.0

    @pytest.mark.parametrize("left,right", [(None, "bob"), ("bob", None), ("", "bob"), ("  ", "bob")])
    def test_missing_username_scores_zero(self, left, right):
        assert username_similarity(left, right) == 0.0


class TestHourOfWeekBucket:
    def test_monday_midnight_is_bucket_zero(self):
        assert hour_of_week_bucket(datetime(2026, 1, 5, 0, 30, tzinfo=timezone.utc)) == 0

    def test_sunday_last_hour_is_bucket_167(self):
        assert hour_of_week_bucket(datetime(2026, 1, 11, 23, 59, tzinfo=timezone.utc)) == 167

    def test_non_utc_offsets_are_normalized(self):
        plus_two = timezone(timedelta(hours=2))
        # 02:15 at +02:00 is Monday 00:15 UTC
        assert hour_of_week_bucket(datetime(2026, 1, 5, 2, 15, tzinfo=plus_two)) == 0


class TestActivityCorrelation:
    def test_identical_histograms_correlate_fully(self):
        histogram = {"9": 5, "10": 8, "20": 2}
        assert activity_correlation(histogram, dict(histogram)) == pytest.approx(1.0)

    def test_scaled_histograms_still_correlate(self):
        left = {"9": 5, "10": 8, "20": 2}
        right = {"9": 50, "10": 80, "20": 20}
        assert activity_correlation(left, right) == pytest.approx(1.0)

    def test_disjoint_activity_is_clamped_to_zero(self):
        assert activity_correlation({"1": 10}, {"100": 10}) == 0.0

    def test_empty_histogram_is_undefined_and_scores_zero(self):
        assert activity_correlation({}, {"3": 4}) == 0.0
        assert activity_correlation(None, None) == 0.0

    def test_vector_ignores_out_of_range_and_malformed_keys(self):
        vector = histogram_vector({"0": 1, "167": 2, "168": 9, "-1": 9, "x": 9})
        assert len(vector) == HOURS_PER_WEEK
        assert vector[0] == 1.0
        assert vector[167] == 2.0
        assert sum(vector) == 3.0
