import pytest

from shift_settlement.services.variance_service import VarianceRecord, detect_variance, resolve_actual_count


class TestDetectVariance:

    def test_equal_counts_have_no_variance(self):
        assert detect_variance(15, 15) is None

    def test_shortage_is_negative(self):
        assert detect_variance(50, 48) == VarianceRecord(expected=50, actual=48, difference=-2)

    def test_surplus_is_positive(self):
        assert detect_variance(10, 13).difference == 3

    @pytest.mark.parametrize("expected,actual", [(0, 1), (1, 0), (999, 0), (7, 700)])
    def test_difference_is_actual_minus_expected(self, expected, actual):
        record = detect_variance(expected, actual)
        assert record.difference == actual - expected
        assert record.difference != 0


class TestResolveActualCount:

    def test_tracked_count_wins(self):
        assert resolve_actual_count(50, 48) == 48

    @pytest.mark.parametrize("tracked", [None, 0])
    def test_untracked_falls_back_to_expected(self, tracked):
        assert resolve_actual_count(15, tracked) == 15

    def test_fallback_hides_zero_sales_shortage(self):
        # A pack with no tracked sales never reports a variance, even when
        # the serial range says tickets left the pack.
        actual = resolve_actual_count(15, 0)
        assert detect_variance(15, actual) is None
