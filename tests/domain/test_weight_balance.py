"""
Tests for the weight balance rule and processing input validation.

The balance rule: |original - (sum(outputs) + waste)| <= original * tol / 100.
"""

from decimal import Decimal

import pytest

from orderflow_kernel.domain.weights import (
    allowed_difference,
    check_weight_balance,
    within_tolerance,
)
from orderflow_kernel.exceptions import InvalidProcessingDataError
from orderflow_kernel.services.sorting_processor import validate_processing_weights

D = Decimal
TOLERANCE = D("0.5")


class TestCheckWeightBalance:
    """Balance check at the default 0.5% tolerance."""

    def test_exact_split_with_waste_passes(self):
        check = check_weight_balance(D("100"), [D("60"), D("30")], D("10"), TOLERANCE)
        assert check.balanced
        assert check.total_output == D("90")
        assert check.total_accounted == D("100")
        assert check.difference == D("0")

    def test_missing_five_kilos_fails(self):
        check = check_weight_balance(D("100"), [D("60"), D("30")], D("5"), TOLERANCE)
        assert not check.balanced
        assert check.difference == D("5")
        assert check.allowed_difference == D("0.5")

    def test_difference_at_the_boundary_passes(self):
        check = check_weight_balance(D("100"), [D("99.5")], D("0"), TOLERANCE)
        assert check.balanced

    def test_difference_just_over_the_boundary_fails(self):
        check = check_weight_balance(D("100"), [D("99.49")], D("0"), TOLERANCE)
        assert not check.balanced

    def test_excess_output_is_also_a_mismatch(self):
        check = check_weight_balance(D("100"), [D("70"), D("40")], D("0"), TOLERANCE)
        assert not check.balanced
        assert check.difference == D("10")

    def test_zero_tolerance_requires_exact_balance(self):
        assert check_weight_balance(D("50"), [D("50")], D("0"), D("0")).balanced
        assert not check_weight_balance(D("50"), [D("49.999")], D("0"), D("0")).balanced

    def test_configurable_tolerance(self):
        check = check_weight_balance(D("100"), [D("60"), D("30")], D("5"), D("5"))
        assert check.balanced


class TestTolerance:
    def test_allowed_difference_scales_with_reference(self):
        assert allowed_difference(D("200"), TOLERANCE) == D("1")

    def test_within_tolerance(self):
        assert within_tolerance(D("100.4"), D("100"), TOLERANCE)
        assert not within_tolerance(D("101"), D("100"), TOLERANCE)


class TestValidateProcessingWeights:
    """Shape checks that run before the balance check."""

    def test_valid_input_passes(self):
        validate_processing_weights(D("100"), [D("60"), D("30")], D("10"), "trim")

    def test_zero_waste_needs_no_reason(self):
        validate_processing_weights(D("100"), [D("100")], D("0"), None)

    def test_float_rejected(self):
        with pytest.raises(InvalidProcessingDataError) as exc_info:
            validate_processing_weights(100.0, [D("100")], D("0"), None)
        assert exc_info.value.field == "original_weight"

    def test_float_output_rejected(self):
        with pytest.raises(InvalidProcessingDataError):
            validate_processing_weights(D("100"), [D("60"), 40.0], D("0"), None)

    @pytest.mark.parametrize("original", [D("0"), D("-1")])
    def test_non_positive_original_rejected(self, original):
        with pytest.raises(InvalidProcessingDataError):
            validate_processing_weights(original, [D("1")], D("0"), None)

    def test_no_outputs_rejected(self):
        with pytest.raises(InvalidProcessingDataError) as exc_info:
            validate_processing_weights(D("100"), [], D("0"), None)
        assert exc_info.value.field == "output_weights"

    def test_negative_output_rejected(self):
        with pytest.raises(InvalidProcessingDataError) as exc_info:
            validate_processing_weights(D("100"), [D("110"), D("-10")], D("0"), None)
        assert exc_info.value.field == "output_weights[1]"

    def test_all_zero_outputs_rejected(self):
        with pytest.raises(InvalidProcessingDataError):
            validate_processing_weights(D("100"), [D("0"), D("0")], D("100"), "scrap")

    def test_negative_waste_rejected(self):
        with pytest.raises(InvalidProcessingDataError) as exc_info:
            validate_processing_weights(D("100"), [D("100")], D("-1"), "x")
        assert exc_info.value.field == "waste_weight"

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_waste_without_reason_rejected(self, reason):
        with pytest.raises(InvalidProcessingDataError) as exc_info:
            validate_processing_weights(D("100"), [D("90")], D("10"), reason)
        assert exc_info.value.field == "waste_reason"
