"""
Weight balance -- the guard between physical reality and the ledger.

Responsibility:
    Pure check that the outputs and waste of a sorting/cutting operation
    account for the original weight within a relative tolerance.

Architecture position:
    Kernel > Domain -- pure function, zero I/O.

Invariants enforced:
    - |original - (sum(outputs) + waste)| <= original * tolerance_percent / 100
    - Mismatches are reported, never clamped.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence

_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class WeightBalanceCheck:
    """Outcome of a balance check."""

    original_weight: Decimal
    total_output: Decimal
    waste_weight: Decimal
    difference: Decimal
    allowed_difference: Decimal

    @property
    def total_accounted(self) -> Decimal:
        return self.total_output + self.waste_weight

    @property
    def balanced(self) -> bool:
        return self.difference <= self.allowed_difference


def allowed_difference(reference: Decimal, tolerance_percent: Decimal) -> Decimal:
    """Absolute tolerance for ``reference`` at ``tolerance_percent``."""
    return abs(reference) * tolerance_percent / _HUNDRED


def check_weight_balance(
    original_weight: Decimal,
    output_weights: Sequence[Decimal],
    waste_weight: Decimal,
    tolerance_percent: Decimal,
) -> WeightBalanceCheck:
    """
    Compare the original weight against outputs plus waste.

    >>> check_weight_balance(Decimal(100), [Decimal(60), Decimal(30)],
    ...                      Decimal(10), Decimal("0.5")).balanced
    True
    """
    total_output = sum(output_weights, Decimal("0"))
    difference = abs(original_weight - (total_output + waste_weight))
    return WeightBalanceCheck(
        original_weight=original_weight,
        total_output=total_output,
        waste_weight=waste_weight,
        difference=difference,
        allowed_difference=allowed_difference(original_weight, tolerance_percent),
    )


def within_tolerance(
    measured: Decimal, expected: Decimal, tolerance_percent: Decimal
) -> bool:
    """True when ``measured`` is within tolerance of ``expected``."""
    return abs(measured - expected) <= allowed_difference(expected, tolerance_percent)
