"""
Module: orderflow_kernel.db.types
Responsibility: Annotated type aliases and helpers for weight and quantity
    columns, so every model and service uses identical definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats for weights, quantities or costs.  Everything is Decimal
      with WEIGHT_DECIMAL_PLACES of scale.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated

from sqlalchemy import Numeric, String

# Physical weight / stock quantity
Weight = Annotated[Decimal, Numeric(38, 9)]

# Unit cost of a stock lot
Cost = Annotated[Decimal, Numeric(38, 9)]

# SHA-256 hash as hex string (64 characters)
PayloadHash = Annotated[str, String(64)]

# Short identifier strings (statuses, roles, categories)
ShortCode = Annotated[str, String(50)]

# Long text for reasons and notes
LongText = Annotated[str, String(4000)]

WEIGHT_DECIMAL_PLACES = 3
DEFAULT_ROUNDING = ROUND_HALF_UP

_ZERO = Decimal("0")


def to_weight(value: Decimal | int | str) -> Decimal:
    """
    Coerce an incoming weight to Decimal without rounding.

    Floats are rejected: a float has already lost precision by the time it
    reaches the kernel.
    """
    if isinstance(value, float):
        raise TypeError("Weights must be Decimal, int or str, not float")
    if isinstance(value, Decimal):
        return value
    return Decimal(value)


def round_weight(value: Decimal) -> Decimal:
    """Round a weight to WEIGHT_DECIMAL_PLACES for presentation and storage."""
    return value.quantize(
        Decimal(1).scaleb(-WEIGHT_DECIMAL_PLACES), rounding=DEFAULT_ROUNDING
    )


def is_positive(value: Decimal) -> bool:
    return value > _ZERO
