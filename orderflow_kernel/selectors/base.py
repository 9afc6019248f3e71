"""
Module: orderflow_kernel.selectors.base
Responsibility: Abstract base class for read-only query selectors.
Architecture position: Kernel > Selectors.  May import from db/, domain/ DTOs
    and models/.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only access: selectors never add, delete, flush or commit.
    - Selectors return DTOs or plain values, not ORM instances.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseSelector(ABC):
    """Holds the caller's session; subclasses implement the queries."""

    def __init__(self, session: Session):
        self.session = session
