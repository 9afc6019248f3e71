"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Common constructor and session contract for every workflow service.
    Services receive a SQLAlchemy ``Session`` and use ``session.flush()``
    -- never ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit.  Multi-row mutations run inside
      ``session.begin_nested()`` so a failure rolls back the whole unit
      and nothing else.  The caller (WorkflowEngine or a test) owns
      commit/rollback.
"""

from abc import ABC

from sqlalchemy.orm import Session

from orderflow_kernel.domain.clock import Clock, SystemClock
from orderflow_kernel.services.notifications import NotificationOutbox


class BaseService(ABC):
    """
    Abstract base class for all kernel services.

    Args:
        session: SQLAlchemy session for database operations.
        clock: Time source; defaults to SystemClock.
        outbox: Where notifications are queued until the caller commits.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        outbox: NotificationOutbox | None = None,
    ):
        self.session = session
        self.clock = clock or SystemClock()
        self.outbox = outbox if outbox is not None else NotificationOutbox()
