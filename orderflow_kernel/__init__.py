"""
Orderflow Kernel

The transactional core of the order stage workflow:
- Stock reservation ledger with row-level locking
- Material selection (auto first-fit or manual)
- Sorting/cutting weight balance validation
- Sequential multi-level weight transfer approval
- Order stage state machine with append-only history
"""

__version__ = "0.1.0"
