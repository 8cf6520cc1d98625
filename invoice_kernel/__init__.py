"""
Invoice Kernel - workshop invoice edit core

Mutates saved invoices while keeping parts inventory in step:
- Optimistic concurrency on a monotonic invoice version
- Atomic invoice + stock + audit batches
- Append-only audit trail
- Explicit half-even rounding for money
"""

__version__ = "0.1.0"
