"""
Storage error taxonomy.

Lookup misses are always distinguishable from store failures: a missing
record raises a RecordNotFoundError subclass, anything the database layer
throws is wrapped into StoreFailureError.
"""


class StoreFailureError(Exception):
    """Opaque persistence failure. Safe for the caller to retry."""
    pass


class RecordNotFoundError(LookupError):
    """Base class for lookup misses."""
    pass


class RuleNotFoundError(RecordNotFoundError):
    """Trading rule not found."""
    pass


class ExecutionNotFoundError(RecordNotFoundError):
    """Execution not found."""
    pass


class PortfolioNotFoundError(RecordNotFoundError):
    """Portfolio not found."""
    pass


class HoldingNotFoundError(RecordNotFoundError):
    """Portfolio holding not found."""
    pass


class MarketDataNotFoundError(RecordNotFoundError):
    """No market data observation for the requested symbol."""
    pass
