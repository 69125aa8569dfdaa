class AuditError(Exception):
    """Base class for failures that stop an audit run."""


class StructuralInvariantViolation(AuditError):
    """A pool's tick list cannot be turned into closed liquidity intervals."""

    def __init__(self, pool, reason: str):
        self.pool = pool
        self.reason = reason
        super().__init__(f"pool={pool} reason={reason}")


class SnapshotError(AuditError, ValueError):
    """Snapshot file is missing fields or holds values of the wrong shape."""


class ReserveArithmeticError(ArithmeticError):
    """Fixed-point reserve math left the range the pool computes in."""


class InvalidPriceBound(ReserveArithmeticError):
    """A sqrt price bound was zero or negative."""
