"""
Custom exception hierarchy for the position ladder service.

Hierarchy:

    PositionLadderError (base)
    ├── OperationalError         - transient, retried next cycle/tick
    │   ├── TransientGatewayError - network or API failure
    │   └── ConcurrencyConflict   - version mismatch on save
    ├── DataError                - bad data, skip the position, continue
    │   ├── ValidationError       - malformed record (missing targets/stop)
    │   ├── IdentityInconsistency - live quantity with no position id
    │   └── OrderRejectedError    - venue rejected the order
    │       └── ExpectedRejection - duplicate / limit exceeded
    └── InvariantError           - allocation invariant violated

Rules:
    - OperationalError: catch, log, leave state untouched, try again next cycle.
    - DataError: catch, log, skip this position, continue the loop.
    - InvariantError: surfaced in the tick report for the position; never
      silently corrected without a log line.
    - Everything else (AttributeError, TypeError, etc.) is a bug. It is still
      contained at the position boundary so one record cannot stop the cycle.
"""


class PositionLadderError(Exception):
    """Base exception for all position ladder errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(PositionLadderError):
    """Transient error: exchange API, network, storage contention."""
    pass


class TransientGatewayError(OperationalError):
    """Exchange call failed (network error, HTTP error or non-zero API code).

    Treatment: no retry within the tick; retried naturally next cycle.
    """

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.code = code


class ConcurrencyConflict(OperationalError):
    """Position record changed between read and write (version mismatch).

    Treatment: re-read and re-apply the mutation. Never overwrite.
    """

    def __init__(self, key, expected_version: int):
        super().__init__(f"Version conflict on {key}: expected version {expected_version}")
        self.key = key
        self.expected_version = expected_version


# ============ DATA (bad input, skip position) ============

class DataError(PositionLadderError):
    """Bad data for one position. Skip it, continue with the others."""
    pass


class ValidationError(DataError):
    """Raised when a position record is malformed (missing targets or stop-loss)."""
    pass


class IdentityInconsistency(DataError):
    """Exchange reports quantity for a position it cannot identify."""
    pass


class OrderRejectedError(DataError):
    """Venue rejected an order (business rule, not transport)."""

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.code = code


class ExpectedRejection(OrderRejectedError):
    """Duplicate or limit-exceeded rejection; success-equivalent for ladder levels."""
    pass


# ============ INVARIANT ============

class InvariantError(PositionLadderError):
    """Allocation invariant violated (allocated quantity above held quantity)."""
    pass
