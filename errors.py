"""
Pricing core exceptions.

NoCoverage is deliberately absent: a missing rate is a normal result value
(see pricing_engine.NoCoverage), not an error.
"""


class PricingEngineError(Exception):
    """Base exception for pricing core errors"""
    pass


class ValidationError(PricingEngineError):
    """Malformed input. Nothing is persisted."""
    pass


class DataInconsistencyError(PricingEngineError):
    """More than one active rate period covers a single key/date."""

    def __init__(self, key, on_date, period_ids):
        self.key = key
        self.on_date = on_date
        self.period_ids = list(period_ids)
        super().__init__(
            f"{len(self.period_ids)} active rate periods cover {on_date} for key {key}: "
            f"{', '.join(str(pid) for pid in self.period_ids)}"
        )


class ConcurrencyConflictError(PricingEngineError):
    """Overlapping periods changed between read and write of an insert."""
    pass


class SnapshotIntegrityError(PricingEngineError):
    """A snapshot pass failed partway and was rolled back."""
    pass
