"""
Aggregation Errors

Error taxonomy shared by the registry, engine, store and coordinator.
"""

from typing import Optional


class AggregationError(Exception):
    """Base class for aggregate engine errors"""

    def __init__(self, message: str, spec_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.spec_id = spec_id

    def __str__(self) -> str:
        if self.spec_id:
            return f"[{self.spec_id}] {self.message}"
        return self.message


class InvalidSpecError(AggregationError):
    """The aggregate definition cannot be materialized as written"""


class ComputeError(AggregationError):
    """Source query failed or returned unusable data; retrying may succeed"""


class NotFoundError(AggregationError):
    """Unknown spec or no artifact materialized yet"""


class PersistenceError(AggregationError):
    """The artifact backend could not read or write state"""
