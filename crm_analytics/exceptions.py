"""
Custom exception hierarchy for analytics operations.

Exception Hierarchy:
    AnalyticsError (base)
    ├── NotFoundError    - Customer/product does not exist
    └── UpstreamError    - Data store failed (query error, connection lost)

    ValidationError      - Malformed filter or parameter
"""


class AnalyticsError(Exception):
    """Base exception for all analytics-related errors."""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class NotFoundError(AnalyticsError):
    """
    Requested entity does not exist.

    Single-item read paths propagate this unchanged.
    """

    def __init__(self, entity: str, entity_id: int, details: str = None):
        super().__init__(f"{entity.capitalize()} not found", details)
        self.entity = entity
        self.entity_id = entity_id

    def __str__(self) -> str:
        base = f"{self.message} (id={self.entity_id})"
        if self.details:
            return f"{base}: {self.details}"
        return base


class UpstreamError(AnalyticsError):
    """
    Data store call failed.

    Wraps the driver exception so callers never depend on DuckDB types.
    """

    def __init__(self, message: str, details: str = None, operation: str = None):
        super().__init__(message, details)
        self.operation = operation


class ValidationError(Exception):
    """
    Input validation failed.

    Used for validating caller input before processing.
    """

    def __init__(self, field: str, message: str, value: any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.field}: {self.message} (got: {self.value!r})"
        return f"{self.field}: {self.message}"
