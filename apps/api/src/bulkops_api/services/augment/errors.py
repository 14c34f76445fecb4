from __future__ import annotations


class AugmentError(RuntimeError):
    pass


class JobValidationError(AugmentError):
    """Submission rejected before any item was touched."""

    def __init__(self, message: str, *, cap: int | None = None, received_count: int | None = None) -> None:
        super().__init__(message)
        self.cap = cap
        self.received_count = received_count


class ItemTransformError(AugmentError):
    """One item could not be augmented; recorded and the job carries on."""


class ProviderThrottled(AugmentError):
    """The generation service reported a rate limit or exhausted quota."""

    def __init__(self, message: str, *, status_code: int, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class FatalJobError(AugmentError):
    """Aborts the remaining items of a job."""


class UnknownOperationError(FatalJobError):
    def __init__(self, operation_type: str) -> None:
        super().__init__(f"Unknown operation type: {operation_type}")
        self.operation_type = operation_type
