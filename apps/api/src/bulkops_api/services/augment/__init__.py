from bulkops_api.services.augment.errors import (
    FatalJobError,
    ItemTransformError,
    JobValidationError,
    ProviderThrottled,
    UnknownOperationError,
)
from bulkops_api.services.augment.executor import BatchExecutor, build_executor, split_batches
from bulkops_api.services.augment.progress import InMemoryProgress, JobRowProgress
from bulkops_api.services.augment.types import ItemOutcome, JobProgress

__all__ = [
    "BatchExecutor",
    "FatalJobError",
    "InMemoryProgress",
    "ItemOutcome",
    "ItemTransformError",
    "JobProgress",
    "JobRowProgress",
    "JobValidationError",
    "ProviderThrottled",
    "UnknownOperationError",
    "build_executor",
    "split_batches",
]
