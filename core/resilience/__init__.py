"""
Fault tolerance primitives for the sync engine.

- DeadLetterQueue: capture work items that cannot succeed
- ProcessedCache: skip pages processed moments ago
"""
from core.resilience.dlq import (
    DeadLetter,
    DeadLetterQueue,
    DLQStatus,
)
from core.resilience.idempotency import (
    ProcessedCache,
    ProcessedRecord,
    generate_processing_key,
)

__all__ = [
    # DLQ
    "DeadLetter",
    "DeadLetterQueue",
    "DLQStatus",
    # Processed cache
    "ProcessedCache",
    "ProcessedRecord",
    "generate_processing_key",
]
