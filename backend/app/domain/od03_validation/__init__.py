"""OD-03 validation package."""

from .service import (
    PROCESS_OUTCOME,
    RECOVERY_ACTION,
    ProcessResult,
    Validator,
    retry_delay,
)

__all__ = [
    "PROCESS_OUTCOME",
    "RECOVERY_ACTION",
    "ProcessResult",
    "Validator",
    "retry_delay",
]
