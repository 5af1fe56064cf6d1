"""Batched page automation with replayable, viewport-independent playbooks."""

from .coords import to_absolute, to_relative
from .executor import BatchExecutor
from .schemas import (
    BatchExecutionResult,
    Operation,
    Plan,
    Playbook,
    PlaybookReference,
    RecordedOperation,
    RelativePosition,
    Verdict,
    Viewport,
)
from .settle import wait_for_settle
from .storage import PlaybookStore

__all__ = [
    "BatchExecutionResult",
    "BatchExecutor",
    "Operation",
    "Plan",
    "Playbook",
    "PlaybookReference",
    "PlaybookStore",
    "RecordedOperation",
    "RelativePosition",
    "Verdict",
    "Viewport",
    "to_absolute",
    "to_relative",
    "wait_for_settle",
]
