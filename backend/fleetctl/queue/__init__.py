"""Per-device instruction queues with long-poll delivery."""

from fleetctl.queue.instruction import (
    EXECUTE_PRIORITY,
    ROUTINE_PRIORITY,
    URGENT_PRIORITY,
    Instruction,
    InstructionType,
)
from fleetctl.queue.service import InstructionQueue
from fleetctl.queue.status import InstructionStatus, InstructionStatusStore

__all__ = [
    "EXECUTE_PRIORITY",
    "ROUTINE_PRIORITY",
    "URGENT_PRIORITY",
    "Instruction",
    "InstructionType",
    "InstructionQueue",
    "InstructionStatus",
    "InstructionStatusStore",
]
