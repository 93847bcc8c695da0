"""Key and channel naming for the shared store."""

from __future__ import annotations


class QueueKeys:
    """Formats for every key the control plane writes to the shared store."""

    DEVICE_QUEUE = "device_instruction_queue:{code}"
    DEVICE_NOTIFY = "device_poll_notify:{code}"
    DEVICE_ONLINE = "device_online:{code}"
    DEVICE_HEARTBEAT = "device_last_heartbeat:{code}"
    DEVICE_METRICS = "device_metrics:{code}"
    INSTRUCTION_STATUS = "instruction_status:{instruction_id}"
    TASK_INSTRUCTIONS = "task_instructions:{task_id}"
    TASK_DISPATCH_LOCK = "task_dispatch:{task_id}"
    INSTRUCTION_REPORT_LOCK = "instruction_report:{code}:{instruction_id}"

    NOTIFY_MESSAGE = "new_instruction"

    @classmethod
    def device_queue(cls, code: str) -> str:
        return cls.DEVICE_QUEUE.format(code=code)

    @classmethod
    def device_notify(cls, code: str) -> str:
        return cls.DEVICE_NOTIFY.format(code=code)

    @classmethod
    def device_online(cls, code: str) -> str:
        return cls.DEVICE_ONLINE.format(code=code)

    @classmethod
    def device_heartbeat(cls, code: str) -> str:
        return cls.DEVICE_HEARTBEAT.format(code=code)

    @classmethod
    def device_metrics(cls, code: str) -> str:
        return cls.DEVICE_METRICS.format(code=code)

    @classmethod
    def instruction_status(cls, instruction_id: str) -> str:
        return cls.INSTRUCTION_STATUS.format(instruction_id=instruction_id)

    @classmethod
    def task_instructions(cls, task_id: str) -> str:
        return cls.TASK_INSTRUCTIONS.format(task_id=task_id)

    @classmethod
    def task_dispatch_lock(cls, task_id: str) -> str:
        return cls.TASK_DISPATCH_LOCK.format(task_id=task_id)

    @classmethod
    def instruction_report_lock(cls, code: str, instruction_id: str) -> str:
        return cls.INSTRUCTION_REPORT_LOCK.format(code=code, instruction_id=instruction_id)

    @classmethod
    def device_keys(cls, code: str) -> list[str]:
        """All per-device keys, used when a device is cleared."""
        return [
            cls.device_queue(code),
            cls.device_online(code),
            cls.device_heartbeat(code),
            cls.device_metrics(code),
        ]
