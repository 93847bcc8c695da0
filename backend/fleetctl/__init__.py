"""Fleet control plane: device instruction queues, presence, and task orchestration."""
