"""Shared-store adapters and persistent record storage."""

from fleetctl.storage.adapter import StorageAdapter, Subscription
from fleetctl.storage.keys import QueueKeys
from fleetctl.storage.memory import InMemoryStorageAdapter

__all__ = ["StorageAdapter", "Subscription", "QueueKeys", "InMemoryStorageAdapter"]
