"""Polling loop backends that drive reconciliation ticks."""

from jobcontroller.scheduling.protocol import BackendHealth, SchedulerBackend, TickCallback
from jobcontroller.scheduling.thread_backend import ThreadSchedulerBackend

__all__ = [
    "BackendHealth",
    "SchedulerBackend",
    "ThreadSchedulerBackend",
    "TickCallback",
]
