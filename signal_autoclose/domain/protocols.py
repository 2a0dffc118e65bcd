"""
Domain protocols (interfaces) for dependency inversion.

These define the contracts the engine consumes from its collaborators:
notification transports, the task substrate and the clock.
"""
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable
from datetime import datetime

from signal_autoclose.domain.models import ExpirationNotification


Clock = Callable[[], datetime]


@runtime_checkable
class NotificationTransport(Protocol):
    """
    Delivers one notification over one channel.

    Must raise on failure; returning normally means delivered.
    """

    def send(self, notification: ExpirationNotification) -> None: ...


@runtime_checkable
class TaskHandle(Protocol):
    id: str
    name: str


@runtime_checkable
class TaskQueue(Protocol):
    """
    Task substrate the engine enqueues named payloads on.

    Implemented in-process by signal_autoclose.tasks.queue.InMemoryTaskQueue.
    """

    def add(self, name: str, data: Optional[Dict[str, Any]] = None) -> TaskHandle: ...

    def get_job(self, job_id: str) -> Optional[TaskHandle]: ...
