"""Job lifecycle events.

Subscribers register for one event name, optionally scoped to one queue.
Delivery is at-least-once and in-process; a subscriber that raises is
logged and never affects the job.
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from coursemedia.core.logging import log_error
from coursemedia.core.metrics import (
    JOB_DURATION_SECONDS,
    JOB_EVENTS_TOTAL,
)
from coursemedia.modules.job.models import Job

logger = logging.getLogger(__name__)

ENQUEUED = "enqueued"
ACTIVE = "active"
PROGRESS = "progress"
RETRYING = "retrying"
COMPLETED = "completed"
FAILED = "failed"
STALLED = "stalled"
CLEANED = "cleaned"

EVENT_NAMES = frozenset(
    (ENQUEUED, ACTIVE, PROGRESS, RETRYING, COMPLETED, FAILED, STALLED, CLEANED)
)


@dataclass
class JobEvent:
    """Something that happened to a job."""
    queue: str
    event: str
    job: Optional[Job] = None
    data: dict = field(default_factory=dict)


Subscriber = Callable[[JobEvent], Union[None, Awaitable[None]]]


class EventBus:
    """In-process publish/subscribe for job events."""

    def __init__(self):
        self._subscribers: dict[tuple[str, Optional[str]], list[Subscriber]] = {}

    def subscribe(
        self,
        event: str,
        handler: Subscriber,
        queue: Optional[str] = None,
    ) -> None:
        """Register a handler for an event, on one queue or on all queues."""
        if event not in EVENT_NAMES:
            raise ValueError(f"Unknown job event: {event}")
        handlers = self._subscribers.setdefault((event, queue), [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(
        self,
        event: str,
        handler: Subscriber,
        queue: Optional[str] = None,
    ) -> None:
        handlers = self._subscribers.get((event, queue), [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(
        self,
        queue: str,
        event: str,
        job: Optional[Job] = None,
        **data: Any,
    ) -> None:
        """Deliver an event to queue-scoped then global subscribers."""
        payload = JobEvent(queue=queue, event=event, job=job, data=data)
        handlers = (
            self._subscribers.get((event, queue), [])
            + self._subscribers.get((event, None), [])
        )
        for handler in list(handlers):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                log_error(
                    logger,
                    "Job event subscriber failed",
                    exception=e,
                    queue=queue,
                    event=event,
                    job_id=job.id if job else None,
                )


def record_job_metrics(event: JobEvent) -> None:
    """Feed Prometheus job counters from queue events."""
    JOB_EVENTS_TOTAL.labels(queue_name=event.queue, event=event.event).inc()
    job = event.job
    if event.event in (COMPLETED, FAILED) and job and job.processed_on and job.finished_on:
        JOB_DURATION_SECONDS.labels(
            queue_name=event.queue, outcome=event.event
        ).observe((job.finished_on - job.processed_on) / 1000)


def register_metrics(bus: EventBus) -> None:
    for name in EVENT_NAMES:
        bus.subscribe(name, record_job_metrics)
