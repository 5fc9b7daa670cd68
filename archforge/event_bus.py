"""
ArchForge Event Bus

Synchronous fan-out of step lifecycle events. One bus per run; the
executor emits, the audit logger (and tests) subscribe.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

from loguru import logger
from pydantic import BaseModel, Field

STEP_STARTED = "step.started"
STEP_SUCCEEDED = "step.succeeded"
STEP_FAILED = "step.failed"

EventType = Literal["step.started", "step.succeeded", "step.failed"]


class ForgeEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: EventType
    source: str
    task_id: Optional[str] = None
    step_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


Subscriber = Callable[[ForgeEvent], None]


class EventBus:
    """A lightweight, synchronous event bus. Create one per run and pass it along."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> None:
        self._subscribers.append(callback)

    def emit(
        self,
        event_type: EventType,
        source: str,
        payload: Optional[Dict[str, Any]] = None,
        task_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> ForgeEvent:
        """Build a ForgeEvent and hand it to every subscriber in order."""
        event = ForgeEvent(
            event_type=event_type,
            source=source,
            task_id=task_id,
            step_id=step_id,
            payload=payload or {},
        )

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # a broken audit sink must not stop the run
                logger.warning(f"[EVENTS] Subscriber failed on {event_type} {step_id or ''}: {e}")

        return event
