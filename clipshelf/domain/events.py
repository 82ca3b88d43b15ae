"""Domain events for the import pipeline.

Events flow through the EventBus, decoupling the orchestrator from whatever
renders progress (CLI progress bar, a desktop shell, a test recorder).

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from typing import Optional
from pydantic import BaseModel, Field
from .models import ImportStage, TaskStatus


class Event(BaseModel):
    """Base class for all domain events.

    Events are validated Pydantic models. They are not frozen by default.
    """

    pass


class ImportProgress(Event):
    """Emitted on every stage transition and on every tool progress update."""

    task_id: str
    stage: ImportStage
    percent: float = Field(ge=0.0, le=100.0)
    status: TaskStatus
    message: Optional[str] = None


class ImportCompleted(Event):
    """Emitted once the catalog row for a task has been written."""

    task_id: str
    video_id: int


class ImportFailed(Event):
    """Emitted when a task ends in the ERROR stage (including cancellation)."""

    task_id: str
    stage: ImportStage
    error_message: str
    cancelled: bool = False
