# services/protocol/flow_steps.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from services.api.logging_config import get_logger

logger = get_logger("flow")


class FlowStep(str, Enum):
    SYNC = "sync"
    PROVE = "prove"
    VERIFY = "verify"
    CHUNKS = "chunks"
    AUTHORIZE = "authorize"
    SUBMIT = "submit"
    CONFIRM = "confirm"
    COMMIT = "commit"


class StepStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class StepEvent:
    flow: str
    step: FlowStep
    status: StepStatus
    message: Optional[str] = None


StepObserver = Callable[[StepEvent], None]


@dataclass
class FlowProgress:
    """Latest status per step; usable directly as an observer."""

    statuses: Dict[FlowStep, StepStatus] = field(default_factory=dict)
    events: List[StepEvent] = field(default_factory=list)

    def __call__(self, event: StepEvent) -> None:
        self.events.append(event)
        self.statuses[event.step] = event.status

    def status(self, step: FlowStep) -> StepStatus:
        return self.statuses.get(step, StepStatus.IDLE)


class StepTracker:
    """Emits StepEvents around one flow's steps."""

    def __init__(self, flow: str, observers: Optional[List[StepObserver]] = None):
        self.flow = flow
        self.observers = list(observers or [])

    def emit(self, step: FlowStep, status: StepStatus, message: Optional[str] = None) -> None:
        event = StepEvent(self.flow, step, status, message)
        if status == StepStatus.ERROR:
            logger.warning("[%s] %s failed: %s", self.flow, step.value, message)
        else:
            logger.info("[%s] %s %s", self.flow, step.value, status.value)
        for observer in self.observers:
            observer(event)

    def step(self, step: FlowStep) -> "_StepContext":
        return _StepContext(self, step)


class _StepContext:
    def __init__(self, tracker: StepTracker, step: FlowStep):
        self.tracker = tracker
        self.step = step

    def __enter__(self) -> "_StepContext":
        self.tracker.emit(self.step, StepStatus.RUNNING)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc is None:
            self.tracker.emit(self.step, StepStatus.SUCCESS)
        else:
            self.tracker.emit(self.step, StepStatus.ERROR, str(exc) or exc_type.__name__)
        return False
