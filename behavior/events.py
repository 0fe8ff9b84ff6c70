"""
Structured planner events.

Decision points in the planner emit a PlannerEvent through a sink callable
instead of printing. The default sink writes them to the log.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

STATE_TRANSITION = "state_transition"
LANE_CHANGE_ABORT = "lane_change_abort"
COLLISION_WARNING_RAISED = "collision_warning_raised"
COLLISION_WARNING_CLEARED = "collision_warning_cleared"
NEW_LAP = "new_lap"


@dataclass
class PlannerEvent:
    kind: str
    s: float
    data: Dict[str, Any] = field(default_factory=dict)


EventSink = Callable[[PlannerEvent], None]


def log_event(event: PlannerEvent) -> None:
    """Default sink."""
    details = " ".join(f"{key}={value}" for key, value in event.data.items())
    logger.info("[%s] s=%.1f %s", event.kind, event.s, details)


class EventRecorder:
    """Sink that keeps events in memory, optionally forwarding them."""

    def __init__(self, forward: Optional[EventSink] = None) -> None:
        self.events: List[PlannerEvent] = []
        self.forward = forward

    def __call__(self, event: PlannerEvent) -> None:
        self.events.append(event)
        if self.forward is not None:
            self.forward(event)

    def kinds(self) -> List[str]:
        return [event.kind for event in self.events]

    def clear(self) -> None:
        self.events.clear()
