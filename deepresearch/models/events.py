from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    RESEARCH_STARTED = "research_started"
    PROGRESS = "progress"
    RESEARCH_COMPLETE = "research_complete"
    ERROR = "error"


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def format(self) -> str:
        return f"event: {self.event.value}\ndata: {json.dumps(self.data)}\n\n"

    def to_message(self) -> dict[str, str]:
        """Shape expected by ``sse_starlette.EventSourceResponse``."""
        return {"event": self.event.value, "data": json.dumps(self.data, default=str)}
