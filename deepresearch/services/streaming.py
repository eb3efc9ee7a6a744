from __future__ import annotations

from typing import Any

from deepresearch.models.events import EventType, SSEEvent
from deepresearch.models.research import ProgressEvent, ResearchResult


def research_started(query: str, depth: str) -> SSEEvent:
    return SSEEvent(event=EventType.RESEARCH_STARTED, data={"query": query, "depth": depth})


def progress(event: ProgressEvent) -> SSEEvent:
    return SSEEvent(
        event=EventType.PROGRESS,
        data={
            "stage": event.stage.value,
            "message": event.message,
            "progress": event.progress,
            "details": event.details,
        },
    )


def research_complete(result: ResearchResult) -> SSEEvent:
    return SSEEvent(
        event=EventType.RESEARCH_COMPLETE,
        data={"report": result.report, "metadata": result.metadata.to_dict()},
    )


def error(message: str, code: str | None = None) -> SSEEvent:
    data: dict[str, Any] = {"message": message}
    if code:
        data["code"] = code
    return SSEEvent(event=EventType.ERROR, data=data)
