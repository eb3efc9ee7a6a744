from __future__ import annotations

import asyncio
import contextlib

from fastapi import APIRouter, Depends
from sse_starlette.sse import EventSourceResponse

from deepresearch.agent import ResearchAgent
from deepresearch.api.deps import get_agent
from deepresearch.errors import ResearchAgentError
from deepresearch.models.events import SSEEvent
from deepresearch.models.research import ProgressEvent, ResearchOptions
from deepresearch.models.schemas import ResearchRequest
from deepresearch.services import logger as log_service
from deepresearch.services import streaming

router = APIRouter(prefix="/api/research", tags=["research"])


@router.post("/stream")
async def stream_research(request: ResearchRequest, agent: ResearchAgent = Depends(get_agent)):
    """Run one research session and stream its progress over SSE."""
    queue: asyncio.Queue[SSEEvent | None] = asyncio.Queue()
    cancel_event = asyncio.Event()

    def on_progress(event: ProgressEvent) -> None:
        queue.put_nowait(streaming.progress(event))

    options = ResearchOptions(
        depth=request.depth,
        on_progress=on_progress,
        cancel_event=cancel_event,
        allow_partial_results=request.allow_partial_results,
        enable_cost_tracking=request.enable_cost_tracking,
    )

    async def run_session() -> None:
        try:
            result = await agent.research(request.query, options)
            queue.put_nowait(streaming.research_complete(result))
        except ResearchAgentError as exc:
            log_service.log_event(
                event_type="research_failed",
                message=exc.message,
                code=exc.code,
                query=request.query[:100],
            )
            queue.put_nowait(streaming.error(exc.message, exc.code))
        except Exception as exc:
            log_service.log_event(
                event_type="stream_error",
                message="Unhandled error in research stream",
                error=str(exc),
                query=request.query[:100],
            )
            queue.put_nowait(streaming.error("Research stream failed unexpectedly."))
        finally:
            queue.put_nowait(None)

    async def event_generator():
        task = asyncio.create_task(run_session())
        try:
            depth = request.depth or agent.config.depth
            yield streaming.research_started(request.query, depth.value).to_message()
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event.to_message()
        finally:
            if not task.done():
                # Client went away; stop at the next step boundary.
                cancel_event.set()
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await agent.aclose()

    return EventSourceResponse(event_generator())
