"""Read-only queue depth endpoint for operators."""

from fastapi import APIRouter, Request
from pydantic import BaseModel

router = APIRouter(prefix="/v1/queue", tags=["queue"])


class QueueStats(BaseModel):
    queue_length: int
    dead_letter_length: int


@router.get("/stats", response_model=QueueStats)
async def queue_stats(request: Request) -> QueueStats:
    """Current lengths of the main and dead-letter lists.

    Store errors propagate to the IntakeException handler as a 503.
    """
    queue = request.app.state.queue
    return QueueStats(
        queue_length=await queue.queue_length(),
        dead_letter_length=await queue.dead_letter_length(),
    )
