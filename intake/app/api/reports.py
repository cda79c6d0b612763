"""Report submission endpoint.

Accepts a JSON report, assigns it an event_id and hands it to the producer.
The client gets 202 as soon as the report is on the queue; persistence
happens asynchronously in the workers.
"""

from typing import Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from intake.app.core.logging import get_log_context, get_logger
from intake.app.exceptions import IntakeException
from intake.app.queue.models import Category, ContactType, ReportType, WorkItem
from intake.app.queue.producer import Producer

logger = get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["reports"])

MAX_IMAGES = 5


class ReportRequest(BaseModel):
    site_id: str = Field(..., min_length=1, max_length=253)
    report_type: ReportType = ReportType.BUG
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=5000)
    category: Category
    page_url: Optional[str] = Field(None, max_length=2048)
    contact_type: Optional[ContactType] = None
    contact_value: Optional[str] = Field(None, max_length=200)
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    image_urls: list[str] = Field(default_factory=list, max_length=MAX_IMAGES)

    @field_validator("site_id", "title", "description")
    @classmethod
    def strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("field cannot be empty")
        return v


class ReportAccepted(BaseModel):
    event_id: str
    queued: bool = True


def get_producer(request: Request) -> Producer:
    return request.app.state.producer


@router.post(
    "/reports",
    response_model=ReportAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    responses={503: {"description": "Queue unavailable, retry later"}},
)
async def create_report(data: ReportRequest, request: Request):
    item = WorkItem.new(
        site_id=data.site_id,
        report_type=data.report_type.value,
        title=data.title,
        description=data.description,
        category=data.category.value,
        page_url=data.page_url,
        contact_type=data.contact_type.value if data.contact_type else None,
        contact_value=data.contact_value,
        first_name=data.first_name,
        last_name=data.last_name,
        image_urls=data.image_urls,
    )

    try:
        await get_producer(request).enqueue(item)
    except IntakeException as e:
        logger.error(
            f"Enqueue failed: {e}",
            extra=get_log_context(event_id=item.event_id, site_id=item.site_id),
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": "service temporarily unavailable", "code": "QUEUE_ERROR"},
        )

    return ReportAccepted(event_id=item.event_id)
