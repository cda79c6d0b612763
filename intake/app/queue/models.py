"""Work item model and its queue wire format."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_core import PydanticSerializationError

from intake.app.exceptions import SerializationError


class Category(str, Enum):
    DESIGN = "design"
    FUNCTIONALITY = "functionality"
    PERFORMANCE = "performance"
    CONTENT = "content"
    MOBILE = "mobile"
    SECURITY = "security"
    OTHER = "other"


class ReportType(str, Enum):
    BUG = "bug"
    REQUEST = "request"


class ContactType(str, Enum):
    PHONE = "phone"
    EMAIL = "email"
    TELEGRAM = "telegram"
    INSTAGRAM = "instagram"


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with second precision, e.g. 2026-10-19T08:15:00Z."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class WorkItem(BaseModel):
    """A submitted report travelling through the queue.

    Serialized as JSON. Null optional fields are omitted on the wire and
    unknown fields are ignored on read, so older workers keep consuming
    items produced by newer API instances.

    Attributes:
        event_id: Globally unique id, generated once at admission
        retry_count: Number of failed persistence attempts so far
    """

    model_config = ConfigDict(extra="ignore")

    event_id: str
    site_id: str
    report_type: str = ReportType.BUG.value
    title: str
    description: str
    category: str
    page_url: Optional[str] = None
    contact_type: Optional[str] = None
    contact_value: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    image_urls: list[str] = Field(default_factory=list)
    received_at: str
    retry_count: int = Field(default=0, ge=0)

    @classmethod
    def new(cls, **fields) -> "WorkItem":
        """Create a fresh item with a new event_id and received_at."""
        fields.setdefault("event_id", str(uuid.uuid4()))
        fields.setdefault("received_at", utc_timestamp())
        fields.setdefault("retry_count", 0)
        return cls(**fields)

    def to_json(self) -> str:
        try:
            return self.model_dump_json(exclude_none=True)
        except (PydanticSerializationError, ValueError, TypeError) as e:
            raise SerializationError(f"cannot encode work item {self.event_id}: {e}") from e

    @classmethod
    def from_json(cls, raw: str | bytes) -> "WorkItem":
        try:
            return cls.model_validate_json(raw)
        except ValueError as e:
            payload = raw.decode("utf-8", "replace") if isinstance(raw, bytes) else raw
            raise SerializationError(f"cannot decode work item: {e}", payload=payload) from e
