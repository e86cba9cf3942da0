from datetime import datetime

from src.shared.schemas.base import BaseSchema


class AuditEntryResponse(BaseSchema):
    """Single audit log entry."""

    id: int
    operation: str
    entity_type: str
    entity_id: str | None
    actor_id: str | None
    result: str
    details: dict | None
    duration_ms: int | None
    created_at: datetime
