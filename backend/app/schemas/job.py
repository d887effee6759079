"""Job response schemas."""
import uuid
from typing import Optional
from app.schemas.base import CamelORMModel, UtcDatetime


class JobResponse(CamelORMModel):
    id: uuid.UUID
    job_type: str
    status: str
    params: dict
    result: Optional[dict] = None
    error_message: Optional[str] = None
    run_after: Optional[UtcDatetime] = None
    created_at: UtcDatetime
    started_at: Optional[UtcDatetime] = None
    completed_at: Optional[UtcDatetime] = None
