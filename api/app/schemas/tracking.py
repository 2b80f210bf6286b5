from datetime import datetime

from pydantic import BaseModel, Field

from app.services.grievance_repository import GRIEVANCE_ID_PATTERN
from app.services.history import AdminStatus, StudentStatus, TrackingDraft


class TrackingCreateRequest(BaseModel):
    grievance_id: str = Field(pattern=GRIEVANCE_ID_PATTERN)
    response_text: str = Field(min_length=1, max_length=5000)
    admin_status: AdminStatus
    student_status: StudentStatus
    response_by: str = Field(min_length=1, max_length=50)
    redirect_to: str | None = Field(default=None, max_length=50)
    redirect_from: str | None = Field(default=None, max_length=50)
    is_redirect: bool = False
    has_attachments: bool = False

    def to_draft(self) -> TrackingDraft:
        return TrackingDraft(**self.model_dump())


class TrackingRedirectRequest(BaseModel):
    redirect_to: str = Field(min_length=1, max_length=50)
    comment: str = Field(min_length=1, max_length=5000)


class TrackingEntryOut(BaseModel):
    id: int
    grievance_id: str
    response_text: str
    admin_status: AdminStatus
    student_status: StudentStatus
    response_by: str
    response_at: datetime
    redirect_to: str | None = None
    redirect_from: str | None = None
    is_redirect: bool = False
    has_attachments: bool = False
    admin_name: str | None = None
    admin_role: str | None = None


class TrackingStatusOut(BaseModel):
    grievance_id: str
    entry: TrackingEntryOut | None = None


class CurrentStatusOut(BaseModel):
    admin: AdminStatus
    student: StudentStatus


class ResolutionTimeOut(BaseModel):
    total_ms: int
    total_hours: float
    total_days: float


class TrackingSummaryOut(BaseModel):
    total_entries: int
    current_status: CurrentStatusOut
    created_at: datetime | None = None
    last_updated: datetime | None = None
    redirect_count: int = 0
    involved_admins: int = 0
    resolution_time: ResolutionTimeOut | None = None


class TrackingHistoryOut(BaseModel):
    grievance_id: str
    summary: TrackingSummaryOut
    entries: list[TrackingEntryOut] = Field(default_factory=list)
