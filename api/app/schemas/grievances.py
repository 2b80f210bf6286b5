from datetime import datetime

from pydantic import BaseModel, Field

from app.schemas.tracking import TrackingEntryOut
from app.services.history import AdminStatus, StudentStatus


class GrievanceCreateRequest(BaseModel):
    campus_id: int = Field(ge=1)
    issue_code: int = Field(ge=1)
    subject: str = Field(min_length=1, max_length=255)
    description: str = Field(min_length=1, max_length=10000)
    has_attachments: bool = False


class GrievanceOut(BaseModel):
    grievance_id: str
    roll_no: str
    campus_id: int
    issue_code: int
    subject: str
    description: str
    has_attachments: bool
    created_at: datetime


class GrievanceCreatedOut(BaseModel):
    grievance: GrievanceOut
    tracking: TrackingEntryOut


class GrievanceOverviewOut(BaseModel):
    grievance: GrievanceOut
    current_admin_status: AdminStatus | None = None
    current_student_status: StudentStatus | None = None
    last_updated: datetime | None = None


class GrievanceListOut(BaseModel):
    items: list[GrievanceOverviewOut]
    limit: int
    offset: int
