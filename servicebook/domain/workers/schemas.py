from datetime import datetime

from pydantic import BaseModel, Field

from servicebook.domain.workers.db_models import WorkerAssignment
from servicebook.infra.db import as_utc


class AssignmentResponse(BaseModel):
    assignment_id: str
    booking_id: str
    worker_id: int
    status: str
    assigned_by: str
    offered_at: datetime
    offer_expires_at: datetime | None = None
    accepted_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    rejection_reason: str | None = None

    @classmethod
    def from_model(cls, assignment: WorkerAssignment) -> "AssignmentResponse":
        return cls(
            assignment_id=assignment.assignment_id,
            booking_id=assignment.booking_id,
            worker_id=assignment.worker_id,
            status=assignment.status,
            assigned_by=assignment.assigned_by,
            offered_at=as_utc(assignment.offered_at),
            offer_expires_at=as_utc(assignment.offer_expires_at),
            accepted_at=as_utc(assignment.accepted_at),
            started_at=as_utc(assignment.started_at),
            completed_at=as_utc(assignment.completed_at),
            rejection_reason=assignment.rejection_reason,
        )


class RejectAssignmentRequest(BaseModel):
    reason: str | None = Field(None, max_length=64)


class FailAssignmentRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=255)


class CompleteAssignmentRequest(BaseModel):
    otp: str = Field(pattern=r"^\s*\d{6}\s*$")


class AvailabilityRequest(BaseModel):
    is_available: bool


class AvailabilityResponse(BaseModel):
    worker_id: int
    is_available: bool


class AssignWorkerRequest(BaseModel):
    worker_id: int
    notes: str | None = Field(None, max_length=500)
