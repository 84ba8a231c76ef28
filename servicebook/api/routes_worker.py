import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from servicebook.api.identity import require_worker
from servicebook.dependencies import get_config, get_db_session, get_stripe_client
from servicebook.domain.config.service import ConfigSnapshot
from servicebook.domain.errors import BufferConflict, HoldExpired
from servicebook.domain.workers import assignment as assignment_service
from servicebook.domain.workers import schemas as worker_schemas
from servicebook.domain.workers.db_models import Worker
from servicebook.infra.db import utcnow

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/v1/worker/assignments", response_model=list[worker_schemas.AssignmentResponse])
async def list_assignments(
    status: str | None = Query(None),
    worker: Worker = Depends(require_worker),
    session: AsyncSession = Depends(get_db_session),
) -> list[worker_schemas.AssignmentResponse]:
    assignments = await assignment_service.list_worker_assignments(session, worker.worker_id, status=status)
    return [worker_schemas.AssignmentResponse.from_model(item) for item in assignments]


@router.post("/v1/worker/assignments/{assignment_id}/accept", response_model=worker_schemas.AssignmentResponse)
async def accept_assignment(
    assignment_id: str,
    worker: Worker = Depends(require_worker),
    session: AsyncSession = Depends(get_db_session),
    config: ConfigSnapshot = Depends(get_config),
) -> worker_schemas.AssignmentResponse:
    try:
        assignment = await assignment_service.accept_assignment(
            session, config, assignment_id, worker_id=worker.worker_id, now=utcnow()
        )
    except (BufferConflict, HoldExpired):
        # the closed offer and the follow-up offer are kept
        await session.commit()
        raise
    await session.commit()
    return worker_schemas.AssignmentResponse.from_model(assignment)


@router.post("/v1/worker/assignments/{assignment_id}/reject", response_model=worker_schemas.AssignmentResponse)
async def reject_assignment(
    assignment_id: str,
    payload: worker_schemas.RejectAssignmentRequest | None = None,
    worker: Worker = Depends(require_worker),
    session: AsyncSession = Depends(get_db_session),
    config: ConfigSnapshot = Depends(get_config),
) -> worker_schemas.AssignmentResponse:
    assignment = await assignment_service.reject_assignment(
        session,
        config,
        assignment_id,
        worker_id=worker.worker_id,
        reason=payload.reason if payload else None,
        now=utcnow(),
    )
    await session.commit()
    return worker_schemas.AssignmentResponse.from_model(assignment)


@router.post("/v1/worker/assignments/{assignment_id}/start", response_model=worker_schemas.AssignmentResponse)
async def start_assignment(
    assignment_id: str,
    worker: Worker = Depends(require_worker),
    session: AsyncSession = Depends(get_db_session),
) -> worker_schemas.AssignmentResponse:
    assignment = await assignment_service.start_assignment(
        session, assignment_id, worker_id=worker.worker_id, now=utcnow()
    )
    await session.commit()
    return worker_schemas.AssignmentResponse.from_model(assignment)


@router.post("/v1/worker/assignments/{assignment_id}/complete", response_model=worker_schemas.AssignmentResponse)
async def complete_assignment(
    assignment_id: str,
    payload: worker_schemas.CompleteAssignmentRequest,
    worker: Worker = Depends(require_worker),
    session: AsyncSession = Depends(get_db_session),
) -> worker_schemas.AssignmentResponse:
    assignment = await assignment_service.complete_assignment(
        session, assignment_id, worker_id=worker.worker_id, otp=payload.otp, now=utcnow()
    )
    await session.commit()
    return worker_schemas.AssignmentResponse.from_model(assignment)


@router.post("/v1/worker/assignments/{assignment_id}/fail", response_model=worker_schemas.AssignmentResponse)
async def fail_assignment(
    assignment_id: str,
    payload: worker_schemas.FailAssignmentRequest,
    worker: Worker = Depends(require_worker),
    session: AsyncSession = Depends(get_db_session),
    config: ConfigSnapshot = Depends(get_config),
    stripe_client=Depends(get_stripe_client),
) -> worker_schemas.AssignmentResponse:
    assignment = await assignment_service.fail_assignment(
        session,
        config,
        assignment_id,
        worker_id=worker.worker_id,
        reason=payload.reason,
        now=utcnow(),
        stripe_client=stripe_client,
    )
    await session.commit()
    return worker_schemas.AssignmentResponse.from_model(assignment)


@router.put("/v1/worker/availability", response_model=worker_schemas.AvailabilityResponse)
async def update_availability(
    payload: worker_schemas.AvailabilityRequest,
    worker: Worker = Depends(require_worker),
    session: AsyncSession = Depends(get_db_session),
) -> worker_schemas.AvailabilityResponse:
    await assignment_service.set_worker_availability(session, worker, payload.is_available)
    await session.commit()
    return worker_schemas.AvailabilityResponse(worker_id=worker.worker_id, is_available=worker.is_available)
