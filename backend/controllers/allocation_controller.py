"""HTTP controller layer for the waitlist, bed allocation and occupancy report."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from backend.controllers.dependencies import (
    get_allocation_service,
    get_report_service,
    require_admin,
)
from backend.domain.constraints import ValidationError
from backend.repository.data_repository import CommitFailure, ConflictError
from backend.services.matching_service import (
    AllocationNotFoundError,
    AllocationRunResult,
    AllocationService,
)
from backend.services.report_service import ReportService
from backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["allocation"])


class WaitlistApplicationRequest(BaseModel):
    applicant_id: str = Field(min_length=1)
    roll_no: str = ""
    resource_type: Optional[str] = None
    group_id: Optional[str] = None
    priority_rank: Optional[int] = Field(default=None, ge=0)


class WaitlistApplicationResponse(BaseModel):
    entry_id: str


class WaitlistEntryResponse(BaseModel):
    entry_id: str
    applicant_id: str
    roll_no: str
    resource_type: Optional[str]
    group_id: Optional[str]
    priority_rank: Optional[int]
    applied_on: Optional[str]


class AllocationIntentResponse(BaseModel):
    waitlist_entry_id: str
    applicant_id: str
    resource_id: str
    group_id: str


class AllocationRunResponse(BaseModel):
    committed: bool
    allocated_count: int = Field(ge=0)
    remaining_count: int = Field(ge=0)
    allocation_ids: list[str]
    intents: list[AllocationIntentResponse]
    remaining_entry_ids: list[str]


class AllocationResponse(BaseModel):
    allocation_id: str
    applicant_id: str
    resource_id: str
    group_id: str
    status: str
    allot_date: str
    vacate_date: Optional[str]
    reason: str


class VacateRequest(BaseModel):
    notes: str = ""


def _run_response(result: AllocationRunResult) -> AllocationRunResponse:
    return AllocationRunResponse(
        committed=result.committed,
        allocated_count=result.allocated_count,
        remaining_count=result.remaining_count,
        allocation_ids=result.allocation_ids,
        intents=[
            AllocationIntentResponse(
                waitlist_entry_id=intent.waitlist_entry_id,
                applicant_id=intent.applicant_id,
                resource_id=intent.resource_id,
                group_id=intent.group_id,
            )
            for intent in result.intents
        ],
        remaining_entry_ids=[entry.entry_id for entry in result.remaining_waitlist],
    )


@router.post(
    "/waitlist",
    response_model=WaitlistApplicationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_application(
    payload: WaitlistApplicationRequest,
    service: AllocationService = Depends(get_allocation_service),
    actor_id: str = Depends(require_admin),
) -> WaitlistApplicationResponse:
    try:
        entry_id = service.submit_application(
            applicant_id=payload.applicant_id,
            roll_no=payload.roll_no,
            resource_type=payload.resource_type,
            group_id=payload.group_id,
            priority_rank=payload.priority_rank,
            actor_id=actor_id,
        )
        return WaitlistApplicationResponse(entry_id=entry_id)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except CommitFailure as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.get("/waitlist", response_model=list[WaitlistEntryResponse])
async def list_waitlist(
    service: AllocationService = Depends(get_allocation_service),
) -> list[WaitlistEntryResponse]:
    """Pending entries in the order the matcher will consider them."""
    return [
        WaitlistEntryResponse(
            entry_id=entry.entry_id,
            applicant_id=entry.applicant_id,
            roll_no=entry.roll_no,
            resource_type=entry.preferences.resource_type,
            group_id=entry.preferences.group_id,
            priority_rank=entry.priority_rank,
            applied_on=entry.applied_on,
        )
        for entry in service.list_pending_waitlist()
    ]


@router.post(
    "/allocations/preview",
    response_model=AllocationRunResponse,
    dependencies=[Depends(require_admin)],
)
async def preview_allocation(
    service: AllocationService = Depends(get_allocation_service),
) -> AllocationRunResponse:
    """Plan only; nothing is written."""
    try:
        return _run_response(service.run_auto_allocation(dry_run=True))
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/allocations/run", response_model=AllocationRunResponse)
async def run_allocation(
    service: AllocationService = Depends(get_allocation_service),
    actor_id: str = Depends(require_admin),
) -> AllocationRunResponse:
    """Run first-fit auto-allotment and commit it as one batch."""
    try:
        return _run_response(service.run_auto_allocation(actor_id=actor_id))
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except CommitFailure as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected allocation failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to run allocation",
        ) from exc


@router.get("/allocations", response_model=list[AllocationResponse])
async def list_allocations(
    allocation_status: Optional[str] = None,
    service: AllocationService = Depends(get_allocation_service),
) -> list[AllocationResponse]:
    return [
        AllocationResponse(
            allocation_id=allocation.allocation_id,
            applicant_id=allocation.applicant_id,
            resource_id=allocation.resource_id,
            group_id=allocation.group_id,
            status=allocation.status,
            allot_date=allocation.allot_date,
            vacate_date=allocation.vacate_date,
            reason=allocation.reason,
        )
        for allocation in service.list_allocations(allocation_status)
    ]


@router.post("/allocations/{allocation_id}/vacate", response_model=AllocationResponse)
async def vacate_allocation(
    allocation_id: str,
    payload: VacateRequest | None = None,
    service: AllocationService = Depends(get_allocation_service),
    actor_id: str = Depends(require_admin),
) -> AllocationResponse:
    try:
        allocation = service.vacate_allocation(
            allocation_id,
            actor_id=actor_id,
            notes=payload.notes if payload else "",
        )
    except AllocationNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except CommitFailure as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return AllocationResponse(
        allocation_id=allocation.allocation_id,
        applicant_id=allocation.applicant_id,
        resource_id=allocation.resource_id,
        group_id=allocation.group_id,
        status=allocation.status,
        allot_date=allocation.allot_date,
        vacate_date=allocation.vacate_date,
        reason=allocation.reason,
    )


@router.get("/reports/occupancy")
async def occupancy_report(
    service: ReportService = Depends(get_report_service),
) -> dict:
    return service.occupancy_report()
