"""Priority-ordered first-fit bed allocation and the vacate workflow."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Optional, Sequence

from backend.domain.constraints import (
    AllocationConfig,
    ValidationError,
    validate_allocation_config,
)
from backend.domain.models import (
    ALLOCATION_STATUS_ACTIVE,
    ALLOCATION_STATUS_VACATED,
    RESOURCE_STATUS_OCCUPIED,
    RESOURCE_STATUS_VACANT,
    Allocation,
    AllocationIntent,
    MatchResult,
    PoolResource,
    WaitlistEntry,
)
from backend.repository.data_repository import (
    BatchOperation,
    DataRepository,
    GeneratedId,
    utc_now_iso,
)
from backend.repository.schema import ALLOCATIONS, RESOURCES, WAITLIST
from backend.services.commit_service import AtomicCommitter, audit_operation
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class AllocationValidationError(ValidationError):
    """Raised when allocation inputs are invalid."""


class AllocationNotFoundError(Exception):
    """Raised when an allocation id does not exist."""


class AllocationStateError(ValidationError):
    """Raised when an allocation is not in the state an operation requires."""


def waitlist_sort_key(
    entry: WaitlistEntry,
    missing_priority_rank: int,
) -> tuple[int, bool, str]:
    rank = entry.priority_rank if entry.priority_rank is not None else missing_priority_rank
    return (rank, entry.applied_on is None, entry.applied_on or "")


def sort_waitlist(
    waitlist: Sequence[WaitlistEntry],
    missing_priority_rank: int,
) -> list[WaitlistEntry]:
    """Priority rank ascending, then applied_on ascending; `sorted` keeps input order for ties."""
    return sorted(waitlist, key=lambda entry: waitlist_sort_key(entry, missing_priority_rank))


def _accepts(entry: WaitlistEntry, resource: PoolResource) -> bool:
    preferences = entry.preferences
    if preferences.resource_type and preferences.resource_type != resource.resource_type:
        return False
    if preferences.group_id and preferences.group_id != resource.group_id:
        return False
    return True


def match_waitlist(
    waitlist: Sequence[WaitlistEntry],
    resource_pool: Sequence[PoolResource],
    *,
    missing_priority_rank: int = 999,
) -> MatchResult:
    """Greedy first-fit matching in priority order.

    Fairness is defined by priority alone: an earlier entry always takes the
    first compatible vacant bed even if that leaves a later entry unmatched.
    A bed chosen in this pass leaves the in-memory pool immediately.
    """
    available: list[PoolResource] = []
    seen_ids: set[str] = set()
    for resource in resource_pool:
        if resource.status != RESOURCE_STATUS_VACANT or resource.resource_id in seen_ids:
            continue
        seen_ids.add(resource.resource_id)
        available.append(resource)

    intents: list[AllocationIntent] = []
    remaining: list[WaitlistEntry] = []
    for entry in sort_waitlist(waitlist, missing_priority_rank):
        candidate_index = next(
            (index for index, resource in enumerate(available) if _accepts(entry, resource)),
            None,
        )
        if candidate_index is None:
            remaining.append(entry)
            continue
        chosen = available.pop(candidate_index)
        intents.append(
            AllocationIntent(
                waitlist_entry_id=entry.entry_id,
                applicant_id=entry.applicant_id,
                resource_id=chosen.resource_id,
                group_id=chosen.group_id,
                resource_version=chosen.version,
                waitlist_version=entry.version,
            )
        )
    return MatchResult(intents=intents, remaining_waitlist=remaining)


class AllocationMatcher:
    """Pure planner; safe to call from any thread."""

    def __init__(self, config: AllocationConfig) -> None:
        validate_allocation_config(config)
        self._config = config

    def match(
        self,
        waitlist: Sequence[WaitlistEntry],
        resource_pool: Sequence[PoolResource],
    ) -> MatchResult:
        return match_waitlist(
            waitlist,
            resource_pool,
            missing_priority_rank=self._config.missing_priority_rank,
        )


def build_allocation_operations(
    intents: Sequence[AllocationIntent],
    *,
    actor_id: str,
    reason: str,
    timestamp: Optional[str] = None,
) -> tuple[list[BatchOperation], list[str]]:
    """Four writes per intent: allocation, bed, waitlist entry and its audit record.

    The bed and waitlist updates carry the versions observed while planning so
    a concurrent run that already took the bed aborts this whole batch.
    """
    allot_date = timestamp or utc_now_iso()
    operations: list[BatchOperation] = []
    allocation_ids: list[str] = []
    for intent in intents:
        allocation_id = uuid.uuid4().hex
        allocation_ids.append(allocation_id)
        operations.extend(
            [
                BatchOperation.create(
                    ALLOCATIONS,
                    {
                        "applicant_id": intent.applicant_id,
                        "waitlist_entry_id": intent.waitlist_entry_id,
                        "resource_id": intent.resource_id,
                        "group_id": intent.group_id,
                        "status": ALLOCATION_STATUS_ACTIVE,
                        "allot_date": allot_date,
                        "vacate_date": None,
                        "reason": reason,
                    },
                    doc_id=allocation_id,
                ),
                BatchOperation.update(
                    RESOURCES,
                    intent.resource_id,
                    {"status": RESOURCE_STATUS_OCCUPIED},
                    expected_version=intent.resource_version,
                    expected_fields={"status": RESOURCE_STATUS_VACANT},
                ),
                BatchOperation.update(
                    WAITLIST,
                    intent.waitlist_entry_id,
                    {"fulfilled": True},
                    expected_version=intent.waitlist_version,
                ),
                audit_operation(
                    entity="allocation",
                    entity_id=allocation_id,
                    action="auto_allot",
                    actor_id=actor_id,
                    timestamp=allot_date,
                    notes=(
                        f"Applicant {intent.applicant_id} -> bed {intent.resource_id} "
                        f"in room {intent.group_id}"
                    ),
                ),
            ]
        )
    return operations, allocation_ids


@dataclass(frozen=True)
class AllocationRunResult:
    intents: list[AllocationIntent]
    remaining_waitlist: list[WaitlistEntry]
    allocation_ids: list[str] = field(default_factory=list)
    generated_ids: list[GeneratedId] = field(default_factory=list)
    committed: bool = False

    @property
    def allocated_count(self) -> int:
        return len(self.intents)

    @property
    def remaining_count(self) -> int:
        return len(self.remaining_waitlist)


class AllocationService:
    """Reads the pending waitlist and bed pool, plans, then commits atomically."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        committer: Optional[AtomicCommitter] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._committer = committer or AtomicCommitter(
            repository=self._repository,
            settings=self._settings,
        )

    def _config(self) -> AllocationConfig:
        return AllocationConfig(
            missing_priority_rank=self._settings.waitlist_missing_priority_rank,
            default_reason=self._settings.allocation_default_reason,
        )

    def _actor(self, actor_id: Optional[str]) -> str:
        return actor_id or self._settings.default_actor_id

    def list_pending_waitlist(self) -> list[WaitlistEntry]:
        return sort_waitlist(
            self._repository.list_waitlist(),
            self._settings.waitlist_missing_priority_rank,
        )

    def list_allocations(self, status: Optional[str] = None) -> list[Allocation]:
        return self._repository.list_allocations(status)

    def plan_allocation(self) -> MatchResult:
        matcher = AllocationMatcher(self._config())
        waitlist = self._repository.list_waitlist()
        pool = self._repository.list_resource_pool()
        result = matcher.match(waitlist, pool)
        logger.info(
            "Allocation planned | waitlist=%s | pool=%s | intents=%s | remaining=%s",
            len(waitlist),
            len(pool),
            len(result.intents),
            len(result.remaining_waitlist),
        )
        return result

    def apply_plan(
        self,
        plan: MatchResult,
        *,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> AllocationRunResult:
        """Commit a previously computed plan; raises ConflictError if it went stale."""
        if not plan.intents:
            return AllocationRunResult(
                intents=[],
                remaining_waitlist=list(plan.remaining_waitlist),
                committed=True,
            )
        operations, allocation_ids = build_allocation_operations(
            plan.intents,
            actor_id=self._actor(actor_id),
            reason=reason or self._config().default_reason,
        )
        commit_result = self._committer.commit(operations).raise_for_error()
        logger.info(
            "Allocation committed | allocations=%s | remaining=%s",
            len(allocation_ids),
            len(plan.remaining_waitlist),
        )
        return AllocationRunResult(
            intents=list(plan.intents),
            remaining_waitlist=list(plan.remaining_waitlist),
            allocation_ids=allocation_ids,
            generated_ids=commit_result.generated_ids,
            committed=True,
        )

    def run_auto_allocation(
        self,
        *,
        actor_id: Optional[str] = None,
        dry_run: bool = False,
    ) -> AllocationRunResult:
        plan = self.plan_allocation()
        if dry_run:
            return AllocationRunResult(
                intents=list(plan.intents),
                remaining_waitlist=list(plan.remaining_waitlist),
            )
        return self.apply_plan(plan, actor_id=actor_id)

    def submit_application(
        self,
        *,
        applicant_id: str,
        roll_no: str = "",
        resource_type: Optional[str] = None,
        group_id: Optional[str] = None,
        priority_rank: Optional[int] = None,
        actor_id: Optional[str] = None,
    ) -> str:
        if not applicant_id or not applicant_id.strip():
            raise AllocationValidationError("applicant_id is required")
        if priority_rank is not None and priority_rank < 0:
            raise AllocationValidationError("priority_rank must be >= 0")
        entry_id = uuid.uuid4().hex
        applied_on = utc_now_iso()
        operations = [
            BatchOperation.create(
                WAITLIST,
                {
                    "applicant_id": applicant_id.strip(),
                    "roll_no": roll_no,
                    "preferences": {"resource_type": resource_type, "group_id": group_id},
                    "priority_rank": priority_rank,
                    "applied_on": applied_on,
                    "fulfilled": False,
                },
                doc_id=entry_id,
            ),
            audit_operation(
                entity="waitlist",
                entity_id=entry_id,
                action="apply",
                actor_id=self._actor(actor_id),
                timestamp=applied_on,
                notes=f"Applicant {applicant_id.strip()} prefers {resource_type or 'any'}",
            ),
        ]
        self._committer.commit(operations).raise_for_error()
        return entry_id

    def vacate_allocation(
        self,
        allocation_id: str,
        *,
        actor_id: Optional[str] = None,
        notes: str = "",
    ) -> Allocation:
        allocation = self._repository.get_allocation(allocation_id)
        if allocation is None:
            raise AllocationNotFoundError(f"Allocation {allocation_id} not found")
        if allocation.status != ALLOCATION_STATUS_ACTIVE:
            raise AllocationStateError(
                f"Allocation {allocation_id} is {allocation.status}, only active allocations can be vacated"
            )

        vacate_date = utc_now_iso()
        operations = [
            BatchOperation.update(
                ALLOCATIONS,
                allocation_id,
                {"status": ALLOCATION_STATUS_VACATED, "vacate_date": vacate_date},
                expected_version=allocation.version,
                expected_fields={"status": ALLOCATION_STATUS_ACTIVE},
            ),
            BatchOperation.update(
                RESOURCES,
                allocation.resource_id,
                {"status": RESOURCE_STATUS_VACANT},
                expected_fields={"status": RESOURCE_STATUS_OCCUPIED},
            ),
            audit_operation(
                entity="allocation",
                entity_id=allocation_id,
                action="vacate",
                actor_id=self._actor(actor_id),
                timestamp=vacate_date,
                notes=" ".join(part for part in (f"Bed {allocation.resource_id}", notes) if part),
            ),
        ]
        self._committer.commit(operations).raise_for_error()
        logger.info(
            "Allocation vacated | allocation_id=%s | resource_id=%s",
            allocation_id,
            allocation.resource_id,
        )
        vacated = self._repository.get_allocation(allocation_id)
        if vacated is None:
            raise AllocationNotFoundError(f"Allocation {allocation_id} not found after vacate")
        return vacated
