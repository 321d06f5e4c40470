"""All-or-nothing batch commits with the audit-trail rule enforced up front."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Sequence

from backend.domain.constraints import ValidationError
from backend.repository.data_repository import (
    OPERATION_CREATE,
    BatchOperation,
    CommitFailure,
    ConflictError,
    DataRepository,
    GeneratedId,
    StorageError,
    utc_now_iso,
)
from backend.repository.schema import AUDIT_LOG, AUDITED_COLLECTIONS, LegacyKeyAdapter
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class AuditTrailMissingError(ValidationError):
    """Raised when an allocation-affecting batch carries no audit record."""


@dataclass(frozen=True)
class CommitResult:
    generated_ids: list[GeneratedId] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def ids_for(self, collection: str) -> list[str]:
        return [item.doc_id for item in self.generated_ids if item.collection == collection]

    def raise_for_error(self) -> "CommitResult":
        if self.error is not None:
            raise self.error
        return self


def audit_operation(
    *,
    entity: str,
    entity_id: str,
    action: str,
    actor_id: str,
    notes: str = "",
    timestamp: Optional[str] = None,
) -> BatchOperation:
    return BatchOperation.create(
        AUDIT_LOG,
        {
            "entity": entity,
            "entity_id": entity_id,
            "action": action,
            "actor_id": actor_id,
            "timestamp": timestamp or utc_now_iso(),
            "notes": notes,
        },
    )


class AtomicCommitter:
    """Single side-effecting component: applies a batch as one transaction.

    Failures never leave partial state. ConflictError means the caller must
    re-read and plan again; there is no retry at this layer.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._adapter = LegacyKeyAdapter()

    def check_audit_trail(self, operations: Sequence[BatchOperation]) -> None:
        collections = {
            self._adapter.canonical_collection(operation.collection) for operation in operations
        }
        if not collections & AUDITED_COLLECTIONS:
            return
        has_audit = any(
            operation.kind == OPERATION_CREATE
            and self._adapter.canonical_collection(operation.collection) == AUDIT_LOG
            for operation in operations
        )
        if not has_audit:
            raise AuditTrailMissingError(
                "Batches touching "
                f"{sorted(collections & AUDITED_COLLECTIONS)} must include an audit record"
            )

    def commit(self, operations: Sequence[BatchOperation]) -> CommitResult:
        if not operations:
            return CommitResult()
        try:
            self.check_audit_trail(operations)
            generated = self._repository.transactional_batch(operations)
        except ConflictError as exc:
            logger.warning(
                "Batch rejected by concurrent modification | operations=%s | detail=%s",
                len(operations),
                exc,
            )
            return CommitResult(error=exc)
        except ValidationError as exc:
            logger.warning(
                "Batch rejected by validation | operations=%s | detail=%s",
                len(operations),
                exc,
            )
            return CommitResult(error=exc)
        except StorageError as exc:
            logger.error("Batch commit failed | operations=%s | detail=%s", len(operations), exc)
            return CommitResult(error=exc)
        except Exception as exc:
            logger.exception("Unexpected batch commit failure")
            failure = CommitFailure(f"Unexpected commit failure: {exc}")
            failure.__cause__ = exc
            return CommitResult(error=failure)

        logger.info(
            "Batch committed | operations=%s | created=%s",
            len(operations),
            len(generated),
        )
        return CommitResult(generated_ids=generated)
