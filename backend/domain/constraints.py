"""Domain-level validation rules for matching and materialization."""

from __future__ import annotations

from dataclasses import dataclass

from backend.domain.models import Scope


STATUS_POLICY_PRESERVE = "preserve"
STATUS_POLICY_RESET = "reset"
STATUS_POLICIES = frozenset({STATUS_POLICY_PRESERVE, STATUS_POLICY_RESET})


class ValidationError(ValueError):
    """Raised when a caller supplies missing or malformed identifiers."""


@dataclass(frozen=True)
class AllocationConfig:
    missing_priority_rank: int
    default_reason: str


@dataclass(frozen=True)
class MaterializationConfig:
    status_policy: str
    campus_timezone: str


def validate_allocation_config(config: AllocationConfig) -> None:
    if config.missing_priority_rank < 0:
        raise ValidationError("missing_priority_rank must be >= 0")
    if not config.default_reason.strip():
        raise ValidationError("default_reason must be non-empty")


def validate_materialization_config(config: MaterializationConfig) -> None:
    if config.status_policy not in STATUS_POLICIES:
        raise ValidationError(
            f"status_policy must be one of {sorted(STATUS_POLICIES)}"
        )
    if not config.campus_timezone.strip():
        raise ValidationError("campus_timezone must be non-empty")


def validate_scope(scope: Scope) -> None:
    for field_name in ("department", "year", "section"):
        value = getattr(scope, field_name)
        if value is None or not str(value).strip():
            raise ValidationError(f"scope.{field_name} is required")
