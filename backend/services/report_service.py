"""Occupancy and attendance summaries for operator reporting."""

from __future__ import annotations

from typing import Any, Optional

import pandas as pd

from backend.domain.models import (
    ALLOCATION_STATUS_ACTIVE,
    ATTENDANCE_STATUSES,
    RESOURCE_STATUS_OCCUPIED,
    RESOURCE_STATUSES,
    Scope,
)
from backend.repository.data_repository import DataRepository
from backend.utils.config import Settings, get_settings


class ReportService:
    """Read-only aggregations over the bed pool, allocations and sessions."""

    _POOL_COLUMNS = ["resource_id", "group_id", "resource_type", "status"]

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def _pool_frame(self) -> pd.DataFrame:
        pool = self._repository.list_resource_pool()
        return pd.DataFrame(
            [
                {
                    "resource_id": resource.resource_id,
                    "group_id": resource.group_id,
                    "resource_type": resource.resource_type,
                    "status": resource.status,
                }
                for resource in pool
            ],
            columns=self._POOL_COLUMNS,
        )

    def occupancy_report(self) -> dict[str, Any]:
        frame = self._pool_frame()
        total = int(len(frame))
        status_counts = {status: 0 for status in sorted(RESOURCE_STATUSES)}
        status_counts.update(
            {str(status): int(count) for status, count in frame["status"].value_counts().items()}
        )
        occupied = status_counts.get(RESOURCE_STATUS_OCCUPIED, 0)

        by_type: list[dict[str, Any]] = []
        if total:
            frame["occupied"] = (frame["status"] == RESOURCE_STATUS_OCCUPIED).astype(int)
            grouped = (
                frame.groupby("resource_type", sort=True)
                .agg(total=("resource_id", "count"), occupied=("occupied", "sum"))
                .reset_index()
            )
            for row in grouped.itertuples(index=False):
                by_type.append(
                    {
                        "resource_type": str(row.resource_type),
                        "total": int(row.total),
                        "occupied": int(row.occupied),
                        "occupancy_rate": round(float(row.occupied) / float(row.total), 4),
                    }
                )

        allocations = self._repository.list_allocations()
        recent = sorted(allocations, key=lambda allocation: allocation.allot_date, reverse=True)
        recent = recent[: self._settings.report_recent_allocations_limit]
        return {
            "total_resources": total,
            "occupied_resources": occupied,
            "occupancy_rate": round(occupied / total, 4) if total else 0.0,
            "status_counts": status_counts,
            "by_resource_type": by_type,
            "active_allocations": sum(
                1 for allocation in allocations if allocation.status == ALLOCATION_STATUS_ACTIVE
            ),
            "pending_waitlist": len(self._repository.list_waitlist()),
            "recent_allocations": [
                {
                    "allocation_id": allocation.allocation_id,
                    "applicant_id": allocation.applicant_id,
                    "resource_id": allocation.resource_id,
                    "group_id": allocation.group_id,
                    "status": allocation.status,
                    "allot_date": allocation.allot_date,
                }
                for allocation in recent
            ],
        }

    def attendance_summary(self, scope: Scope, session_date: Optional[str] = None) -> list[dict[str, Any]]:
        """Per-session counts of each attendance status."""
        sessions = self._repository.list_attendance_sessions(scope, session_date)
        if not sessions:
            return []
        rows = [
            {
                "session_id": session.session_id,
                "date": session.session_date.isoformat(),
                "course_id": session.course_id,
                "status": status,
            }
            for session in sessions
            for status in session.status_by_student.values()
        ]
        counts = pd.DataFrame(rows, columns=["session_id", "date", "course_id", "status"])
        table = (
            counts.pivot_table(
                index="session_id",
                columns="status",
                values="course_id",
                aggfunc="count",
                fill_value=0,
            )
            if not counts.empty
            else pd.DataFrame()
        )

        summary: list[dict[str, Any]] = []
        for session in sessions:
            status_counts = {status: 0 for status in sorted(ATTENDANCE_STATUSES)}
            if session.session_id in table.index:
                for status, count in table.loc[session.session_id].items():
                    status_counts[str(status)] = int(count)
            summary.append(
                {
                    "session_id": session.session_id,
                    "date": session.session_date.isoformat(),
                    "course_id": session.course_id,
                    "course_name": session.course_name,
                    "roster_size": len(session.status_by_student),
                    "status_counts": status_counts,
                }
            )
        return summary
