"""Roster lookup for a course within an academic scope."""

from __future__ import annotations

from typing import Optional

from backend.domain.models import Course, Scope
from backend.repository.data_repository import DataRepository
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class RosterResolver:
    """Resolve the current student roster of a course section.

    Missing courses, missing sections and malformed section values all resolve
    to an empty roster; materialization must never fail because a course
    document is incomplete.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def find_course(self, course_id: str, scope: Scope) -> Optional[Course]:
        """Semester catalog first, then the year/section catalog."""
        course = self._repository.get_semester_course(scope, course_id)
        if course is None:
            course = self._repository.get_course(scope, course_id)
        return course

    def resolve(self, course_id: str, scope: Scope, section: Optional[str] = None) -> list[str]:
        course = self.find_course(course_id, scope)
        if course is None:
            logger.debug(
                "Roster course not found | course_id=%s | scope=%s",
                course_id,
                scope.container_key,
            )
            return []
        section_key = (section or scope.section).strip().upper()
        students = course.students_by_section.get(section_key)
        if not isinstance(students, list):
            return []
        return [str(student_id) for student_id in students]
