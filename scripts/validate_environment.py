#!/usr/bin/env python3
"""Validate local environment readiness for the allocation core."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import date
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backend.domain.models import Scope
from backend.repository.data_repository import DataRepository
from backend.repository.schema import RESOURCES
from backend.services.materialization_service import AttendanceService
from backend.services.matching_service import AllocationService
from backend.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="campus-env-")

    # CHECK 1: Python version >= 3.10
    if sys.version_info >= (3, 10):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.10",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2: Required packages importable
    package_specs = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("pydantic", "pydantic"),
        ("pandas", "pandas"),
        ("httpx", "httpx"),
        ("pytest", "pytest"),
    ]
    import_errors: list[str] = []
    from importlib.metadata import PackageNotFoundError, version

    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except (ImportError, PackageNotFoundError) as exc:
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        validation_settings = replace(
            get_settings(),
            database_path=Path(temp_dir) / "campus_validation.db",
        )
        repository = DataRepository(validation_settings)

        # CHECK 3: Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4: Demo data seeding
        try:
            repository.seed_demo_data()
            bed_count = repository.count_documents(RESOURCES)
            if bed_count != 8:
                raise RuntimeError(f"expected 8 beds, got {bed_count}")
            ok, line = _print_result("Demo dataset: 8 beds", True)
        except Exception as exc:
            ok, line = _print_result("Demo dataset", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5: Dry-run allocation
        try:
            plan = AllocationService(
                repository=repository,
                settings=validation_settings,
            ).run_auto_allocation(dry_run=True)
            ok, line = _print_result(
                "Dry-run allocation",
                True,
                f": {plan.allocated_count} allocated, {plan.remaining_count} waiting",
            )
        except Exception as exc:
            ok, line = _print_result("Dry-run allocation", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 6: Session materialization
        try:
            outcome = AttendanceService(
                repository=repository,
                settings=validation_settings,
            ).materialize_current_week(
                Scope(department="CSE", year="II", section="A"),
                now=date(2024, 5, 15),
            )
            if len(outcome.session_ids) != 3:
                raise RuntimeError(f"expected 3 sessions, got {len(outcome.session_ids)}")
            ok, line = _print_result("Session materialization: 3 sessions", True)
        except Exception as exc:
            ok, line = _print_result("Session materialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Campus Allocation Core Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
