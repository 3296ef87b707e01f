#!/usr/bin/env python3
"""Validate local match engine environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from importlib.metadata import version
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from backend.domain.constraints import scoring_config_from_settings, validate_scoring_config
from backend.repository.data_repository import DataRepository
from backend.services.density_service import FederalDensityService
from backend.services.matching_service import BatchMatchingService
from backend.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="fedlease-env-")

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

    # CHECK 2: Required packages importable with versions
    package_specs = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("pydantic", "pydantic"),
        ("numpy", "numpy"),
        ("pandas", "pandas"),
        ("requests", "requests"),
        ("streamlit", "streamlit"),
        ("httpx", "httpx"),
        ("pytest", "pytest"),
    ]
    import_errors: list[str] = []
    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except Exception as exc:  # pragma: no cover - runtime guard
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
        base_settings = get_settings()

        # CHECK 3: Scoring weights and thresholds
        try:
            validate_scoring_config(scoring_config_from_settings(base_settings))
            ok, line = _print_result("Scoring configuration", True)
        except Exception as exc:
            ok, line = _print_result("Scoring configuration", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        temp_db_path = Path(temp_dir) / "fedlease_validation.db"
        validation_settings = replace(base_settings, database_path=temp_db_path)
        repository = DataRepository(validation_settings)

        # CHECK 4: Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5: Synthetic data seeding
        try:
            repository.seed_synthetic_data()
            active_listings = repository.count_active_listings()
            if active_listings == 0:
                raise RuntimeError("no active listings after seeding")
            ok, line = _print_result("Synthetic dataset", True, f": {active_listings} active listings")
        except Exception as exc:
            ok, line = _print_result("Synthetic dataset", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        density_service = FederalDensityService(
            repository=repository,
            settings=validation_settings,
        )

        # CHECK 6: Federal density scoring
        try:
            density = density_service.score(38.9072, -77.0369)
            if not (0 <= density.score <= 100 and 0 <= density.percentile <= 100):
                raise RuntimeError("density values out of [0,100] bounds")
            ok, line = _print_result(
                "Federal density score",
                True,
                f": score={density.score} percentile={density.percentile}",
            )
        except Exception as exc:
            ok, line = _print_result("Federal density score", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 7: Batch matching run
        try:
            matching_service = BatchMatchingService(
                listings=repository,
                opportunities=repository,
                matches=repository,
                experience=repository,
                runs=repository,
                density_service=density_service,
                settings=validation_settings,
            )
            stats = matching_service.run_batch()
            if not stats.success:
                raise RuntimeError(stats.failure_reason or f"run ended in {stats.state}")
            ok, line = _print_result(
                "Batch matching run",
                True,
                f": processed={stats.processed} matched={stats.matched} skipped={stats.skipped}",
            )
        except Exception as exc:
            ok, line = _print_result("Batch matching run", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Match Engine Environment Validation")
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
