"""Run Report Output.

Saves and prints the structured summary of a reconciliation run so operators
and CI can see what was skipped, merged, inferred and flagged.

Security Impact:
    - Reports carry provenance (workbook:sheet:row) and surrogate ids only
    - Deleted duplicates are listed so every destructive change is traceable
"""

import json
from pathlib import Path
from typing import Optional

from reconciler.domain.ports import Result
from reconciler.domain.report import RunReport

SUMMARY_KEYS = (
    ("Rows read", "rows_read"),
    ("Rows skipped", "rows_skipped"),
    ("Patients created", "patients_created"),
    ("Patients updated", "patients_updated"),
    ("Cases created", "cases_created"),
    ("Cases updated", "cases_updated"),
    ("Time-series records created", "time_series_created"),
    ("Ambiguous matches", "ambiguous_matches"),
    ("Attached outside window", "attached_outside_window"),
    ("Duplicate groups found", "duplicate_groups_found"),
    ("Duplicate groups merged", "duplicate_groups_merged"),
    ("Duplicate groups aborted", "duplicate_groups_aborted"),
    ("Cases deleted", "cases_deleted"),
    ("Boundaries (primary)", "boundaries_primary"),
    ("Boundaries (fallback)", "boundaries_fallback"),
    ("Boundaries (none)", "boundaries_none"),
    ("Boundaries (explicit)", "boundaries_explicit"),
    ("Records flagged", "records_flagged"),
    ("Records newly flagged", "records_newly_flagged"),
)


def report_path_for(report: RunReport, report_dir: str) -> Path:
    prefix = "dry_run_report" if report.dry_run else "run_report"
    return Path(report_dir) / f"{prefix}_{report.run_id}.json"


def save_run_report(report: RunReport, output_path: Optional[str] = None) -> Result[dict]:
    """Serialize a run report, optionally saving it as JSON.

    Parameters:
        report: Finished run report
        output_path: Optional path to save the report to

    Returns:
        Result[dict]: Report dictionary (with ``saved_to`` when written) or error
    """
    data = report.to_dict()
    if not output_path:
        return Result.success_result(data)

    try:
        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)

        with open(output_file, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, default=str)

        return Result.success_result({
            **data,
            "saved_to": str(output_file)
        })
    except OSError as e:
        return Result.failure_result(
            ValueError(f"Failed to save report to {output_path}: {str(e)}"),
            error_type="ValueError"
        )


def print_run_report_summary(data: dict) -> None:
    """Print a human-readable summary of a run report dictionary."""
    print("=" * 70)
    print("RECONCILIATION REPORT" + (" (DRY RUN)" if data.get("dry_run") else ""))
    print("=" * 70)
    print(f"\nRun ID: {data.get('run_id')}")

    counts = data.get("counts", {})
    print("\nCounts:")
    for label, key in SUMMARY_KEYS:
        print(f"  {label}: {counts.get(key, 0)}")

    issue_counts = data.get("issue_counts", {})
    if issue_counts:
        print("\nIssues by Category:")
        for category, count in issue_counts.items():
            print(f"  {category}: {count}")
        if data.get("issues_truncated"):
            print(f"  ({data['issues_truncated']} issues not listed)")

    if data.get("fatal_error"):
        print(f"\nRun stopped: {data['fatal_error']}")
        print(f"Last completed unit: {data.get('last_completed_unit')}")

    print("\n" + "=" * 70)
