"""Main entry point for the clinical reconciliation engine.

This module wires configuration, source readers and the storage adapter to
the reconciliation pipeline, and provides a plain command-line entry point
(``python -m reconciler.main``). The typer CLI in ``reconciler.cli`` is a
richer front end over the same functions.

Security Impact:
    - Configuration is validated before any source is read or written
    - Every run produces a report; destructive changes are audit-logged

Architecture:
    - Follows Hexagonal Architecture principles
    - Source readers are selected automatically based on source format
    - Storage adapter is configured via configuration manager
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from pydantic import ValidationError

from reconciler.adapters.sources import get_reader
from reconciler.adapters.storage import DuckDBAdapter, MemoryStorageAdapter
from reconciler.domain.ports import (
    ConfigurationError,
    SourceNotFoundError,
    SourcePort,
    StorageError,
    StoragePort,
    UnsupportedSourceError,
)
from reconciler.domain.report import IssueCategory, RunReport
from reconciler.infrastructure.config_manager import (
    DatabaseConfig,
    ReconciliationConfig,
    load_sheet_mappings,
)
from reconciler.infrastructure.run_report import (
    print_run_report_summary,
    report_path_for,
    save_run_report,
)
from reconciler.infrastructure.settings import settings
from reconciler.pipeline import run_pipeline

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STORAGE_ERROR = 1
EXIT_CONFIGURATION_ERROR = 2


def create_storage_adapter(db_config: Optional[DatabaseConfig] = None) -> StoragePort:
    """Create storage adapter based on configuration.

    Raises:
        ValueError: If database type is unsupported
    """
    db_config = db_config or settings.db_config

    if db_config.db_type == "duckdb":
        logger.info(f"Initializing DuckDB adapter with path: {db_config.db_path or ':memory:'}")
        return DuckDBAdapter(db_config=db_config)
    elif db_config.db_type == "memory":
        logger.info("Initializing in-memory storage adapter (nothing is persisted)")
        return MemoryStorageAdapter()
    else:
        raise ValueError(f"Unsupported database type: {db_config.db_type}")


def load_config(mapping_path: Optional[str] = None) -> ReconciliationConfig:
    """Reconciliation configuration, with sheet mappings from ``mapping_path`` if given.

    Raises:
        ConfigurationError: If the configuration or the mapping file is invalid
    """
    config = settings.reconciliation_config
    if not mapping_path:
        return config

    mappings = load_sheet_mappings(mapping_path)
    try:
        return ReconciliationConfig(**{**config.model_dump(exclude={"sheet_mappings"}), "sheet_mappings": mappings})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid sheet mappings in {mapping_path}: {str(e)}")


def load_sources(paths: Sequence[str]) -> list[SourcePort]:
    """Open a reader per source path.

    Raises:
        SourceNotFoundError: If a source does not exist
        UnsupportedSourceError: If a source has an unsupported format
    """
    readers = []
    for path in paths:
        reader = get_reader(path)
        logger.info(f"Selected reader for {path}: {reader.__class__.__name__}")
        readers.append(reader)
    return readers


def exit_code_for(report: RunReport) -> int:
    """Exit status: only fatal configuration or persistence errors fail a run."""
    if report.succeeded:
        return EXIT_OK
    if report.fatal_category == IssueCategory.CONFIGURATION:
        return EXIT_CONFIGURATION_ERROR
    return EXIT_STORAGE_ERROR


def run_reconciliation(
    sources: Sequence[str],
    mapping_path: Optional[str] = None,
    dry_run: bool = False,
    storage: Optional[StoragePort] = None,
) -> RunReport:
    """Load configuration and sources, then run the full pipeline.

    Parameters:
        sources: Workbook paths, CSV files or directories of CSV files
        mapping_path: Optional JSON file with sheet mappings
        dry_run: Run against an in-memory snapshot of the store
        storage: Storage adapter to use (created from settings if omitted)

    Returns:
        RunReport: The finished report; ``fatal_category`` tells why a run stopped
    """
    try:
        config = load_config(mapping_path)
        readers = load_sources(sources)
    except (ConfigurationError, SourceNotFoundError, UnsupportedSourceError) as e:
        logger.error(f"Configuration error: {str(e)}")
        report = RunReport(dry_run=dry_run)
        report.abort(IssueCategory.CONFIGURATION, str(e))
        return report.finish()

    owns_storage = storage is None
    try:
        if storage is None:
            storage = create_storage_adapter()
    except ConfigurationError as e:
        logger.error(f"Invalid store configuration: {str(e)}")
        report = RunReport(dry_run=dry_run, max_issues=config.max_report_errors)
        report.abort(IssueCategory.CONFIGURATION, str(e))
        return report.finish()
    except StorageError as e:
        logger.error(f"Failed to create storage adapter: {str(e)}", exc_info=True)
        report = RunReport(dry_run=dry_run, max_issues=config.max_report_errors)
        report.abort(IssueCategory.PERSISTENCE, str(e))
        return report.finish()

    try:
        report = run_pipeline(config, storage, readers, dry_run=dry_run)
    finally:
        if owns_storage:
            try:
                storage.close()
            except StorageError as e:
                logger.warning(f"Error closing storage connection: {str(e)}")

    logger.info("=" * 60)
    logger.info(f"Reconciliation {'dry run ' if dry_run else ''}finished: {report.run_id}")
    logger.info(f"  Rows read: {report.count('rows_read')}")
    logger.info(f"  Rows skipped: {report.count('rows_skipped')}")
    logger.info(f"  Cases deleted: {report.count('cases_deleted')}")
    logger.info(f"  Records flagged: {report.count('records_flagged')}")
    logger.info("=" * 60)
    return report


def write_report(report: RunReport, report_path: Optional[str] = None) -> Optional[str]:
    """Save the report to ``report_path`` or, when enabled, to the report directory."""
    if report_path is None:
        if not settings.save_report:
            logger.info("Report file saving is disabled (RC_SAVE_REPORT=false)")
            return None
        report_path = str(report_path_for(report, settings.report_dir))

    result = save_run_report(report, report_path)
    if result.is_success():
        logger.info(f"Run report saved to: {result.value['saved_to']}")
        return result.value["saved_to"]
    logger.warning(f"Failed to save run report: {result.error}")
    return None


def main():
    """Main entry point for the reconciliation engine."""
    parser = argparse.ArgumentParser(
        description=f"{settings.app_name} - Historical Clinical Data Reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Reconcile a workbook into the configured store
  python -m reconciler.main --input historico.xlsx

  # Preview the changes without writing
  python -m reconciler.main --input historico.xlsx --dry-run

  # CSV exports with a custom sheet mapping
  export RC_DB_PATH=reconciled.duckdb
  python -m reconciler.main --input exports/ --mapping mapping.json
        """
    )

    parser.add_argument(
        "--input", "-i",
        required=True,
        nargs="+",
        help="Source path(s): XLSX workbook, CSV file or directory of CSV files"
    )

    parser.add_argument(
        "--mapping", "-m",
        type=str,
        help="Sheet mapping JSON file (default: built-in workbook layout)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run against an in-memory copy of the store and discard the writes"
    )

    parser.add_argument(
        "--report", "-r",
        type=str,
        help="Path of the JSON run report"
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    for source in args.input:
        if not Path(source).exists():
            logger.error(f"Source not found: {source}")
            sys.exit(EXIT_CONFIGURATION_ERROR)

    report = run_reconciliation(args.input, mapping_path=args.mapping, dry_run=args.dry_run)
    print_run_report_summary(report.to_dict())
    write_report(report, args.report)
    sys.exit(exit_code_for(report))


if __name__ == "__main__":
    main()
