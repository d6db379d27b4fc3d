"""Source adapters for the reconciliation engine.

This module contains source readers that implement the SourcePort interface
for reading historical workbooks (Excel, CSV exports) as SheetViews.
"""

from pathlib import Path

from reconciler.adapters.sources.csv_reader import CSVDirectoryReader
from reconciler.adapters.sources.workbook_reader import WORKBOOK_EXTENSIONS, WorkbookReader
from reconciler.domain.ports import SourceNotFoundError, SourcePort, UnsupportedSourceError

__all__ = ["CSVDirectoryReader", "WorkbookReader", "get_reader"]


def get_reader(source: str, **kwargs) -> SourcePort:
    """Factory function to get the appropriate source reader.

    Parameters:
        source: Workbook path, CSV file or directory of CSV files
        **kwargs: Passed to the reader constructor (e.g. delimiter for CSV)

    Returns:
        SourcePort: Reader bound to ``source``

    Raises:
        SourceNotFoundError: If the source does not exist
        UnsupportedSourceError: If no reader can handle the source

    Example Usage:
        ```python
        reader = get_reader("historico.xlsx")
        reader = get_reader("exports/", delimiter=";")
        ```
    """
    source_path = Path(source)
    if not source_path.exists():
        raise SourceNotFoundError(f"Source not found: {source}", source=source)

    if source_path.is_dir() or source_path.suffix.lower() == ".csv":
        return CSVDirectoryReader(source, **kwargs)
    if source_path.suffix.lower() in WORKBOOK_EXTENSIONS:
        return WorkbookReader(source)

    raise UnsupportedSourceError(
        f"No reader found for source: {source}. Supported formats: XLSX, CSV",
        source=source
    )
