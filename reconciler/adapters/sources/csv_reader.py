"""CSV Directory Source Adapter.

Treats a directory of CSV files (or a single CSV file) as a workbook: each
file is one sheet named after the file stem, so ``IntraopCierre.csv`` feeds
the same mapping as the ``IntraopCierre`` workbook sheet.
"""

import logging
from pathlib import Path
from typing import Optional

import pandas as pd

from reconciler.adapters.sources.workbook_reader import frame_to_sheet
from reconciler.domain.ports import SourceNotFoundError, SourcePort, UnsupportedSourceError
from reconciler.domain.source_row import SheetView

logger = logging.getLogger(__name__)


class CSVDirectoryReader(SourcePort):
    """Source adapter for exported CSV sheets.

    Parameters:
        path: Directory holding ``*.csv`` files, or one CSV file
        delimiter: Field delimiter (default ',')
        encoding: File encoding; the default strips an Excel BOM
    """

    def __init__(self, path: str, delimiter: str = ',', encoding: str = 'utf-8-sig'):
        self.path = Path(path)
        self.delimiter = delimiter
        self.encoding = encoding

        if not self.path.exists():
            raise SourceNotFoundError(f"Source not found: {path}", source=str(path))
        if not self.can_read(str(path)):
            raise UnsupportedSourceError(
                f"Not a CSV file or directory of CSV files: {path}",
                source=str(path),
                adapter=type(self).__name__,
            )

        self.source_name = self.path.name
        if self.path.is_dir():
            files = sorted(self.path.glob("*.csv"))
        else:
            files = [self.path]
        self._files = {f.stem: f for f in files}

    def can_read(self, source: str) -> bool:
        path = Path(source)
        if path.is_dir():
            return any(path.glob("*.csv"))
        return path.suffix.lower() == ".csv"

    def sheet_names(self) -> list[str]:
        return list(self._files)

    def read_sheet(self, sheet_name: str) -> SheetView:
        file_path = self._files.get(sheet_name)
        if file_path is None:
            raise SourceNotFoundError(
                f"Sheet '{sheet_name}' not found in {self.source_name}",
                source=self.source_name,
            )
        # Keep cells as text; empty cells become "" and are treated as blank.
        try:
            df = pd.read_csv(
                file_path,
                sep=self.delimiter,
                dtype=str,
                keep_default_na=False,
                encoding=self.encoding,
            )
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError, OSError) as e:
            raise UnsupportedSourceError(
                f"Cannot read {file_path.name} in {self.source_name}: {str(e)}",
                source=str(file_path),
                adapter=type(self).__name__,
            ) from e
        logger.debug(f"Read {len(df)} rows from {file_path.name}")
        return frame_to_sheet(self.source_name, sheet_name, df)

    def get_source_info(self) -> Optional[dict]:
        return {
            "source": self.source_name,
            "format": "csv",
            "sheets": sorted(self._files),
        }
