"""Excel Workbook Source Adapter.

Reads every sheet of an ``.xlsx`` workbook with pandas (openpyxl engine) and
exposes each one as a SheetView: the header row plus data rows as raw cell
values. No type coercion happens here; the ingest pass parses cells through
the temporal and identifier services.

Security Impact:
    - Workbooks are read in read-only mode, never written
    - Cell values are kept raw so nothing is silently coerced

Architecture:
    - Implements SourcePort (Hexagonal Architecture)
    - Whole workbook is loaded once and cached per reader
"""

import logging
import zipfile
from pathlib import Path
from typing import Optional

import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

from reconciler.domain.ports import SourceNotFoundError, SourcePort, UnsupportedSourceError
from reconciler.domain.source_row import SheetView

logger = logging.getLogger(__name__)

WORKBOOK_EXTENSIONS = (".xlsx", ".xlsm")


def frame_to_sheet(source: str, name: str, df: pd.DataFrame) -> SheetView:
    """Convert a DataFrame into a SheetView with None for missing cells."""
    headers = [str(column).strip() for column in df.columns]
    df = df.copy()
    df.columns = headers
    df = df.astype(object).where(pd.notna(df), None)
    return SheetView(source=source, name=name, headers=headers, rows=df.to_dict(orient="records"))


class WorkbookReader(SourcePort):
    """Source adapter for Excel workbooks.

    Parameters:
        path: Path to the workbook

    Example Usage:
        ```python
        reader = WorkbookReader("historico.xlsx")
        for name in reader.sheet_names():
            sheet = reader.read_sheet(name)
        ```
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.source_name = self.path.name
        self._sheets: Optional[dict[str, pd.DataFrame]] = None

        if not self.path.exists():
            raise SourceNotFoundError(f"Workbook not found: {path}", source=str(path))
        if not self.can_read(str(path)):
            raise UnsupportedSourceError(
                f"Not an Excel workbook: {path}",
                source=str(path),
                adapter=type(self).__name__,
            )

    def can_read(self, source: str) -> bool:
        return Path(source).suffix.lower() in WORKBOOK_EXTENSIONS

    def _load(self) -> dict[str, pd.DataFrame]:
        if self._sheets is None:
            logger.info(f"Reading workbook {self.source_name}")
            try:
                self._sheets = pd.read_excel(self.path, sheet_name=None, engine="openpyxl", dtype=object)
            except (zipfile.BadZipFile, InvalidFileException, OSError, ValueError, KeyError) as e:
                raise UnsupportedSourceError(
                    f"Cannot read workbook {self.source_name}: {str(e)}",
                    source=str(self.path),
                    adapter=type(self).__name__,
                ) from e
            logger.info(f"Loaded {len(self._sheets)} sheets from {self.source_name}")
        return self._sheets

    def sheet_names(self) -> list[str]:
        return list(self._load())

    def read_sheet(self, sheet_name: str) -> SheetView:
        sheets = self._load()
        if sheet_name not in sheets:
            raise SourceNotFoundError(
                f"Sheet '{sheet_name}' not found in {self.source_name}",
                source=self.source_name,
            )
        return frame_to_sheet(self.source_name, sheet_name, sheets[sheet_name])

    def get_source_info(self) -> Optional[dict]:
        return {
            "source": self.source_name,
            "format": "xlsx",
            "sheets": {name: len(df) for name, df in self._load().items()},
        }
