"""Historical clinical data reconciliation engine.

Ingests legacy spreadsheet exports into a canonical Patient / Case /
TimeSeriesRecord model and repairs duplicates, case boundaries and
inconsistent dates in re-runnable passes.
"""

__version__ = "0.1.0"
