"""Change Audit Logger.

Collects the changes reconciliation passes make to persisted records (merged
duplicates, corrected case ends) so they can be summarized in the run report.

Security Impact:
    - Creates an append-only trail of destructive and corrective changes
    - Entries carry surrogate ids, never raw identifiers

Architecture:
    - Infrastructure layer component
    - Called from domain services through ``log_change_event``
    - Buffers in memory for the lifetime of one run
"""

import logging
from collections import Counter
from typing import List, Optional

from reconciler.domain.cdc_models import ChangeEvent

logger = logging.getLogger(__name__)


class ChangeAuditLogger:
    """In-memory buffer of change events.

    Example Usage:
        ```python
        audit = ChangeAuditLogger()
        audit.set_run_context(run_id="run_123")
        merger = DuplicateMerger(storage, audit_logger=audit)
        merger.run()
        audit.summary()  # {"cases.DELETE": 2}
        ```
    """

    def __init__(self):
        self._logs: List[dict] = []
        self._run_id: Optional[str] = None

    def set_run_context(self, run_id: Optional[str] = None) -> None:
        self._run_id = run_id

    def log_change_event(self, change_event: ChangeEvent) -> None:
        audit_dict = change_event.to_audit_dict()
        if self._run_id:
            audit_dict['run_id'] = self._run_id

        self._logs.append(audit_dict)
        logger.debug(
            f"Logged change event: {change_event.table_name}."
            f"{change_event.record_id}.{change_event.field_name} "
            f"({change_event.change_type.value})"
        )

    def get_logs(self) -> List[dict]:
        return self._logs.copy()

    def clear_logs(self) -> None:
        self._logs.clear()
        logger.debug("Cleared change audit logs")

    def get_log_count(self) -> int:
        return len(self._logs)

    def summary(self) -> dict[str, int]:
        """Number of logged changes per ``table.change_type``."""
        return dict(Counter(f"{log['table_name']}.{log['change_type']}" for log in self._logs))
