"""
Assignment History Repository

Reads and supersedes AssignmentHistory rows. Rows are never edited except to
deactivate them once, stamping when and how long they were active.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ...models.db_models import AssignmentHistoryDB


class AssignmentHistoryRepository:
    """Access to the assignment audit trail."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_active(self, case_id: str) -> Optional[AssignmentHistoryDB]:
        return (
            self.db.query(AssignmentHistoryDB)
            .filter(AssignmentHistoryDB.case_id == case_id, AssignmentHistoryDB.is_active.is_(True))
            .first()
        )

    def list_for_case(self, case_id: str) -> List[AssignmentHistoryDB]:
        return (
            self.db.query(AssignmentHistoryDB)
            .filter(AssignmentHistoryDB.case_id == case_id)
            .order_by(AssignmentHistoryDB.assigned_at, AssignmentHistoryDB.id)
            .all()
        )

    def deactivate_active(self, case_id: str, now: datetime) -> Optional[AssignmentHistoryDB]:
        """
        Supersede the case's active row, if any.

        Flushes so the partial unique index sees the deactivation before a
        replacement row is inserted.
        """
        active_rows = (
            self.db.query(AssignmentHistoryDB)
            .filter(AssignmentHistoryDB.case_id == case_id, AssignmentHistoryDB.is_active.is_(True))
            .all()
        )
        for row in active_rows:
            row.is_active = False
            row.inactivated_at = now
            row.duration_hours = round((now - row.assigned_at).total_seconds() / 3600.0, 4)
        if active_rows:
            self.db.flush()
            return active_rows[0]
        return None
