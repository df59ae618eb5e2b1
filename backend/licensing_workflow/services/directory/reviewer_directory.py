"""
Reviewer Directory

Read-only lookup of officers by role plus their open-case workload.
A case stage counts against its assignee until it is signed, approved or
rejected.
"""
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from sqlalchemy import false, func, or_
from sqlalchemy.orm import Session

from ...models.db_models import CaseStageDB, OfficerDB, OfficerRole


class ReviewerDirectory(ABC):
    """Lookup contract consumed by the assignment engine and signature orchestrator."""

    @abstractmethod
    def get_active_officers_by_role(self, role: OfficerRole) -> List[OfficerDB]:
        """Active officers holding `role`, in stable id order."""
        raise NotImplementedError

    @abstractmethod
    def get_officer(self, officer_id: str) -> Optional[OfficerDB]:
        raise NotImplementedError

    @abstractmethod
    def get_workloads(self, officer_ids: Iterable[str]) -> Dict[str, int]:
        """Open-case count per officer id (0 for officers with none)."""
        raise NotImplementedError

    def get_workload(self, officer_id: str) -> int:
        return self.get_workloads([officer_id]).get(officer_id, 0)

    def list_workloads_by_role(self, role: OfficerRole) -> List[Dict[str, object]]:
        """Workload overview for every active officer in a role."""
        officers = self.get_active_officers_by_role(role)
        workloads = self.get_workloads(o.id for o in officers)
        return [
            {
                "officer_id": o.id,
                "name": o.name,
                "role": o.role.value,
                "workload": workloads[o.id],
            }
            for o in officers
        ]


class SqlReviewerDirectory(ReviewerDirectory):
    """Directory backed by the officers and case_stages tables."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_active_officers_by_role(self, role: OfficerRole) -> List[OfficerDB]:
        return (
            self.db.query(OfficerDB)
            .filter(OfficerDB.role == role, OfficerDB.is_active.is_(True))
            .order_by(OfficerDB.id)
            .all()
        )

    def get_officer(self, officer_id: str) -> Optional[OfficerDB]:
        if not officer_id:
            return None
        return self.db.get(OfficerDB, officer_id)

    def get_workloads(self, officer_ids: Iterable[str]) -> Dict[str, int]:
        ids = list(officer_ids)
        workloads = {officer_id: 0 for officer_id in ids}
        if not ids:
            return workloads

        rows = (
            self.db.query(CaseStageDB.assigned_officer_id, func.count(CaseStageDB.id))
            .filter(
                CaseStageDB.assigned_officer_id.in_(ids),
                CaseStageDB.signature_applied.is_(False),
                or_(CaseStageDB.approved.is_(None), CaseStageDB.approved == false()),
                or_(CaseStageDB.rejected.is_(None), CaseStageDB.rejected == false()),
            )
            .group_by(CaseStageDB.assigned_officer_id)
            .all()
        )
        for officer_id, count in rows:
            workloads[officer_id] = count
        return workloads
