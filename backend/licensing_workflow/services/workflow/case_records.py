"""Shared case lookups used by every write path."""
from uuid import uuid4

from sqlalchemy.orm import Session

from ...errors import NotFound
from ...models.db_models import CaseDB, CaseStageDB, StageRole


def load_case(db: Session, case_id: str, for_update: bool = False) -> CaseDB:
    """
    Load a case with fresh attributes.

    for_update takes a row lock on databases that support it; callers hold the
    in-process case lock as well.
    """
    query = db.query(CaseDB).filter(CaseDB.id == case_id).populate_existing()
    if for_update:
        query = query.with_for_update()
    case = query.first()
    if case is None:
        raise NotFound(f"Case {case_id} not found", case_id=case_id)
    return case


def get_or_create_stage(db: Session, case: CaseDB, stage: StageRole) -> CaseStageDB:
    row = case.get_stage(stage)
    if row is None:
        row = CaseStageDB(id=str(uuid4()), case_id=case.id, stage=stage, signature_applied=False)
        case.stages.append(row)
        db.add(row)
    return row
