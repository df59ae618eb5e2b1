"""
Licensing Workflow - Result Models
Structured results returned by LicensingWorkflowService
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class OperationResult(BaseModel):
    """Outcome of a workflow operation."""
    success: bool = Field(..., description="True when the operation took effect (possibly partially)")
    message: str = Field(..., description="Human-readable outcome")
    error_code: Optional[str] = Field(None, description="Stable error code on failure")
    case_id: Optional[str] = None
    status: Optional[str] = Field(None, description="Case status after the operation")
    officer_id: Optional[str] = None
    assignment_id: Optional[str] = None
    attempt_id: Optional[str] = None
    document_ref: Optional[str] = None
    unassigned: bool = Field(False, description="Status advanced but no reviewer could be assigned")
    details: Dict[str, Any] = Field(default_factory=dict)


class AssignmentRecord(BaseModel):
    """One AssignmentHistory row."""
    id: str
    case_id: str
    stage: str
    previous_officer_id: Optional[str] = None
    officer_id: str
    action: str
    reason: Optional[str] = None
    assigned_by: Optional[str] = None
    rule_id: Optional[str] = None
    strategy_used: Optional[str] = None
    workload_at_assignment: int
    priority_score: Optional[float] = None
    status_at_assignment: str
    is_active: bool
    assigned_at: datetime
    inactivated_at: Optional[datetime] = None
    duration_hours: Optional[float] = None


class StageSnapshot(BaseModel):
    """Assignment, decision and signature state of one stage."""
    stage: str
    assigned_officer_id: Optional[str] = None
    assigned_at: Optional[datetime] = None
    approved: Optional[bool] = None
    approval_comments: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected: Optional[bool] = None
    rejection_comments: Optional[str] = None
    rejected_at: Optional[datetime] = None
    signature_applied: bool = False
    signature_at: Optional[datetime] = None


class CaseStageInfo(BaseModel):
    """Where a case stands and who holds it."""
    case_id: str
    case_number: str
    category: str
    status: str
    current_stage: Optional[str] = None
    current_officer_id: Optional[str] = None
    assigned_at: Optional[datetime] = None
    unassigned: bool = Field(False, description="Current stage needs a reviewer but has none")
    next_action: str
    stages: List[StageSnapshot] = Field(default_factory=list)


class AssignmentHistoryResult(OperationResult):
    records: List[AssignmentRecord] = Field(default_factory=list)


class CaseStageInfoResult(OperationResult):
    info: Optional[CaseStageInfo] = None
