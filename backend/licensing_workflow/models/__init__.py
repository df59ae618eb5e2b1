"""Licensing Workflow - Data Models"""
from .db_models import (
    # Enums
    ActorType, ApplicationStatus, AssignmentAction, AssignmentStrategy, DocumentType,
    NotificationStatus, OfficerRole, PositionCategory, RoleTier, SignatureStatus,
    StageRole, WorkflowTrigger,
    # Tables
    AssignmentHistoryDB, AssignmentRuleDB, CaseDB, CaseDocumentDB, CaseStageDB,
    NotificationDB, NotificationOutboxDB, OfficerDB, RoundRobinCursorDB,
    SignatureAttemptDB, StatusTransitionLogDB,
)
from .results import (
    AssignmentHistoryResult, AssignmentRecord, CaseStageInfo, CaseStageInfoResult,
    OperationResult, StageSnapshot,
)
