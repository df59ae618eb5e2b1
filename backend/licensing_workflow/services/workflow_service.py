"""
Licensing Workflow Service

Produced interface of the orchestration core. Composes the state machine,
assignment engine and signature orchestrator over one session and turns
their results and WorkflowErrors into OperationResult objects, so callers
never need to catch core exceptions.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..clock import utc_now
from ..errors import SigningFailed, WorkflowError
from ..models.db_models import (
    ActorType, AssignmentHistoryDB, DocumentType, OfficerRole, PositionCategory, StageRole,
)
from ..models.results import (
    AssignmentHistoryResult, AssignmentRecord, CaseStageInfo, CaseStageInfoResult,
    OperationResult, StageSnapshot,
)
from .assignment.assignment_engine import AssignmentEngine
from .assignment.escalation import EscalationScheduler
from .directory.reviewer_directory import ReviewerDirectory
from .documents.document_store import DocumentStore
from .gateway.signing_gateway import SigningGateway
from .notifications.outbox import NotificationDispatcher
from .signature.orchestrator import SignatureOrchestrator
from .workflow.case_records import load_case
from .workflow.stage_roles import stage_for_status
from .workflow.state_machine import TransitionOutcome, TriggerOrTarget, WorkflowStateMachine

logger = logging.getLogger(__name__)


def _assignment_record(history: AssignmentHistoryDB) -> AssignmentRecord:
    return AssignmentRecord(
        id=history.id,
        case_id=history.case_id,
        stage=history.stage.value,
        previous_officer_id=history.previous_officer_id,
        officer_id=history.officer_id,
        action=history.action.value,
        reason=history.reason,
        assigned_by=history.assigned_by,
        rule_id=history.rule_id,
        strategy_used=history.strategy_used.value if history.strategy_used else None,
        workload_at_assignment=history.workload_at_assignment,
        priority_score=history.priority_score,
        status_at_assignment=history.status_at_assignment.value,
        is_active=history.is_active,
        assigned_at=history.assigned_at,
        inactivated_at=history.inactivated_at,
        duration_hours=history.duration_hours,
    )


class LicensingWorkflowService:
    """
    Entry point for the application layer.

    One instance per session / request. Every method returns an
    OperationResult (or subclass); success=False carries the error code.
    """

    def __init__(
        self,
        db_session: Session,
        gateway: SigningGateway,
        documents: Optional[DocumentStore] = None,
        directory: Optional[ReviewerDirectory] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db_session
        self.assignment = AssignmentEngine(db_session, directory=directory, dispatcher=dispatcher, clock=clock)
        self.state_machine = WorkflowStateMachine(db_session, assignment_engine=self.assignment, clock=clock)
        self.signatures = SignatureOrchestrator(
            db_session,
            gateway,
            documents=documents,
            directory=self.assignment.directory,
            state_machine=self.state_machine,
            clock=clock,
        )
        self.escalations = EscalationScheduler(self.assignment)

    @staticmethod
    def _failure(error: WorkflowError, **ids) -> OperationResult:
        return OperationResult(
            success=False,
            message=error.message,
            error_code=error.code,
            details=dict(error.context),
            **ids,
        )

    @staticmethod
    def _transition_result(outcome: TransitionOutcome, **extra) -> OperationResult:
        assignment = outcome.assignment
        return OperationResult(
            success=True,
            message=outcome.message,
            case_id=outcome.case_id,
            status=outcome.to_status.value,
            officer_id=assignment.officer_id if assignment else None,
            assignment_id=assignment.id if assignment else None,
            unassigned=outcome.unassigned,
            details={
                "from_status": outcome.from_status.value if outcome.from_status else None,
                "trigger": outcome.trigger.value,
            },
            **extra,
        )

    @staticmethod
    def _assignment_result(history: AssignmentHistoryDB, message: str) -> OperationResult:
        return OperationResult(
            success=True,
            message=message,
            case_id=history.case_id,
            officer_id=history.officer_id,
            assignment_id=history.id,
            status=history.status_at_assignment.value,
            details={
                "action": history.action.value,
                "strategy_used": history.strategy_used.value if history.strategy_used else None,
                "workload_at_assignment": history.workload_at_assignment,
            },
        )

    # =========================================================================
    # CASE LIFECYCLE
    # =========================================================================

    def create_case(
        self,
        applicant_first_name: str,
        category: PositionCategory,
        applicant_last_name: Optional[str] = None,
        applicant_email: Optional[str] = None,
        applicant_mobile: Optional[str] = None,
        case_number: Optional[str] = None,
    ) -> OperationResult:
        try:
            case = self.state_machine.open_case(
                applicant_first_name,
                category,
                applicant_last_name=applicant_last_name,
                applicant_email=applicant_email,
                applicant_mobile=applicant_mobile,
                case_number=case_number,
            )
        except WorkflowError as e:
            return self._failure(e)
        return OperationResult(
            success=True,
            message=f"Application {case.case_number} created",
            case_id=case.id,
            status=case.status.value,
            details={"case_number": case.case_number},
        )

    def advance(
        self,
        case_id: str,
        trigger: TriggerOrTarget,
        actor_id: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> OperationResult:
        try:
            outcome = self.state_machine.advance(
                case_id,
                trigger,
                actor=ActorType.OFFICER if actor_id else ActorType.SYSTEM,
                actor_id=actor_id,
                comments=comments,
            )
        except WorkflowError as e:
            return self._failure(e, case_id=case_id)
        return self._transition_result(outcome)

    def reject(self, case_id: str, comments: str, rejected_by: Optional[str] = None) -> OperationResult:
        try:
            outcome = self.state_machine.reject(case_id, comments, rejected_by=rejected_by)
        except WorkflowError as e:
            return self._failure(e, case_id=case_id)
        return self._transition_result(outcome)

    # =========================================================================
    # ASSIGNMENT
    # =========================================================================

    def assign(
        self,
        case_id: str,
        stage: Optional[StageRole] = None,
        reason: Optional[str] = None,
        assigned_by: Optional[str] = None,
    ) -> OperationResult:
        try:
            history = self.assignment.assign(case_id, stage=stage, reason=reason, assigned_by=assigned_by)
        except WorkflowError as e:
            return self._failure(e, case_id=case_id)
        return self._assignment_result(history, f"Assigned to officer {history.officer_id}")

    def reassign(
        self,
        case_id: str,
        new_officer_id: str,
        reason: str,
        reassigned_by: Optional[str] = None,
    ) -> OperationResult:
        try:
            history = self.assignment.reassign(case_id, new_officer_id, reason, reassigned_by=reassigned_by)
        except WorkflowError as e:
            return self._failure(e, case_id=case_id, officer_id=new_officer_id)
        return self._assignment_result(history, f"Reassigned to officer {history.officer_id}")

    def escalate(self, case_id: str, reason: str = "Escalation time exceeded") -> OperationResult:
        try:
            history = self.assignment.escalate(case_id, reason=reason)
        except WorkflowError as e:
            return self._failure(e, case_id=case_id)
        return self._assignment_result(history, f"Escalated to officer {history.officer_id}")

    def validate_assignment(self, case_id: str, officer_id: str) -> OperationResult:
        try:
            workload = self.assignment.validate_assignment(case_id, officer_id)
        except WorkflowError as e:
            return self._failure(e, case_id=case_id, officer_id=officer_id)
        return OperationResult(
            success=True,
            message="Officer can take this case",
            case_id=case_id,
            officer_id=officer_id,
            details={"workload": workload},
        )

    def find_escalation_candidates(self, now: Optional[datetime] = None) -> OperationResult:
        candidates, errors = self.assignment.scan_escalation_candidates(now)
        return OperationResult(
            success=True,
            message=f"{len(candidates)} case(s) eligible for escalation",
            details={"case_ids": candidates, "errors": errors},
        )

    def run_escalation_scan(self, now: Optional[datetime] = None) -> OperationResult:
        summary = self.escalations.run_escalation_scan(now)
        return OperationResult(
            success=summary["errors"] == 0,
            message=f"Escalated {summary['escalated']} of {summary['candidates_found']} candidate(s)",
            details=summary,
        )

    # =========================================================================
    # SIGNATURES
    # =========================================================================

    def request_otp(self, case_id: str, officer_id: str) -> OperationResult:
        try:
            message = self.signatures.request_otp(case_id, officer_id)
        except WorkflowError as e:
            result = self._failure(e, case_id=case_id, officer_id=officer_id)
            raw = getattr(e, "raw_response", None)
            if raw:
                result.details["raw_response"] = raw
            return result
        return OperationResult(success=True, message=message, case_id=case_id, officer_id=officer_id)

    def initiate_signature(
        self,
        case_id: str,
        officer_id: str,
        document_type: Optional[DocumentType] = None,
        coordinates: Optional[str] = None,
    ) -> OperationResult:
        try:
            attempt = self.signatures.initiate(case_id, officer_id, document_type, coordinates)
        except WorkflowError as e:
            return self._failure(e, case_id=case_id, officer_id=officer_id)
        return OperationResult(
            success=True,
            message="Signature process initiated",
            case_id=case_id,
            officer_id=officer_id,
            attempt_id=attempt.id,
            details={"stage": attempt.stage.value, "document_type": attempt.document_type.value},
        )

    def complete_signature(
        self,
        attempt_id: str,
        otp: str,
        completed_by: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> OperationResult:
        try:
            outcome = self.signatures.complete(attempt_id, otp, completed_by=completed_by, comments=comments)
        except SigningFailed as e:
            result = self._failure(e, attempt_id=attempt_id)
            result.details["raw_response"] = e.raw_response
            return result
        except WorkflowError as e:
            return self._failure(e, attempt_id=attempt_id)
        return self._transition_result(
            outcome.transition,
            attempt_id=attempt_id,
            document_ref=outcome.document_ref,
        )

    def retry_signature(self, attempt_id: str, otp: str, retried_by: Optional[str] = None) -> OperationResult:
        try:
            outcome = self.signatures.retry(attempt_id, otp, retried_by=retried_by)
        except SigningFailed as e:
            result = self._failure(e, attempt_id=attempt_id)
            result.details["raw_response"] = e.raw_response
            return result
        except WorkflowError as e:
            return self._failure(e, attempt_id=attempt_id)
        return self._transition_result(
            outcome.transition,
            attempt_id=attempt_id,
            document_ref=outcome.document_ref,
        )

    def abandon_signature(self, attempt_id: str, reason: str, abandoned_by: Optional[str] = None) -> OperationResult:
        try:
            attempt = self.signatures.abandon(attempt_id, reason, abandoned_by=abandoned_by)
        except WorkflowError as e:
            return self._failure(e, attempt_id=attempt_id)
        return OperationResult(
            success=True,
            message="Signature attempt abandoned",
            case_id=attempt.case_id,
            attempt_id=attempt.id,
        )

    def verify_signature(self, attempt_id: str) -> OperationResult:
        try:
            attempt = self.signatures.verify(attempt_id)
        except WorkflowError as e:
            return self._failure(e, attempt_id=attempt_id)
        valid = bool(attempt.verification_details and attempt.verification_details.get("valid"))
        return OperationResult(
            success=valid,
            message="Signature verified" if valid else "Stored document does not match the signed artifact",
            error_code=None if valid else "VERIFICATION_MISMATCH",
            case_id=attempt.case_id,
            attempt_id=attempt.id,
            details=dict(attempt.verification_details or {}),
        )

    def revoke_signature(self, attempt_id: str, reason: str, revoked_by: Optional[str] = None) -> OperationResult:
        try:
            attempt = self.signatures.revoke(attempt_id, reason, revoked_by=revoked_by)
        except WorkflowError as e:
            return self._failure(e, attempt_id=attempt_id)
        return OperationResult(
            success=True,
            message="Signature revoked",
            case_id=attempt.case_id,
            attempt_id=attempt.id,
        )

    def find_stale_signature_attempts(self, older_than: timedelta) -> OperationResult:
        attempts = self.signatures.find_stale_attempts(older_than)
        return OperationResult(
            success=True,
            message=f"{len(attempts)} signature attempt(s) in progress longer than {older_than}",
            details={"attempt_ids": [a.id for a in attempts]},
        )

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_case_stage_info(self, case_id: str) -> CaseStageInfoResult:
        try:
            case = load_case(self.db, case_id)
        except WorkflowError as e:
            return CaseStageInfoResult(**self._failure(e, case_id=case_id).model_dump())

        stage = stage_for_status(case.status)
        current = case.get_stage(stage) if stage is not None else None
        order = list(StageRole)
        snapshots = [
            StageSnapshot(
                stage=row.stage.value,
                assigned_officer_id=row.assigned_officer_id,
                assigned_at=row.assigned_at,
                approved=row.approved,
                approval_comments=row.approval_comments,
                approved_at=row.approved_at,
                rejected=row.rejected,
                rejection_comments=row.rejection_comments,
                rejected_at=row.rejected_at,
                signature_applied=row.signature_applied,
                signature_at=row.signature_at,
            )
            for row in sorted(case.stages, key=lambda r: order.index(r.stage))
        ]
        unassigned = stage is not None and (current is None or current.assigned_officer_id is None)
        info = CaseStageInfo(
            case_id=case.id,
            case_number=case.case_number,
            category=case.category.value,
            status=case.status.value,
            current_stage=stage.value if stage else None,
            current_officer_id=current.assigned_officer_id if current else None,
            assigned_at=current.assigned_at if current else None,
            unassigned=unassigned,
            next_action=self.state_machine.get_next_action(case.status),
            stages=snapshots,
        )
        return CaseStageInfoResult(
            success=True,
            message=info.next_action,
            case_id=case.id,
            status=info.status,
            officer_id=info.current_officer_id,
            unassigned=unassigned,
            info=info,
        )

    def get_assignment_history(self, case_id: str) -> AssignmentHistoryResult:
        try:
            load_case(self.db, case_id)
        except WorkflowError as e:
            return AssignmentHistoryResult(**self._failure(e, case_id=case_id).model_dump())

        records = [_assignment_record(h) for h in self.assignment.history.list_for_case(case_id)]
        active = next((r for r in records if r.is_active), None)
        return AssignmentHistoryResult(
            success=True,
            message=f"{len(records)} assignment record(s)",
            case_id=case_id,
            officer_id=active.officer_id if active else None,
            assignment_id=active.id if active else None,
            records=records,
        )

    def get_officer_workloads(self, role: OfficerRole) -> OperationResult:
        officers = self.assignment.directory.list_workloads_by_role(role)
        return OperationResult(
            success=True,
            message=f"{len(officers)} active {role.value} officer(s)",
            details={"officers": officers},
        )
