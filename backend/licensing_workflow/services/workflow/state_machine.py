"""
Workflow State Machine

Authoritative definition of legal status transitions for a licensing case.
Every status change goes through transition(), is logged immutably, and is
written under the per-case lock. Entering a status that needs a reviewer
triggers auto-assignment; if nobody is assignable the new status stands and
the case is surfaced as unassigned.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple, Union
from uuid import uuid4

from sqlalchemy.orm import Session

from ...clock import utc_now
from ...errors import InvalidTransition, NoEligibleReviewer, ValidationError, WorkloadExceeded
from ...locks import case_locks
from ...models.db_models import (
    ActorType, ApplicationStatus, AssignmentHistoryDB, CaseDB, PositionCategory,
    StageRole, StatusTransitionLogDB, WorkflowTrigger,
)
from ..assignment.history import AssignmentHistoryRepository
from .case_records import get_or_create_stage, load_case
from .stage_roles import STAGE_CONFIG, requires_signature, stage_for_status, stage_for_trigger

logger = logging.getLogger(__name__)


# =============================================================================
# STATUS CONFIGURATION
# =============================================================================
#
# assigns_stage: entering this status hands the case to a new stage reviewer
# next_action:   what the case is waiting for, shown to callers
#
# =============================================================================

STATUS_CONFIG = {
    ApplicationStatus.SUBMITTED: {
        "description": "Application submitted by applicant",
        "assigns_stage": None,
        "next_action": "Awaiting submission to Junior Engineer",
        "terminal": False,
    },
    ApplicationStatus.JE_PENDING: {
        "description": "Waiting for Junior Engineer review",
        "assigns_stage": StageRole.JE,
        "next_action": "Junior Engineer to schedule appointment",
        "terminal": False,
    },
    ApplicationStatus.APPOINTMENT_SCHEDULED: {
        "description": "Appointment with applicant scheduled",
        "assigns_stage": None,
        "next_action": "Junior Engineer to complete appointment",
        "terminal": False,
    },
    ApplicationStatus.DOCUMENT_VERIFICATION_PENDING: {
        "description": "Appointment done, documents not yet verified",
        "assigns_stage": None,
        "next_action": "Junior Engineer to start document verification",
        "terminal": False,
    },
    ApplicationStatus.DOCUMENT_VERIFICATION_IN_PROGRESS: {
        "description": "Junior Engineer verifying documents",
        "assigns_stage": None,
        "next_action": "Junior Engineer to complete document verification",
        "terminal": False,
    },
    ApplicationStatus.DOCUMENT_VERIFICATION_COMPLETED: {
        "description": "All documents verified",
        "assigns_stage": None,
        "next_action": "Junior Engineer to request digital signature",
        "terminal": False,
    },
    ApplicationStatus.AWAITING_JE_SIGNATURE: {
        "description": "Recommendation form awaiting Junior Engineer signature",
        "assigns_stage": None,
        "next_action": "Junior Engineer to sign recommendation form",
        "terminal": False,
    },
    ApplicationStatus.AE_PENDING: {
        "description": "Waiting for Assistant Engineer signature",
        "assigns_stage": StageRole.AE,
        "next_action": "Assistant Engineer to sign recommendation form",
        "terminal": False,
    },
    ApplicationStatus.EE_PENDING: {
        "description": "Waiting for Executive Engineer signature",
        "assigns_stage": StageRole.EE,
        "next_action": "Executive Engineer to sign recommendation form",
        "terminal": False,
    },
    ApplicationStatus.CE_PENDING: {
        "description": "Waiting for City Engineer signature",
        "assigns_stage": StageRole.CE,
        "next_action": "City Engineer to sign recommendation form",
        "terminal": False,
    },
    ApplicationStatus.PAYMENT_PENDING: {
        "description": "Recommendation approved, licence fee outstanding",
        "assigns_stage": None,
        "next_action": "Applicant to complete payment",
        "terminal": False,
    },
    ApplicationStatus.CLERK_PENDING: {
        "description": "Payment received, waiting for Clerk processing",
        "assigns_stage": StageRole.CLERK,
        "next_action": "Clerk to process application",
        "terminal": False,
    },
    ApplicationStatus.EE_SIGN_PENDING: {
        "description": "Licence certificate awaiting Executive Engineer signature",
        "assigns_stage": StageRole.EE_STAGE2,
        "next_action": "Executive Engineer to sign licence certificate",
        "terminal": False,
    },
    ApplicationStatus.CE_SIGN_PENDING: {
        "description": "Licence certificate awaiting City Engineer signature",
        "assigns_stage": StageRole.CE_STAGE2,
        "next_action": "City Engineer to sign licence certificate",
        "terminal": False,
    },
    ApplicationStatus.APPROVED: {
        "description": "Licence issued",
        "assigns_stage": None,
        "next_action": "None - application approved",
        "terminal": True,
    },
    ApplicationStatus.REJECTED: {
        "description": "Application rejected",
        "assigns_stage": None,
        "next_action": "None - application rejected",
        "terminal": True,
    },
}


# trigger -> (required source status, destination status)
TRANSITIONS: Dict[WorkflowTrigger, Tuple[ApplicationStatus, ApplicationStatus]] = {
    WorkflowTrigger.SUBMIT: (ApplicationStatus.SUBMITTED, ApplicationStatus.JE_PENDING),
    WorkflowTrigger.SCHEDULE_APPOINTMENT: (
        ApplicationStatus.JE_PENDING, ApplicationStatus.APPOINTMENT_SCHEDULED),
    WorkflowTrigger.COMPLETE_APPOINTMENT: (
        ApplicationStatus.APPOINTMENT_SCHEDULED, ApplicationStatus.DOCUMENT_VERIFICATION_PENDING),
    WorkflowTrigger.START_DOCUMENT_VERIFICATION: (
        ApplicationStatus.DOCUMENT_VERIFICATION_PENDING, ApplicationStatus.DOCUMENT_VERIFICATION_IN_PROGRESS),
    WorkflowTrigger.COMPLETE_DOCUMENT_VERIFICATION: (
        ApplicationStatus.DOCUMENT_VERIFICATION_IN_PROGRESS, ApplicationStatus.DOCUMENT_VERIFICATION_COMPLETED),
    WorkflowTrigger.REQUEST_JE_SIGNATURE: (
        ApplicationStatus.DOCUMENT_VERIFICATION_COMPLETED, ApplicationStatus.AWAITING_JE_SIGNATURE),
    WorkflowTrigger.JE_SIGNED: (ApplicationStatus.AWAITING_JE_SIGNATURE, ApplicationStatus.AE_PENDING),
    WorkflowTrigger.AE_SIGNED: (ApplicationStatus.AE_PENDING, ApplicationStatus.EE_PENDING),
    WorkflowTrigger.EE_SIGNED: (ApplicationStatus.EE_PENDING, ApplicationStatus.CE_PENDING),
    WorkflowTrigger.CE_SIGNED: (ApplicationStatus.CE_PENDING, ApplicationStatus.PAYMENT_PENDING),
    WorkflowTrigger.PAYMENT_COMPLETED: (ApplicationStatus.PAYMENT_PENDING, ApplicationStatus.CLERK_PENDING),
    WorkflowTrigger.CLERK_APPROVED: (ApplicationStatus.CLERK_PENDING, ApplicationStatus.EE_SIGN_PENDING),
    WorkflowTrigger.EE_STAGE2_SIGNED: (ApplicationStatus.EE_SIGN_PENDING, ApplicationStatus.CE_SIGN_PENDING),
    WorkflowTrigger.CE_STAGE2_SIGNED: (ApplicationStatus.CE_SIGN_PENDING, ApplicationStatus.APPROVED),
}

TriggerOrTarget = Union[WorkflowTrigger, ApplicationStatus, str]


@dataclass
class TransitionOutcome:
    """Result of a status change and the assignment that followed it."""
    case_id: str
    from_status: Optional[ApplicationStatus]
    to_status: ApplicationStatus
    trigger: WorkflowTrigger
    assignment: Optional[AssignmentHistoryDB] = None
    unassigned: bool = False
    message: str = ""


# =============================================================================
# STATE MACHINE
# =============================================================================

class WorkflowStateMachine:
    """
    Deterministic state machine for licensing cases.

    Core Principles:
    - The transition table is static; the current status must match the trigger's source
    - Signature triggers only fire once the stage signature is recorded
    - Rejection is possible from every non-terminal status and needs comments
    - Status changes are committed before auto-assignment runs
    """

    def __init__(
        self,
        db_session: Session,
        assignment_engine=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db_session
        self.assignment_engine = assignment_engine
        self.clock = clock
        self.history = AssignmentHistoryRepository(db_session)

    def get_status_config(self, status: ApplicationStatus) -> Dict[str, Any]:
        """Get configuration for a status."""
        return STATUS_CONFIG.get(status, {})

    def is_terminal_status(self, status: ApplicationStatus) -> bool:
        return self.get_status_config(status).get("terminal", False)

    def get_next_action(self, status: ApplicationStatus) -> str:
        return self.get_status_config(status).get("next_action", "")

    def can_transition(
        self,
        from_status: ApplicationStatus,
        trigger: WorkflowTrigger,
    ) -> Tuple[bool, str]:
        """
        Check if a trigger is legal from a status.

        Returns (allowed, reason)
        """
        if trigger == WorkflowTrigger.REJECT:
            if self.is_terminal_status(from_status):
                return False, f"Cannot reject a case in terminal status {from_status.value}"
            return True, "Transition allowed"

        expected = TRANSITIONS.get(trigger)
        if expected is None:
            return False, f"Unknown trigger {trigger}"
        if expected[0] != from_status:
            return False, (
                f"Cannot apply {trigger.value} from {from_status.value}; "
                f"expected {expected[0].value}"
            )
        return True, "Transition allowed"

    def resolve_trigger(self, current: ApplicationStatus, trigger: TriggerOrTarget) -> WorkflowTrigger:
        """
        Accept a trigger or a target status.

        A target status is resolved to the unique trigger leading from the
        current status to it.
        """
        if isinstance(trigger, WorkflowTrigger):
            return trigger
        if isinstance(trigger, ApplicationStatus):
            target = trigger
        else:
            if trigger in WorkflowTrigger.__members__:
                return WorkflowTrigger[trigger]
            if trigger not in ApplicationStatus.__members__:
                raise InvalidTransition(f"Unknown trigger or status '{trigger}'")
            target = ApplicationStatus[trigger]

        if target == ApplicationStatus.REJECTED:
            return WorkflowTrigger.REJECT
        for candidate, (source, destination) in TRANSITIONS.items():
            if source == current and destination == target:
                return candidate
        raise InvalidTransition(
            f"No transition from {current.value} to {target.value}",
            from_status=current.value,
            to_status=target.value,
        )

    def transition(
        self,
        case: CaseDB,
        trigger: WorkflowTrigger,
        actor: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> Tuple[ApplicationStatus, ApplicationStatus]:
        """
        Apply a trigger to a loaded case. Does not commit.

        Returns (from_status, to_status). Raises InvalidTransition.
        """
        from_status = case.status
        allowed, reason = self.can_transition(from_status, trigger)
        if not allowed:
            raise InvalidTransition(reason, case_id=case.id, from_status=from_status.value)

        now = self.clock()
        if trigger == WorkflowTrigger.REJECT:
            to_status = ApplicationStatus.REJECTED
        else:
            to_status = TRANSITIONS[trigger][1]
            self._apply_stage_completion(case, trigger, actor_id, comments, now)

        self.db.add(StatusTransitionLogDB(
            id=str(uuid4()),
            case_id=case.id,
            from_status=from_status,
            to_status=to_status,
            trigger=trigger,
            actor=actor,
            actor_id=actor_id,
            comments=comments,
            created_at=now,
        ))

        case.status = to_status
        case.updated_at = now
        if to_status == ApplicationStatus.APPROVED:
            case.approved_at = now
        if self.is_terminal_status(to_status):
            self.history.deactivate_active(case.id, now)

        return from_status, to_status

    def _apply_stage_completion(
        self,
        case: CaseDB,
        trigger: WorkflowTrigger,
        actor_id: Optional[str],
        comments: Optional[str],
        now: datetime,
    ) -> None:
        stage = stage_for_trigger(trigger)
        if stage is None:
            return
        if requires_signature(stage):
            row = case.get_stage(stage)
            if row is None or not row.signature_applied:
                raise InvalidTransition(
                    f"{STAGE_CONFIG[stage]['label']} signature has not been applied",
                    case_id=case.id,
                    stage=stage.value,
                )
            return
        # Approval-only stage (Clerk)
        row = get_or_create_stage(self.db, case, stage)
        row.approved = True
        row.approval_comments = comments
        row.approved_at = now

    # =========================================================================
    # ENTRY POINTS (own the case lock and the commit)
    # =========================================================================

    def open_case(
        self,
        applicant_first_name: str,
        category: PositionCategory,
        applicant_last_name: Optional[str] = None,
        applicant_email: Optional[str] = None,
        applicant_mobile: Optional[str] = None,
        case_number: Optional[str] = None,
    ) -> CaseDB:
        """Create a case in SUBMITTED."""
        if not applicant_first_name or not applicant_first_name.strip():
            raise ValidationError("Applicant first name is required")
        now = self.clock()
        case = CaseDB(
            id=str(uuid4()),
            case_number=case_number or f"LIC-{now:%Y%m}-{uuid4().hex[:8].upper()}",
            applicant_first_name=applicant_first_name.strip(),
            applicant_last_name=applicant_last_name,
            applicant_email=applicant_email,
            applicant_mobile=applicant_mobile,
            category=category,
            status=ApplicationStatus.SUBMITTED,
            submitted_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            self.db.add(case)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Case {case.case_number} opened for {category.value}")
        return case

    def advance(
        self,
        case_id: str,
        trigger: TriggerOrTarget,
        actor: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> TransitionOutcome:
        """
        Move a case forward and assign the next stage reviewer if needed.

        The status change is committed first; a failed auto-assignment is a
        partial success, never a rollback.
        """
        with case_locks.hold(case_id):
            try:
                case = load_case(self.db, case_id, for_update=True)
                resolved = self.resolve_trigger(case.status, trigger)
                if resolved == WorkflowTrigger.REJECT:
                    raise InvalidTransition("Use reject() to reject a case", case_id=case_id)
                from_status, to_status = self.transition(case, resolved, actor, actor_id, comments)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

            logger.info(f"Case {case_id}: {from_status.value} -> {to_status.value} ({resolved.value})")
            outcome = TransitionOutcome(
                case_id=case_id,
                from_status=from_status,
                to_status=to_status,
                trigger=resolved,
                message=f"Transitioned to {to_status.value}",
            )
            self.assign_entered_stage(outcome)
            return outcome

    def reject(
        self,
        case_id: str,
        comments: str,
        rejected_by: Optional[str] = None,
    ) -> TransitionOutcome:
        """Reject a non-terminal case. Comments are mandatory."""
        if comments is None or not comments.strip():
            raise ValidationError("Rejection comments are required", case_id=case_id)

        with case_locks.hold(case_id):
            try:
                case = load_case(self.db, case_id, for_update=True)
                now = self.clock()
                stage = stage_for_status(case.status)
                from_status, to_status = self.transition(
                    case,
                    WorkflowTrigger.REJECT,
                    actor=ActorType.OFFICER if rejected_by else ActorType.SYSTEM,
                    actor_id=rejected_by,
                    comments=comments.strip(),
                )
                if stage is not None:
                    row = get_or_create_stage(self.db, case, stage)
                    row.rejected = True
                    row.rejection_comments = comments.strip()
                    row.rejected_at = now
                case.rejected_at = now
                case.remarks = comments.strip()
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info(f"Case {case_id} rejected from {from_status.value}")
        return TransitionOutcome(
            case_id=case_id,
            from_status=from_status,
            to_status=to_status,
            trigger=WorkflowTrigger.REJECT,
            message="Application rejected",
        )

    def assign_entered_stage(self, outcome: TransitionOutcome) -> TransitionOutcome:
        """
        Auto-assign the stage the case just entered, if it needs a reviewer.

        NoEligibleReviewer / WorkloadExceeded leave the case unassigned with
        a warning.
        """
        stage = self.get_status_config(outcome.to_status).get("assigns_stage")
        if stage is None or self.assignment_engine is None:
            return outcome

        try:
            outcome.assignment = self.assignment_engine.assign(
                outcome.case_id,
                stage=stage,
                reason=f"Auto-assigned on entering {outcome.to_status.value}",
            )
            outcome.message = f"{outcome.message}; assigned to officer {outcome.assignment.officer_id}"
        except (NoEligibleReviewer, WorkloadExceeded) as e:
            outcome.unassigned = True
            outcome.message = (
                f"{outcome.message}; status updated but no {STAGE_CONFIG[stage]['label']} "
                f"available ({e.message})"
            )
            logger.warning(
                f"Case {outcome.case_id} moved to {outcome.to_status.value} "
                f"but no {STAGE_CONFIG[stage]['label']} available: {e.message}"
            )
        return outcome
