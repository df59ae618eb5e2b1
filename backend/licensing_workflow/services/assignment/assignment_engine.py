"""
Auto-Assignment Engine

Chooses the reviewer for a case stage, keeps the assignment audit trail and
escalates cases that sit too long with one officer.

Write path (one per operation, all under the case lock):
1. Load the case row for update
2. Resolve stage -> officer role and the effective rule
3. Select (round robin additionally holds the role cursor lock)
4. Under the officer lock: re-count workload, validate, write, commit
5. Kick the notification dispatcher once the outermost case lock is released
"""
import logging
from contextlib import ExitStack
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import and_
from sqlalchemy.orm import Session

from ...clock import utc_now
from ...config import DEFAULT_ASSIGNMENT_STRATEGY, DEFAULT_MAX_WORKLOAD_PER_OFFICER
from ...errors import (
    AssignmentRejected, InvalidState, NoEligibleReviewer, OfficerNotFound,
    RoleMismatch, ValidationError, WorkloadExceeded,
)
from ...locks import case_locks, cursor_locks, officer_locks
from ...models.db_models import (
    AssignmentAction, AssignmentHistoryDB, AssignmentRuleDB, AssignmentStrategy,
    CaseDB, CaseStageDB, OfficerDB, OfficerRole, RoundRobinCursorDB, StageRole,
)
from ..directory.reviewer_directory import ReviewerDirectory, SqlReviewerDirectory
from ..notifications.outbox import NotificationDispatcher, enqueue_assignment_notification
from ..workflow.case_records import get_or_create_stage, load_case
from ..workflow.stage_roles import STAGE_CONFIG, resolve_officer_role, stage_for_status
from .history import AssignmentHistoryRepository
from .rules import AssignmentRuleRepository
from .strategies import Selection, select_officer, select_workload_based

logger = logging.getLogger(__name__)


class AssignmentEngine:
    """
    Workload-aware reviewer assignment.

    Selection strategies are pure (see strategies.py); this class owns
    validation, persistence and the serialization around them.
    """

    def __init__(
        self,
        db_session: Session,
        directory: Optional[ReviewerDirectory] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db_session
        self.directory = directory or SqlReviewerDirectory(db_session)
        self.dispatcher = dispatcher
        self.clock = clock
        self.rules = AssignmentRuleRepository(db_session)
        self.history = AssignmentHistoryRepository(db_session)

    # =========================================================================
    # SELECTION
    # =========================================================================

    def select_reviewer(
        self,
        role: OfficerRole,
        strategy: AssignmentStrategy,
        rule: Optional[AssignmentRuleDB] = None,
    ) -> Selection:
        """
        Pick an active officer in `role` with `strategy`.

        Raises NoEligibleReviewer when the role has no active officer.
        Does not move the round-robin cursor.
        """
        officers = self.directory.get_active_officers_by_role(role)
        if rule is not None and rule.minimum_experience_months:
            officers = [
                o for o in officers
                if (o.experience_months or 0) >= rule.minimum_experience_months
            ]
        if not officers:
            raise NoEligibleReviewer(f"No active {role.value} officers available", role=role.value)

        workloads = self.directory.get_workloads(o.id for o in officers)
        last_officer_id = None
        if strategy == AssignmentStrategy.ROUND_ROBIN:
            cursor = self._get_cursor(role)
            last_officer_id = cursor.last_officer_id if cursor else None
        return select_officer(strategy, officers, workloads, last_officer_id)

    def _get_cursor(self, role: OfficerRole) -> Optional[RoundRobinCursorDB]:
        return (
            self.db.query(RoundRobinCursorDB)
            .filter(RoundRobinCursorDB.role == role)
            .populate_existing()
            .first()
        )

    def _advance_cursor(self, role: OfficerRole, officer_id: str) -> None:
        cursor = self._get_cursor(role)
        if cursor is None:
            cursor = RoundRobinCursorDB(id=str(uuid4()), role=role)
            self.db.add(cursor)
        cursor.last_officer_id = officer_id
        cursor.updated_at = self.clock()

    def _strategy_for(self, rule: Optional[AssignmentRuleDB]) -> AssignmentStrategy:
        if rule is not None:
            return rule.strategy
        return AssignmentStrategy(DEFAULT_ASSIGNMENT_STRATEGY)

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def _current_workload(self, case: CaseDB, stage: StageRole, officer: OfficerDB) -> int:
        """Officer's open cases, not counting this case's stage if it is already theirs."""
        workload = self.directory.get_workload(officer.id)
        row = case.get_stage(stage)
        if row is not None and row.assigned_officer_id == officer.id and row.is_open:
            workload -= 1
        return workload

    def _validate(
        self,
        case: CaseDB,
        stage: StageRole,
        officer: OfficerDB,
        rule: Optional[AssignmentRuleDB],
        check_role: bool = True,
    ) -> int:
        """Raise if `officer` cannot take the stage. Returns their workload."""
        if not officer.is_active:
            raise AssignmentRejected(f"Officer {officer.id} is not active", officer_id=officer.id)

        if check_role:
            required = resolve_officer_role(case.category, stage)
            if officer.role != required:
                raise RoleMismatch(
                    f"Officer role {officer.role.value} does not match required role {required.value}",
                    officer_id=officer.id,
                    required_role=required.value,
                )

        max_workload = rule.max_workload_per_officer if rule is not None else DEFAULT_MAX_WORKLOAD_PER_OFFICER
        workload = self._current_workload(case, stage, officer)
        if workload >= max_workload:
            raise WorkloadExceeded(
                f"Officer {officer.id} has reached maximum workload ({workload}/{max_workload})",
                officer_id=officer.id,
                workload=workload,
                max_workload=max_workload,
            )
        return workload

    def validate_assignment(self, case_id: str, officer_id: str, stage: Optional[StageRole] = None) -> int:
        """
        Check that an officer may take a case's current (or given) stage.

        Returns the officer's current workload; raises on any failed check.
        """
        case = load_case(self.db, case_id)
        stage = stage or self._require_stage(case)
        officer = self._require_officer(officer_id)
        rule = self.rules.effective_rule(stage, case.category, self.clock())
        return self._validate(case, stage, officer, rule)

    def _require_stage(self, case: CaseDB) -> StageRole:
        stage = stage_for_status(case.status)
        if stage is None:
            raise InvalidState(
                f"Case {case.id} in status {case.status.value} has no reviewing stage",
                case_id=case.id,
            )
        return stage

    def _require_officer(self, officer_id: str) -> OfficerDB:
        officer = self.directory.get_officer(officer_id)
        if officer is None:
            raise OfficerNotFound(f"Officer {officer_id} not found", officer_id=officer_id)
        return officer

    # =========================================================================
    # WRITE PATH
    # =========================================================================

    def _write_assignment(
        self,
        case: CaseDB,
        stage: StageRole,
        officer: OfficerDB,
        action: AssignmentAction,
        reason: str,
        workload: int,
        assigned_by: Optional[str] = None,
        rule: Optional[AssignmentRuleDB] = None,
        strategy_used: Optional[AssignmentStrategy] = None,
        priority_score: Optional[float] = None,
    ) -> AssignmentHistoryDB:
        """Supersede the active record and write the new one. Does not commit."""
        now = self.clock()
        previous = self.history.deactivate_active(case.id, now)

        row = get_or_create_stage(self.db, case, stage)
        row.assigned_officer_id = officer.id
        row.assigned_at = now

        history = AssignmentHistoryDB(
            id=str(uuid4()),
            case_id=case.id,
            stage=stage,
            previous_officer_id=previous.officer_id if previous else None,
            officer_id=officer.id,
            action=action,
            reason=reason,
            assigned_by=assigned_by,
            rule_id=rule.id if rule is not None else None,
            strategy_used=strategy_used,
            workload_at_assignment=workload,
            priority_score=priority_score,
            status_at_assignment=case.status,
            is_active=True,
            assigned_at=now,
        )
        self.db.add(history)

        if rule is None or rule.send_notification:
            enqueue_assignment_notification(self.db, case, history)

        self.db.flush()
        return history

    def _kick_dispatcher(self) -> None:
        """Kick delivery once the caller's outermost case lock is released."""
        if self.dispatcher is None:
            return
        case_locks.call_after_release(self._kick_now)

    def _kick_now(self) -> None:
        try:
            self.dispatcher.kick()
        except Exception:
            logger.exception("Failed to schedule notification dispatch")

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def assign(
        self,
        case_id: str,
        stage: Optional[StageRole] = None,
        reason: Optional[str] = None,
        assigned_by: Optional[str] = None,
    ) -> AssignmentHistoryDB:
        """
        Auto-assign a reviewer to the case's current (or given) stage.

        Raises NoEligibleReviewer, WorkloadExceeded, RoleMismatch,
        InvalidState or NotFound; nothing is written in those cases.
        """
        with case_locks.hold(case_id):
            try:
                case = load_case(self.db, case_id, for_update=True)
                stage = stage or self._require_stage(case)
                if case.status not in STAGE_CONFIG[stage]["review_statuses"]:
                    raise InvalidState(
                        f"Case {case_id} in status {case.status.value} is not at stage {stage.value}",
                        case_id=case_id,
                    )

                now = self.clock()
                role = resolve_officer_role(case.category, stage)
                rule = self.rules.effective_rule(stage, case.category, now)
                strategy = self._strategy_for(rule)
                if strategy == AssignmentStrategy.MANUAL:
                    raise NoEligibleReviewer(
                        f"Stage {stage.value} requires manual assignment",
                        case_id=case_id,
                        rule_id=rule.id if rule is not None else None,
                    )

                with ExitStack() as stack:
                    if strategy == AssignmentStrategy.ROUND_ROBIN:
                        stack.enter_context(cursor_locks.hold(role.value))
                    selection = self.select_reviewer(role, strategy, rule)
                    officer = selection.officer

                    stack.enter_context(officer_locks.hold(officer.id))
                    workload = self._validate(case, stage, officer, rule)
                    history = self._write_assignment(
                        case,
                        stage,
                        officer,
                        action=AssignmentAction.MANUALLY_ASSIGNED if assigned_by else AssignmentAction.AUTO_ASSIGNED,
                        reason=reason or f"Auto-assigned using {selection.strategy.value} strategy",
                        workload=workload,
                        assigned_by=assigned_by,
                        rule=rule,
                        strategy_used=selection.strategy,
                        priority_score=selection.score,
                    )
                    if rule is not None:
                        rule.times_applied = (rule.times_applied or 0) + 1
                        rule.last_applied_at = now
                    if strategy == AssignmentStrategy.ROUND_ROBIN:
                        self._advance_cursor(role, officer.id)
                    self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info(
            f"Case {case_id} stage {stage.value} assigned to officer {officer.id} "
            f"({selection.strategy.value}, workload {workload})"
        )
        self._kick_dispatcher()
        return history

    def reassign(
        self,
        case_id: str,
        new_officer_id: str,
        reason: str,
        reassigned_by: Optional[str] = None,
    ) -> AssignmentHistoryDB:
        """Hand the case's current stage to a specific officer."""
        if not reason or not reason.strip():
            raise ValidationError("Reassignment reason is required", case_id=case_id)

        with case_locks.hold(case_id):
            try:
                case = load_case(self.db, case_id, for_update=True)
                stage = self._require_stage(case)
                officer = self._require_officer(new_officer_id)

                active = self.history.get_active(case_id)
                if active is not None and active.officer_id == officer.id and active.stage == stage:
                    raise InvalidState(
                        f"Case {case_id} is already assigned to officer {officer.id}",
                        case_id=case_id,
                    )

                rule = self.rules.effective_rule(stage, case.category, self.clock())
                with officer_locks.hold(officer.id):
                    workload = self._validate(case, stage, officer, rule)
                    history = self._write_assignment(
                        case,
                        stage,
                        officer,
                        action=AssignmentAction.REASSIGNED,
                        reason=reason.strip(),
                        workload=workload,
                        assigned_by=reassigned_by,
                        rule=rule,
                    )
                    self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info(f"Case {case_id} reassigned to officer {officer.id}: {reason}")
        self._kick_dispatcher()
        return history

    def escalate(self, case_id: str, reason: str = "Escalation time exceeded") -> AssignmentHistoryDB:
        """
        Transfer a stalled case to the least-loaded officer of the rule's
        escalation role.

        Repeating an escalation that already landed returns the existing
        active record.
        """
        with case_locks.hold(case_id):
            try:
                case = load_case(self.db, case_id, for_update=True)
                stage = self._require_stage(case)
                rule = self.rules.escalation_rule(stage, case.category, self.clock())
                if rule is None:
                    raise NoEligibleReviewer(
                        f"No escalation rule configured for stage {stage.value}",
                        case_id=case_id,
                    )

                active = self.history.get_active(case_id)
                if self._already_escalated(active, stage, rule):
                    logger.info(f"Case {case_id} already escalated to officer {active.officer_id}")
                    self.db.rollback()
                    return active

                officers = self.directory.get_active_officers_by_role(rule.escalation_role)
                if not officers:
                    raise NoEligibleReviewer(
                        f"No active {rule.escalation_role.value} officers for escalation",
                        case_id=case_id,
                    )
                workloads = self.directory.get_workloads(o.id for o in officers)
                officer = select_workload_based(officers, workloads).officer

                if active is not None and active.officer_id == officer.id and active.stage == stage:
                    self.db.rollback()
                    return active

                with officer_locks.hold(officer.id):
                    workload = self._validate(case, stage, officer, rule, check_role=False)
                    history = self._write_assignment(
                        case,
                        stage,
                        officer,
                        action=AssignmentAction.TRANSFERRED,
                        reason=(
                            f"Escalated: {reason} "
                            f"(auto-escalated after {rule.escalation_time_hours} hours)"
                        ),
                        workload=workload,
                        rule=rule,
                        strategy_used=AssignmentStrategy.WORKLOAD_BASED,
                    )
                    self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info(f"Case {case_id} escalated to {rule.escalation_role.value} officer {officer.id}")
        self._kick_dispatcher()
        return history

    @staticmethod
    def _already_escalated(
        active: Optional[AssignmentHistoryDB],
        stage: StageRole,
        rule: AssignmentRuleDB,
    ) -> bool:
        return (
            active is not None
            and active.stage == stage
            and active.action == AssignmentAction.TRANSFERRED
            and active.officer is not None
            and active.officer.is_active
            and active.officer.role == rule.escalation_role
        )

    # =========================================================================
    # ESCALATION SCAN
    # =========================================================================

    def scan_escalation_candidates(
        self,
        now: Optional[datetime] = None,
    ) -> Tuple[List[str], List[Dict[str, str]]]:
        """
        Cases whose time in stage exceeds their rule's escalation threshold.

        Each rule is scanned independently; a failing rule is logged and
        reported in the error list without stopping the others.
        Returns (case_ids, errors).
        """
        now = now or self.clock()
        candidates: List[str] = []
        seen = set()
        errors: List[Dict[str, str]] = []

        for rule in self.rules.escalation_rules(now):
            try:
                for case_id in self._rule_candidates(rule, now):
                    if case_id not in seen:
                        seen.add(case_id)
                        candidates.append(case_id)
            except Exception as e:
                logger.exception(f"Escalation scan failed for rule {rule.id}")
                self.db.rollback()
                errors.append({"rule_id": rule.id, "error": str(e)})

        return candidates, errors

    def find_escalation_candidates(self, now: Optional[datetime] = None) -> List[str]:
        candidates, _ = self.scan_escalation_candidates(now)
        return candidates

    def _rule_candidates(self, rule: AssignmentRuleDB, now: datetime) -> List[str]:
        threshold = now - timedelta(hours=rule.escalation_time_hours)
        query = (
            self.db.query(CaseDB.id, CaseDB.category)
            .join(CaseStageDB, and_(CaseStageDB.case_id == CaseDB.id, CaseStageDB.stage == rule.stage))
            .join(OfficerDB, OfficerDB.id == CaseStageDB.assigned_officer_id)
            .filter(
                CaseDB.status.in_(STAGE_CONFIG[rule.stage]["review_statuses"]),
                CaseStageDB.assigned_at <= threshold,
                OfficerDB.role != rule.escalation_role,
            )
        )
        if rule.category is not None:
            query = query.filter(CaseDB.category == rule.category)

        matched = []
        for case_id, category in query.order_by(CaseDB.id).all():
            effective = self.rules.escalation_rule(rule.stage, category, now)
            if effective is not None and effective.id == rule.id:
                matched.append(case_id)
        return matched
