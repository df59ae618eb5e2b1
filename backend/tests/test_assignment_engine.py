"""
Tests for the auto-assignment engine.

1. Strategy selection against live workloads
2. Rule resolution (priority, category, effective window, MANUAL)
3. Validation (active, role, workload cap)
4. Audit trail: exactly one active record per case
5. Reassignment
"""
import pytest
from datetime import timedelta


@pytest.fixture
def engine_under_test(db, clock):
    from licensing_workflow.services.assignment.assignment_engine import AssignmentEngine
    return AssignmentEngine(db, clock=clock)


def _load_officer(make_case, assign_stage, officer, open_cases):
    """Give `officer` N open JE stages on throwaway cases."""
    from licensing_workflow.models.db_models import ApplicationStatus, StageRole

    for _ in range(open_cases):
        other = make_case(status=ApplicationStatus.JE_PENDING)
        assign_stage(other, StageRole.JE, officer)


# =============================================================================
# TEST: SELECTION
# =============================================================================

class TestAutoAssign:

    def test_workload_based_picks_least_loaded(self, db, engine_under_test, make_case, make_officer, assign_stage):
        from licensing_workflow.models.db_models import (
            ApplicationStatus, AssignmentAction, AssignmentStrategy, OfficerRole, StageRole,
        )

        busy = make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="officer-a")
        free = make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="officer-b")
        _load_officer(make_case, assign_stage, busy, 2)
        case = make_case(status=ApplicationStatus.JE_PENDING)

        history = engine_under_test.assign(case.id)

        assert history.officer_id == free.id
        assert history.action == AssignmentAction.AUTO_ASSIGNED
        assert history.strategy_used == AssignmentStrategy.WORKLOAD_BASED
        assert history.workload_at_assignment == 0
        assert history.rule_id is None
        assert history.reason == "Auto-assigned using WORKLOAD_BASED strategy"

        db.refresh(case)
        stage = case.get_stage(StageRole.JE)
        assert stage.assigned_officer_id == free.id
        assert stage.assigned_at == history.assigned_at

    def test_category_selects_role(self, engine_under_test, make_case, make_officer):
        """A structural engineer case never lands on a junior architect."""
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole, PositionCategory

        make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="officer-a")
        structural = make_officer(OfficerRole.JUNIOR_STRUCTURAL_ENGINEER, officer_id="officer-s")
        case = make_case(category=PositionCategory.STRUCTURAL_ENGINEER, status=ApplicationStatus.JE_PENDING)

        assert engine_under_test.assign(case.id).officer_id == structural.id

    def test_shared_tier_roles(self, engine_under_test, make_case, make_officer):
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole, PositionCategory

        executive = make_officer(OfficerRole.EXECUTIVE_ENGINEER)
        case = make_case(category=PositionCategory.SUPERVISOR2, status=ApplicationStatus.EE_PENDING)

        assert engine_under_test.assign(case.id).officer_id == executive.id

    def test_round_robin_cycles_in_order(self, db, engine_under_test, make_case, make_officer, make_rule):
        from licensing_workflow.models.db_models import (
            ApplicationStatus, AssignmentRuleDB, AssignmentStrategy, OfficerRole, RoundRobinCursorDB, StageRole,
        )

        for officer_id in ("officer-c", "officer-a", "officer-b"):
            make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id=officer_id)
        rule = make_rule(StageRole.JE, strategy=AssignmentStrategy.ROUND_ROBIN)

        picked = []
        for _ in range(6):
            case = make_case(status=ApplicationStatus.JE_PENDING)
            picked.append(engine_under_test.assign(case.id).officer_id)

        assert picked == ["officer-a", "officer-b", "officer-c", "officer-a", "officer-b", "officer-c"]

        cursor = db.query(RoundRobinCursorDB).filter_by(role=OfficerRole.JUNIOR_ARCHITECT).one()
        assert cursor.last_officer_id == "officer-c"
        stored_rule = db.get(AssignmentRuleDB, rule.id)
        assert stored_rule.times_applied == 6

    def test_priority_based_records_score(self, engine_under_test, make_case, make_officer, make_rule, assign_stage):
        from licensing_workflow.models.db_models import (
            ApplicationStatus, AssignmentStrategy, OfficerRole, StageRole,
        )

        make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="officer-a", experience_months=0)
        senior = make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="officer-b", experience_months=30)
        _load_officer(make_case, assign_stage, senior, 1)
        make_rule(StageRole.JE, strategy=AssignmentStrategy.PRIORITY_BASED)
        case = make_case(status=ApplicationStatus.JE_PENDING)

        history = engine_under_test.assign(case.id)

        # (100-1)*10+30 = 1020 beats (100-0)*10+0 = 1000
        assert history.officer_id == senior.id
        assert history.priority_score == 1020.0

    def test_inactive_officers_are_skipped(self, engine_under_test, make_case, make_officer):
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole

        make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="officer-a", is_active=False)
        active = make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="officer-b")
        case = make_case(status=ApplicationStatus.JE_PENDING)

        assert engine_under_test.assign(case.id).officer_id == active.id

    def test_minimum_experience_filter(self, engine_under_test, make_case, make_officer, make_rule):
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole, StageRole

        make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="officer-a", experience_months=3)
        veteran = make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="officer-b", experience_months=36)
        make_rule(StageRole.JE, minimum_experience_months=12)
        case = make_case(status=ApplicationStatus.JE_PENDING)

        assert engine_under_test.assign(case.id).officer_id == veteran.id

    def test_assigned_by_marks_manual_action(self, engine_under_test, make_case, make_officer):
        from licensing_workflow.models.db_models import ApplicationStatus, AssignmentAction, OfficerRole

        make_officer(OfficerRole.JUNIOR_ARCHITECT)
        case = make_case(status=ApplicationStatus.JE_PENDING)

        history = engine_under_test.assign(case.id, assigned_by="admin-1")

        assert history.action == AssignmentAction.MANUALLY_ASSIGNED
        assert history.assigned_by == "admin-1"


# =============================================================================
# TEST: FAILURES
# =============================================================================

class TestAssignFailures:

    def test_no_officers(self, db, engine_under_test, make_case):
        from licensing_workflow.models.db_models import ApplicationStatus, AssignmentHistoryDB, NotificationOutboxDB
        from licensing_workflow.errors import NoEligibleReviewer

        case = make_case(status=ApplicationStatus.JE_PENDING)

        with pytest.raises(NoEligibleReviewer) as exc_info:
            engine_under_test.assign(case.id)

        assert exc_info.value.code == "NO_ELIGIBLE_REVIEWER"
        assert db.query(AssignmentHistoryDB).count() == 0
        assert db.query(NotificationOutboxDB).count() == 0

    def test_workload_cap(self, db, engine_under_test, make_case, make_officer, make_rule, assign_stage):
        from licensing_workflow.models.db_models import ApplicationStatus, AssignmentHistoryDB, OfficerRole, StageRole
        from licensing_workflow.errors import WorkloadExceeded

        officer = make_officer(OfficerRole.JUNIOR_ARCHITECT)
        _load_officer(make_case, assign_stage, officer, 2)
        make_rule(StageRole.JE, max_workload=2)
        case = make_case(status=ApplicationStatus.JE_PENDING)

        with pytest.raises(WorkloadExceeded) as exc_info:
            engine_under_test.assign(case.id)

        assert exc_info.value.context["workload"] == 2
        assert exc_info.value.context["max_workload"] == 2
        assert db.query(AssignmentHistoryDB).count() == 0

    def test_closed_stages_do_not_count(self, engine_under_test, db, make_case, make_officer, make_rule, assign_stage):
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole, StageRole

        officer = make_officer(OfficerRole.JUNIOR_ARCHITECT)
        done = make_case(status=ApplicationStatus.AE_PENDING)
        row = assign_stage(done, StageRole.JE, officer)
        row.approved = True
        row.signature_applied = True
        db.commit()
        make_rule(StageRole.JE, max_workload=1)
        case = make_case(status=ApplicationStatus.JE_PENDING)

        assert engine_under_test.assign(case.id).workload_at_assignment == 0

    def test_status_outside_stage(self, engine_under_test, make_case, make_officer):
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole, StageRole
        from licensing_workflow.errors import InvalidState

        make_officer(OfficerRole.ASSISTANT_ARCHITECT)
        case = make_case(status=ApplicationStatus.JE_PENDING)

        with pytest.raises(InvalidState):
            engine_under_test.assign(case.id, stage=StageRole.AE)

    def test_status_without_reviewer(self, engine_under_test, make_case):
        from licensing_workflow.models.db_models import ApplicationStatus
        from licensing_workflow.errors import InvalidState

        case = make_case(status=ApplicationStatus.PAYMENT_PENDING)

        with pytest.raises(InvalidState):
            engine_under_test.assign(case.id)

    def test_manual_rule_blocks_auto_assignment(self, engine_under_test, make_case, make_officer, make_rule):
        from licensing_workflow.models.db_models import ApplicationStatus, AssignmentStrategy, OfficerRole, StageRole
        from licensing_workflow.errors import NoEligibleReviewer

        make_officer(OfficerRole.CLERK)
        make_rule(StageRole.CLERK, strategy=AssignmentStrategy.MANUAL)
        case = make_case(status=ApplicationStatus.CLERK_PENDING)

        with pytest.raises(NoEligibleReviewer):
            engine_under_test.assign(case.id)


# =============================================================================
# TEST: RULE RESOLUTION
# =============================================================================

class TestRuleResolution:

    def test_lower_priority_number_wins(self, db, clock, make_rule):
        from licensing_workflow.services.assignment.rules import AssignmentRuleRepository
        from licensing_workflow.models.db_models import AssignmentStrategy, StageRole

        make_rule(StageRole.JE, strategy=AssignmentStrategy.WORKLOAD_BASED, priority=50)
        best = make_rule(StageRole.JE, strategy=AssignmentStrategy.ROUND_ROBIN, priority=10)

        assert AssignmentRuleRepository(db).effective_rule(StageRole.JE, None, clock()).id == best.id

    def test_category_rule_beats_catch_all_at_equal_priority(self, db, clock, make_rule):
        from licensing_workflow.services.assignment.rules import AssignmentRuleRepository
        from licensing_workflow.models.db_models import PositionCategory, StageRole

        make_rule(StageRole.AE, priority=10)
        specific = make_rule(StageRole.AE, category=PositionCategory.ARCHITECT, priority=10)
        make_rule(StageRole.AE, category=PositionCategory.SUPERVISOR1, priority=1)

        rule = AssignmentRuleRepository(db).effective_rule(StageRole.AE, PositionCategory.ARCHITECT, clock())
        assert rule.id == specific.id

    def test_effective_window_and_active_flag(self, db, clock, make_rule):
        from licensing_workflow.services.assignment.rules import AssignmentRuleRepository
        from licensing_workflow.models.db_models import StageRole

        make_rule(StageRole.EE, priority=1, is_active=False)
        make_rule(StageRole.EE, priority=2, effective_from=clock() + timedelta(days=1))
        make_rule(StageRole.EE, priority=3, effective_to=clock() - timedelta(days=1))
        current = make_rule(StageRole.EE, priority=4)

        assert AssignmentRuleRepository(db).effective_rule(StageRole.EE, None, clock()).id == current.id


# =============================================================================
# TEST: AUDIT TRAIL
# =============================================================================

class TestAssignmentHistory:

    def test_reassigning_supersedes_previous_record(self, db, clock, engine_under_test, make_case, make_officer):
        from licensing_workflow.models.db_models import ApplicationStatus, AssignmentHistoryDB, OfficerRole

        first = make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="officer-a")
        second = make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="officer-b")
        case = make_case(status=ApplicationStatus.JE_PENDING)

        engine_under_test.assign(case.id)
        clock.advance(hours=3)
        engine_under_test.reassign(case.id, second.id, reason="Officer on leave", reassigned_by="admin-1")

        rows = db.query(AssignmentHistoryDB).filter_by(case_id=case.id).order_by(AssignmentHistoryDB.assigned_at).all()
        assert [r.officer_id for r in rows] == [first.id, second.id]
        assert [r.is_active for r in rows] == [False, True]
        assert rows[0].duration_hours == pytest.approx(3.0)
        assert rows[0].inactivated_at == rows[1].assigned_at
        assert rows[1].previous_officer_id == first.id

    def test_assignment_enqueues_notification(self, db, engine_under_test, make_case, make_officer):
        from licensing_workflow.models.db_models import (
            ApplicationStatus, NotificationOutboxDB, NotificationStatus, OfficerRole,
        )

        officer = make_officer(OfficerRole.JUNIOR_ARCHITECT)
        case = make_case(status=ApplicationStatus.JE_PENDING)

        history = engine_under_test.assign(case.id)

        message = db.query(NotificationOutboxDB).one()
        assert message.status == NotificationStatus.PENDING
        assert message.officer_id == officer.id
        assert message.assignment_id == history.id
        assert message.payload["case_number"] == case.case_number
        assert message.payload["applicant_name"] == "Asha Kulkarni"

    def test_rule_can_silence_notifications(self, db, engine_under_test, make_case, make_officer, make_rule):
        from licensing_workflow.models.db_models import ApplicationStatus, NotificationOutboxDB, OfficerRole, StageRole

        make_officer(OfficerRole.JUNIOR_ARCHITECT)
        make_rule(StageRole.JE, send_notification=False)
        case = make_case(status=ApplicationStatus.JE_PENDING)

        engine_under_test.assign(case.id)

        assert db.query(NotificationOutboxDB).count() == 0


# =============================================================================
# TEST: REASSIGN / VALIDATE
# =============================================================================

class TestReassign:

    def test_reason_required(self, engine_under_test, make_case, make_officer):
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole
        from licensing_workflow.errors import ValidationError

        officer = make_officer(OfficerRole.JUNIOR_ARCHITECT)
        case = make_case(status=ApplicationStatus.JE_PENDING)

        with pytest.raises(ValidationError):
            engine_under_test.reassign(case.id, officer.id, reason="  ")

    def test_role_mismatch(self, db, engine_under_test, make_case, make_officer):
        from licensing_workflow.models.db_models import ApplicationStatus, AssignmentHistoryDB, OfficerRole
        from licensing_workflow.errors import RoleMismatch

        wrong = make_officer(OfficerRole.ASSISTANT_ARCHITECT)
        case = make_case(status=ApplicationStatus.JE_PENDING)

        with pytest.raises(RoleMismatch) as exc_info:
            engine_under_test.reassign(case.id, wrong.id, reason="Balancing")

        assert exc_info.value.context["required_role"] == "JUNIOR_ARCHITECT"
        assert db.query(AssignmentHistoryDB).count() == 0

    def test_same_officer_is_invalid(self, engine_under_test, make_case, make_officer):
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole
        from licensing_workflow.errors import InvalidState

        make_officer(OfficerRole.JUNIOR_ARCHITECT)
        case = make_case(status=ApplicationStatus.JE_PENDING)
        history = engine_under_test.assign(case.id)

        with pytest.raises(InvalidState):
            engine_under_test.reassign(case.id, history.officer_id, reason="Again")

    def test_unknown_officer(self, engine_under_test, make_case):
        from licensing_workflow.models.db_models import ApplicationStatus
        from licensing_workflow.errors import OfficerNotFound

        case = make_case(status=ApplicationStatus.JE_PENDING)

        with pytest.raises(OfficerNotFound):
            engine_under_test.reassign(case.id, "nobody", reason="Balancing")

    def test_reassign_records_action(self, engine_under_test, make_case, make_officer):
        from licensing_workflow.models.db_models import ApplicationStatus, AssignmentAction, OfficerRole

        officer = make_officer(OfficerRole.JUNIOR_ARCHITECT)
        case = make_case(status=ApplicationStatus.JE_PENDING)

        history = engine_under_test.reassign(case.id, officer.id, reason="Specialist", reassigned_by="admin-1")

        assert history.action == AssignmentAction.REASSIGNED
        assert history.reason == "Specialist"
        assert history.previous_officer_id is None


class TestValidateAssignment:

    def test_returns_workload(self, engine_under_test, make_case, make_officer, assign_stage):
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole

        officer = make_officer(OfficerRole.JUNIOR_ARCHITECT)
        _load_officer(make_case, assign_stage, officer, 3)
        case = make_case(status=ApplicationStatus.JE_PENDING)

        assert engine_under_test.validate_assignment(case.id, officer.id) == 3

    def test_own_stage_not_double_counted(self, engine_under_test, make_case, make_officer, assign_stage):
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole, StageRole

        officer = make_officer(OfficerRole.JUNIOR_ARCHITECT)
        case = make_case(status=ApplicationStatus.JE_PENDING)
        assign_stage(case, StageRole.JE, officer)

        assert engine_under_test.validate_assignment(case.id, officer.id) == 0

    def test_inactive_officer_rejected(self, engine_under_test, make_case, make_officer):
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole
        from licensing_workflow.errors import AssignmentRejected

        officer = make_officer(OfficerRole.JUNIOR_ARCHITECT, is_active=False)
        case = make_case(status=ApplicationStatus.JE_PENDING)

        with pytest.raises(AssignmentRejected):
            engine_under_test.validate_assignment(case.id, officer.id)
