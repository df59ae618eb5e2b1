"""
End-to-end tests through LicensingWorkflowService.

The service never raises WorkflowErrors; every outcome is an
OperationResult with success / error_code.
"""
import pytest


@pytest.fixture
def service(db, clock, gateway, documents):
    from licensing_workflow.services.workflow_service import LicensingWorkflowService
    return LicensingWorkflowService(db, gateway, documents=documents, clock=clock)


@pytest.fixture
def staff(make_officer):
    """One officer per role an architect case passes through."""
    from licensing_workflow.models.db_models import OfficerRole

    return {
        "je": make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="je-1"),
        "ae": make_officer(OfficerRole.ASSISTANT_ARCHITECT, officer_id="ae-1"),
        "ee": make_officer(OfficerRole.EXECUTIVE_ENGINEER, officer_id="ee-1"),
        "ce": make_officer(OfficerRole.CITY_ENGINEER, officer_id="ce-1"),
        "clerk": make_officer(OfficerRole.CLERK, officer_id="clerk-1"),
    }


def _sign(service, case_id, officer_id, clock=None):
    started = service.initiate_signature(case_id, officer_id)
    assert started.success, started.message
    if clock is not None:
        clock.advance(minutes=5)
    result = service.complete_signature(started.attempt_id, "123456", completed_by=officer_id)
    assert result.success, result.message
    return result


# =============================================================================
# TEST: CASE LIFECYCLE
# =============================================================================

class TestSubmission:

    def test_submit_assigns_junior_engineer(self, db, service, make_officer):
        """Architect case moved to JE_PENDING lands on the only junior architect."""
        from licensing_workflow.models.db_models import AssignmentHistoryDB, OfficerRole, PositionCategory

        junior = make_officer(OfficerRole.JUNIOR_ARCHITECT)
        created = service.create_case("Asha", PositionCategory.ARCHITECT, applicant_last_name="Kulkarni")

        result = service.advance(created.case_id, "JE_PENDING")

        assert result.success is True
        assert result.status == "JE_PENDING"
        assert result.officer_id == junior.id
        assert result.unassigned is False

        active = db.query(AssignmentHistoryDB).filter_by(case_id=created.case_id, is_active=True).all()
        assert len(active) == 1
        assert active[0].action.value == "AUTO_ASSIGNED"
        assert active[0].strategy_used.value == "WORKLOAD_BASED"

    def test_create_case_requires_name(self, service):
        from licensing_workflow.models.db_models import PositionCategory

        result = service.create_case("  ", PositionCategory.SUPERVISOR1)

        assert result.success is False
        assert result.error_code == "VALIDATION_ERROR"

    def test_case_number_format(self, service):
        from licensing_workflow.models.db_models import PositionCategory

        result = service.create_case("Ravi", PositionCategory.LICENCE_ENGINEER)

        assert result.success is True
        assert result.details["case_number"].startswith("LIC-202603-")

    def test_no_reviewer_is_partial_success(self, service, make_officer):
        from licensing_workflow.models.db_models import OfficerRole, PositionCategory

        created = service.create_case("Asha", PositionCategory.ARCHITECT)

        result = service.advance(created.case_id, "SUBMIT")

        assert result.success is True
        assert result.status == "JE_PENDING"
        assert result.unassigned is True
        assert result.officer_id is None

        info = service.get_case_stage_info(created.case_id)
        assert info.info.unassigned is True
        assert info.info.current_stage == "JE"

        junior = make_officer(OfficerRole.JUNIOR_ARCHITECT)
        assigned = service.assign(created.case_id)
        assert assigned.success is True
        assert assigned.officer_id == junior.id
        assert service.get_case_stage_info(created.case_id).info.unassigned is False

    def test_illegal_skip_is_reported(self, service):
        from licensing_workflow.models.db_models import PositionCategory

        created = service.create_case("Asha", PositionCategory.ARCHITECT)

        result = service.advance(created.case_id, "CE_PENDING")

        assert result.success is False
        assert result.error_code == "INVALID_TRANSITION"

    def test_unknown_case(self, service):
        result = service.advance("missing", "SUBMIT")

        assert result.success is False
        assert result.error_code == "NOT_FOUND"


class TestRejection:

    def test_reject_without_comments_is_refused(self, service, make_case):
        from licensing_workflow.models.db_models import ApplicationStatus

        case = make_case(status=ApplicationStatus.EE_PENDING)

        result = service.reject(case.id, "")

        assert result.success is False
        assert result.error_code == "VALIDATION_ERROR"
        assert service.get_case_stage_info(case.id).status == "EE_PENDING"

    def test_reject_with_comments(self, service, make_case):
        from licensing_workflow.models.db_models import ApplicationStatus

        case = make_case(status=ApplicationStatus.EE_PENDING)

        result = service.reject(case.id, "Registration certificate expired", rejected_by="ee-1")

        assert result.success is True
        assert result.status == "REJECTED"
        assert result.details["from_status"] == "EE_PENDING"


# =============================================================================
# TEST: FULL CHAIN
# =============================================================================

class TestFullWorkflow:

    def test_architect_application_to_licence(self, db, clock, service, staff, put_document):
        from licensing_workflow.models.db_models import (
            CaseDB, DocumentType, PositionCategory, StatusTransitionLogDB,
        )

        case_id = service.create_case("Asha", PositionCategory.ARCHITECT, applicant_last_name="Kulkarni").case_id
        case = db.get(CaseDB, case_id)
        put_document(case, DocumentType.RECOMMENDATION_FORM, b"%PDF recommendation")
        put_document(case, DocumentType.LICENCE_CERTIFICATE, b"%PDF certificate")

        assert service.advance(case_id, "SUBMIT").officer_id == "je-1"
        for trigger in (
            "SCHEDULE_APPOINTMENT",
            "COMPLETE_APPOINTMENT",
            "START_DOCUMENT_VERIFICATION",
            "COMPLETE_DOCUMENT_VERIFICATION",
            "REQUEST_JE_SIGNATURE",
        ):
            assert service.advance(case_id, trigger, actor_id="je-1").success

        signed = _sign(service, case_id, "je-1", clock)
        assert (signed.status, signed.officer_id) == ("AE_PENDING", "ae-1")
        signed = _sign(service, case_id, "ae-1", clock)
        assert (signed.status, signed.officer_id) == ("EE_PENDING", "ee-1")
        signed = _sign(service, case_id, "ee-1", clock)
        assert (signed.status, signed.officer_id) == ("CE_PENDING", "ce-1")
        signed = _sign(service, case_id, "ce-1", clock)
        assert signed.status == "PAYMENT_PENDING"
        clock.advance(days=1)

        paid = service.advance(case_id, "CLERK_PENDING")
        assert (paid.status, paid.officer_id) == ("CLERK_PENDING", "clerk-1")
        clock.advance(hours=2)
        cleared = service.advance(case_id, "CLERK_APPROVED", actor_id="clerk-1", comments="Fees verified")
        assert (cleared.status, cleared.officer_id) == ("EE_SIGN_PENDING", "ee-1")

        signed = _sign(service, case_id, "ee-1", clock)
        assert (signed.status, signed.officer_id) == ("CE_SIGN_PENDING", "ce-1")
        approved = _sign(service, case_id, "ce-1", clock)
        assert approved.status == "APPROVED"

        info = service.get_case_stage_info(case_id).info
        assert info.current_stage is None
        assert info.next_action == "None - application approved"
        assert [s.stage for s in info.stages] == ["JE", "AE", "EE", "CE", "CLERK", "EE_STAGE2", "CE_STAGE2"]
        assert all(s.approved for s in info.stages)
        assert [s.signature_applied for s in info.stages] == [True, True, True, True, False, True, True]

        history = service.get_assignment_history(case_id)
        assert [r.stage for r in history.records] == ["JE", "AE", "EE", "CE", "CLERK", "EE_STAGE2", "CE_STAGE2"]
        assert not any(r.is_active for r in history.records)
        assert history.assignment_id is None

        db.expire_all()
        case = db.get(CaseDB, case_id)
        assert case.approved_at is not None
        assert db.query(StatusTransitionLogDB).filter_by(case_id=case_id).count() == 14


# =============================================================================
# TEST: SIGNATURES VIA SERVICE
# =============================================================================

class TestSignatureResults:

    @pytest.fixture
    def awaiting_ae(self, make_case, assign_stage, put_document, staff):
        from licensing_workflow.models.db_models import ApplicationStatus, StageRole

        case = make_case(status=ApplicationStatus.AE_PENDING)
        assign_stage(case, StageRole.AE, staff["ae"])
        put_document(case)
        return case

    def test_signing_failure_carries_raw_response(self, service, gateway, awaiting_ae):
        started = service.initiate_signature(awaiting_ae.id, "ae-1")
        gateway.fail_next("OTP mismatch")

        result = service.complete_signature(started.attempt_id, "999999")

        assert result.success is False
        assert result.error_code == "SIGNING_FAILED"
        assert result.message == "OTP mismatch"
        assert "OTP mismatch" in result.details["raw_response"]
        assert result.details["retries_remaining"] == 2

        retried = service.retry_signature(started.attempt_id, "123456")
        assert retried.success is True
        assert retried.status == "EE_PENDING"

    def test_initiate_failure_codes(self, service, awaiting_ae, staff):
        wrong_officer = service.initiate_signature(awaiting_ae.id, "je-1")
        assert wrong_officer.error_code == "INVALID_STATE"

        service.initiate_signature(awaiting_ae.id, "ae-1")
        duplicate = service.initiate_signature(awaiting_ae.id, "ae-1")
        assert duplicate.error_code == "INVALID_STATE"

    def test_request_otp(self, service, gateway, awaiting_ae):
        result = service.request_otp(awaiting_ae.id, "ae-1")

        assert result.success is True
        assert gateway.otp_requests[0][0] == awaiting_ae.id.replace("-", "")

    def test_verify_and_revoke(self, service, awaiting_ae):
        started = service.initiate_signature(awaiting_ae.id, "ae-1")
        service.complete_signature(started.attempt_id, "123456")

        verified = service.verify_signature(started.attempt_id)
        assert verified.success is True
        assert verified.details["valid"] is True

        revoked = service.revoke_signature(started.attempt_id, "Issued in error")
        assert revoked.success is True

    def test_abandon_and_stale(self, clock, service, awaiting_ae):
        from datetime import timedelta

        started = service.initiate_signature(awaiting_ae.id, "ae-1")
        clock.advance(hours=2)

        stale = service.find_stale_signature_attempts(timedelta(hours=1))
        assert stale.details["attempt_ids"] == [started.attempt_id]

        assert service.abandon_signature(started.attempt_id, "Officer unavailable").success
        assert service.find_stale_signature_attempts(timedelta(hours=1)).details["attempt_ids"] == []


# =============================================================================
# TEST: ASSIGNMENT VIA SERVICE
# =============================================================================

class TestAssignmentResults:

    def test_reassign_and_history(self, clock, service, make_case, make_officer):
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole, PositionCategory

        make_officer(OfficerRole.ASSISTANT_LICENCE_ENGINEER, officer_id="ale-1")
        make_officer(OfficerRole.ASSISTANT_LICENCE_ENGINEER, officer_id="ale-2")
        case = make_case(category=PositionCategory.LICENCE_ENGINEER, status=ApplicationStatus.AE_PENDING)

        first = service.assign(case.id)
        clock.advance(hours=1)
        second = service.reassign(case.id, "ale-2", reason="Leave cover", reassigned_by="admin-1")

        assert first.officer_id == "ale-1"
        assert second.success is True
        assert second.details["action"] == "REASSIGNED"

        history = service.get_assignment_history(case.id)
        assert [r.officer_id for r in history.records] == ["ale-1", "ale-2"]
        assert history.officer_id == "ale-2"
        assert history.records[0].duration_hours == pytest.approx(1.0)

    def test_validate_assignment(self, service, make_case, make_officer):
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole

        clerk = make_officer(OfficerRole.CLERK)
        architect = make_officer(OfficerRole.JUNIOR_ARCHITECT)
        case = make_case(status=ApplicationStatus.CLERK_PENDING)

        assert service.validate_assignment(case.id, clerk.id).details == {"workload": 0}
        assert service.validate_assignment(case.id, architect.id).error_code == "ROLE_MISMATCH"

    def test_escalation_via_service(self, clock, service, make_case, make_officer, make_rule, assign_stage):
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole, StageRole

        executive = make_officer(OfficerRole.EXECUTIVE_ENGINEER)
        city = make_officer(OfficerRole.CITY_ENGINEER)
        make_rule(StageRole.EE, escalation_time_hours=72, escalation_role=OfficerRole.CITY_ENGINEER)
        case = make_case(status=ApplicationStatus.EE_PENDING)
        assign_stage(case, StageRole.EE, executive)
        clock.advance(hours=73)

        assert service.find_escalation_candidates().details["case_ids"] == [case.id]
        run = service.run_escalation_scan()

        assert run.success is True
        assert run.details["escalated"] == 1
        assert service.get_case_stage_info(case.id).officer_id == city.id

    def test_history_for_unknown_case(self, service):
        result = service.get_assignment_history("missing")

        assert result.success is False
        assert result.error_code == "NOT_FOUND"
        assert result.records == []

    def test_officer_workloads(self, service, make_case, make_officer):
        from licensing_workflow.models.db_models import ApplicationStatus, OfficerRole

        make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="je-a")
        make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="je-b")
        make_officer(OfficerRole.JUNIOR_ARCHITECT, officer_id="je-c", is_active=False)
        service.assign(make_case(status=ApplicationStatus.JE_PENDING).id)

        result = service.get_officer_workloads(OfficerRole.JUNIOR_ARCHITECT)

        assert result.success is True
        assert [(o["officer_id"], o["workload"]) for o in result.details["officers"]] == [("je-a", 1), ("je-b", 0)]
