"""
Shared fixtures: in-memory SQLite database, record factories, a frozen
clock and a scriptable fake HSM gateway.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta
from typing import List, Optional
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from licensing_workflow.database import Base
from licensing_workflow.models.db_models import (
    ApplicationStatus, AssignmentRuleDB, AssignmentStrategy, CaseDB, CaseStageDB,
    DocumentType, OfficerDB, OfficerRole, PositionCategory, StageRole,
)
from licensing_workflow.services.documents.document_store import SqlDocumentStore
from licensing_workflow.services.gateway.signing_gateway import OtpResult, SignResult, SigningGateway
from licensing_workflow.services.notifications.notifier import Notifier


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# CLOCK
# =============================================================================

class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 2, 9, 0, 0))


# =============================================================================
# COLLABORATOR FAKES
# =============================================================================

class FakeSigningGateway(SigningGateway):
    """Records calls; signs by prefixing the document unless told to fail."""

    def __init__(self):
        self.otp_requests: List[tuple] = []
        self.sign_calls: List[tuple] = []
        self.otp_result = OtpResult(True, "OTP sent to registered mobile number")
        self._queued: List[SignResult] = []

    def fail_next(self, reason: str = "Invalid OTP", times: int = 1) -> None:
        for _ in range(times):
            self._queued.append(SignResult(
                success=False,
                raw_response=f"<return>TXN~FAILURE~{reason}</return>",
                message=reason,
            ))

    def request_otp(self, transaction_id, key_label):
        self.otp_requests.append((transaction_id, key_label))
        return self.otp_result

    def sign(self, transaction_id, key_label, document, otp, coordinates):
        self.sign_calls.append((transaction_id, key_label, document, otp, coordinates))
        if self._queued:
            return self._queued.pop(0)
        return SignResult(
            success=True,
            signed_bytes=b"SIGNED:" + document,
            raw_response=f"<return>{transaction_id}~SUCCESS~...</return>",
            message="Document signed successfully",
        )


class RecordingNotifier(Notifier):
    """Keeps notifications in memory; can be told to raise."""

    def __init__(self, fail_with: Optional[Exception] = None):
        self.sent: List[dict] = []
        self.fail_with = fail_with

    def notify_assignment(self, officer_id, case_number, case_id, category, applicant_name, assigned_by=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({
            "officer_id": officer_id,
            "case_number": case_number,
            "case_id": case_id,
            "category": category,
            "applicant_name": applicant_name,
            "assigned_by": assigned_by,
        })


@pytest.fixture
def gateway():
    return FakeSigningGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return RecordingNotifier(fail_with=RuntimeError("SMTP down"))


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_officer(db):
    def _make(
        role: OfficerRole,
        officer_id: Optional[str] = None,
        name: Optional[str] = None,
        is_active: bool = True,
        key_label: Optional[str] = "09160",
        experience_months: Optional[int] = None,
    ) -> OfficerDB:
        officer = OfficerDB(
            id=officer_id or str(uuid4()),
            name=name or f"{role.value.title()} Officer",
            role=role,
            is_active=is_active,
            key_label=key_label,
            experience_months=experience_months,
        )
        db.add(officer)
        db.commit()
        return officer
    return _make


@pytest.fixture
def make_case(db, clock):
    def _make(
        category: PositionCategory = PositionCategory.ARCHITECT,
        status: ApplicationStatus = ApplicationStatus.SUBMITTED,
        case_id: Optional[str] = None,
    ) -> CaseDB:
        case_id = case_id or str(uuid4())
        case = CaseDB(
            id=case_id,
            case_number=f"LIC-TEST-{case_id[:8].upper()}",
            applicant_first_name="Asha",
            applicant_last_name="Kulkarni",
            applicant_email="asha@example.com",
            category=category,
            status=status,
            submitted_at=clock(),
        )
        db.add(case)
        db.commit()
        return case
    return _make


@pytest.fixture
def assign_stage(db, clock):
    """Directly hand a stage to an officer (bypasses the engine)."""
    def _assign(case: CaseDB, stage: StageRole, officer: OfficerDB, assigned_at: Optional[datetime] = None) -> CaseStageDB:
        row = CaseStageDB(
            id=str(uuid4()),
            case_id=case.id,
            stage=stage,
            assigned_officer_id=officer.id,
            assigned_at=assigned_at or clock(),
            signature_applied=False,
        )
        db.add(row)
        db.commit()
        return row
    return _assign


@pytest.fixture
def make_rule(db):
    def _make(
        stage: StageRole,
        strategy: AssignmentStrategy = AssignmentStrategy.WORKLOAD_BASED,
        category: Optional[PositionCategory] = None,
        priority: int = 100,
        max_workload: int = 50,
        escalation_time_hours: Optional[int] = None,
        escalation_role: Optional[OfficerRole] = None,
        **extra,
    ) -> AssignmentRuleDB:
        rule = AssignmentRuleDB(
            id=str(uuid4()),
            name=f"{stage.value} {strategy.value}",
            stage=stage,
            category=category,
            strategy=strategy,
            priority=priority,
            max_workload_per_officer=max_workload,
            escalation_time_hours=escalation_time_hours,
            escalation_role=escalation_role,
            is_active=extra.pop("is_active", True),
            times_applied=0,
            **extra,
        )
        db.add(rule)
        db.commit()
        return rule
    return _make


@pytest.fixture
def documents(db):
    return SqlDocumentStore(db)


@pytest.fixture
def put_document(db, documents):
    def _put(case: CaseDB, document_type: DocumentType = DocumentType.RECOMMENDATION_FORM,
             content: bytes = b"%PDF-1.4 recommendation") -> str:
        ref = documents.replace_document(case.id, document_type, content)
        db.commit()
        return ref
    return _put
