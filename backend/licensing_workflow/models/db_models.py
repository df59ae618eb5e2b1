"""
Licensing Workflow - SQLAlchemy ORM Models
Persistent state for cases, reviewers, assignment and signatures
"""
from enum import Enum

from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey,
    Enum as SQLEnum, Boolean, LargeBinary, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship

from ..clock import utc_now
from ..database import Base


# =============================================================================
# ENUMS
# =============================================================================

class PositionCategory(str, Enum):
    """Licensing position applied for. Selects the concrete JE/AE role."""
    ARCHITECT = "ARCHITECT"
    LICENCE_ENGINEER = "LICENCE_ENGINEER"
    STRUCTURAL_ENGINEER = "STRUCTURAL_ENGINEER"
    SUPERVISOR1 = "SUPERVISOR1"
    SUPERVISOR2 = "SUPERVISOR2"


class RoleTier(str, Enum):
    """Coarse reviewer level."""
    JUNIOR = "JUNIOR"
    ASSISTANT = "ASSISTANT"
    EXECUTIVE = "EXECUTIVE"
    CITY = "CITY"
    CLERK = "CLERK"


class OfficerRole(str, Enum):
    """Fine-grained officer role held in the reviewer directory."""
    JUNIOR_ARCHITECT = "JUNIOR_ARCHITECT"
    ASSISTANT_ARCHITECT = "ASSISTANT_ARCHITECT"
    JUNIOR_LICENCE_ENGINEER = "JUNIOR_LICENCE_ENGINEER"
    ASSISTANT_LICENCE_ENGINEER = "ASSISTANT_LICENCE_ENGINEER"
    JUNIOR_STRUCTURAL_ENGINEER = "JUNIOR_STRUCTURAL_ENGINEER"
    ASSISTANT_STRUCTURAL_ENGINEER = "ASSISTANT_STRUCTURAL_ENGINEER"
    JUNIOR_SUPERVISOR1 = "JUNIOR_SUPERVISOR1"
    ASSISTANT_SUPERVISOR1 = "ASSISTANT_SUPERVISOR1"
    JUNIOR_SUPERVISOR2 = "JUNIOR_SUPERVISOR2"
    ASSISTANT_SUPERVISOR2 = "ASSISTANT_SUPERVISOR2"
    EXECUTIVE_ENGINEER = "EXECUTIVE_ENGINEER"
    CITY_ENGINEER = "CITY_ENGINEER"
    CLERK = "CLERK"


class StageRole(str, Enum):
    """Review stage a case passes through, in chain order."""
    JE = "JE"
    AE = "AE"
    EE = "EE"
    CE = "CE"
    CLERK = "CLERK"
    EE_STAGE2 = "EE_STAGE2"
    CE_STAGE2 = "CE_STAGE2"


class ApplicationStatus(str, Enum):
    """States in the application workflow."""
    SUBMITTED = "SUBMITTED"
    JE_PENDING = "JE_PENDING"
    APPOINTMENT_SCHEDULED = "APPOINTMENT_SCHEDULED"
    DOCUMENT_VERIFICATION_PENDING = "DOCUMENT_VERIFICATION_PENDING"
    DOCUMENT_VERIFICATION_IN_PROGRESS = "DOCUMENT_VERIFICATION_IN_PROGRESS"
    DOCUMENT_VERIFICATION_COMPLETED = "DOCUMENT_VERIFICATION_COMPLETED"
    AWAITING_JE_SIGNATURE = "AWAITING_JE_SIGNATURE"
    AE_PENDING = "AE_PENDING"
    EE_PENDING = "EE_PENDING"
    CE_PENDING = "CE_PENDING"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    CLERK_PENDING = "CLERK_PENDING"
    EE_SIGN_PENDING = "EE_SIGN_PENDING"
    CE_SIGN_PENDING = "CE_SIGN_PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class WorkflowTrigger(str, Enum):
    """Named events that move a case between statuses."""
    SUBMIT = "SUBMIT"
    SCHEDULE_APPOINTMENT = "SCHEDULE_APPOINTMENT"
    COMPLETE_APPOINTMENT = "COMPLETE_APPOINTMENT"
    START_DOCUMENT_VERIFICATION = "START_DOCUMENT_VERIFICATION"
    COMPLETE_DOCUMENT_VERIFICATION = "COMPLETE_DOCUMENT_VERIFICATION"
    REQUEST_JE_SIGNATURE = "REQUEST_JE_SIGNATURE"
    JE_SIGNED = "JE_SIGNED"
    AE_SIGNED = "AE_SIGNED"
    EE_SIGNED = "EE_SIGNED"
    CE_SIGNED = "CE_SIGNED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    CLERK_APPROVED = "CLERK_APPROVED"
    EE_STAGE2_SIGNED = "EE_STAGE2_SIGNED"
    CE_STAGE2_SIGNED = "CE_STAGE2_SIGNED"
    REJECT = "REJECT"


class AssignmentStrategy(str, Enum):
    """Reviewer selection strategies."""
    ROUND_ROBIN = "ROUND_ROBIN"
    WORKLOAD_BASED = "WORKLOAD_BASED"
    PRIORITY_BASED = "PRIORITY_BASED"
    SKILL_BASED = "SKILL_BASED"
    MANUAL = "MANUAL"  # Rule disables automatic selection


class AssignmentAction(str, Enum):
    """Kind of change an AssignmentHistory row records."""
    AUTO_ASSIGNED = "AUTO_ASSIGNED"
    MANUALLY_ASSIGNED = "MANUALLY_ASSIGNED"
    REASSIGNED = "REASSIGNED"
    TRANSFERRED = "TRANSFERRED"


class SignatureStatus(str, Enum):
    """Lifecycle of a single signing attempt."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    VERIFIED = "VERIFIED"
    REVOKED = "REVOKED"


class DocumentType(str, Enum):
    """Signed artifacts kept per case."""
    RECOMMENDATION_FORM = "RECOMMENDATION_FORM"
    LICENCE_CERTIFICATE = "LICENCE_CERTIFICATE"


class NotificationStatus(str, Enum):
    """Delivery state of an outbox message."""
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class ActorType(str, Enum):
    """Who caused a status change."""
    OFFICER = "OFFICER"
    APPLICANT = "APPLICANT"
    SYSTEM = "SYSTEM"


# =============================================================================
# REVIEWER DIRECTORY
# =============================================================================

class OfficerDB(Base):
    """Reviewer directory entry."""
    __tablename__ = "officers"

    id = Column(String(36), primary_key=True)  # UUID
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    employee_id = Column(String(50), nullable=True, unique=True)
    role = Column(SQLEnum(OfficerRole), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # HSM key label used for OTP + signing
    key_label = Column(String(50), nullable=True)

    # Seniority metric used by PRIORITY_BASED selection
    experience_months = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


# =============================================================================
# CASES
# =============================================================================

class CaseDB(Base):
    """
    Licensing application moving through the review chain.
    Never deleted; APPROVED and REJECTED are terminal.
    """
    __tablename__ = "applications"

    id = Column(String(36), primary_key=True)  # UUID
    case_number = Column(String(50), nullable=False, unique=True, index=True)

    # Applicant identity
    applicant_first_name = Column(String(100), nullable=False)
    applicant_last_name = Column(String(100), nullable=True)
    applicant_email = Column(String(255), nullable=True)
    applicant_mobile = Column(String(20), nullable=True)

    category = Column(SQLEnum(PositionCategory), nullable=False)
    status = Column(SQLEnum(ApplicationStatus), nullable=False, default=ApplicationStatus.SUBMITTED, index=True)

    submitted_at = Column(DateTime, default=utc_now)
    approved_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    remarks = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    # Relationships
    stages = relationship("CaseStageDB", back_populates="case", cascade="all, delete-orphan")
    transition_log = relationship("StatusTransitionLogDB", back_populates="case", cascade="all, delete-orphan")

    @property
    def applicant_name(self) -> str:
        return " ".join(part for part in (self.applicant_first_name, self.applicant_last_name) if part)

    def get_stage(self, stage: "StageRole"):
        """Return the stage row for a stage-role, or None if not yet created."""
        for row in self.stages:
            if row.stage == stage:
                return row
        return None


class CaseStageDB(Base):
    """
    Per stage-role assignment, decision and signature fields of a case.

    At most one of approved/rejected is true; signature_applied implies approved.
    """
    __tablename__ = "case_stages"
    __table_args__ = (
        UniqueConstraint("case_id", "stage", name="uq_case_stage"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True)
    stage = Column(SQLEnum(StageRole), nullable=False)

    # Assignment
    assigned_officer_id = Column(String(36), ForeignKey("officers.id"), nullable=True, index=True)
    assigned_at = Column(DateTime, nullable=True)

    # Decision
    approved = Column(Boolean, nullable=True)
    approval_comments = Column(Text, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected = Column(Boolean, nullable=True)
    rejection_comments = Column(Text, nullable=True)
    rejected_at = Column(DateTime, nullable=True)

    # Signature
    signature_applied = Column(Boolean, default=False, nullable=False)
    signature_at = Column(DateTime, nullable=True)

    case = relationship("CaseDB", back_populates="stages")

    @property
    def is_open(self) -> bool:
        """True while the assigned officer still owes work on this stage."""
        return not self.signature_applied and not self.approved and not self.rejected


class StatusTransitionLogDB(Base):
    """
    Immutable log of case status changes.
    Append-only - records every transition.
    """
    __tablename__ = "status_transition_log"

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True)

    from_status = Column(SQLEnum(ApplicationStatus), nullable=True)  # NULL on submission
    to_status = Column(SQLEnum(ApplicationStatus), nullable=False)
    trigger = Column(SQLEnum(WorkflowTrigger), nullable=False)
    actor = Column(SQLEnum(ActorType), nullable=False)
    actor_id = Column(String(36), nullable=True)
    comments = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utc_now)

    case = relationship("CaseDB", back_populates="transition_log")


class CaseDocumentDB(Base):
    """Stored artifact bytes per (case, document type)."""
    __tablename__ = "case_documents"
    __table_args__ = (
        UniqueConstraint("case_id", "document_type", name="uq_case_document"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True)
    document_type = Column(SQLEnum(DocumentType), nullable=False)
    content = Column(LargeBinary, nullable=False)
    content_hash = Column(String(64), nullable=False)  # sha256 hex
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


# =============================================================================
# ASSIGNMENT
# =============================================================================

class AssignmentRuleDB(Base):
    """
    Selection configuration for a stage, optionally scoped to a category.
    The effective rule is the active one inside its window with the lowest priority number.
    """
    __tablename__ = "assignment_rules"

    id = Column(String(36), primary_key=True)  # UUID
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    stage = Column(SQLEnum(StageRole), nullable=False, index=True)
    category = Column(SQLEnum(PositionCategory), nullable=True)  # NULL = any category

    strategy = Column(SQLEnum(AssignmentStrategy), nullable=False, default=AssignmentStrategy.WORKLOAD_BASED)
    priority = Column(Integer, nullable=False, default=100)  # Lower wins
    max_workload_per_officer = Column(Integer, nullable=False, default=50)
    minimum_experience_months = Column(Integer, nullable=True)
    send_notification = Column(Boolean, nullable=False, default=True)

    # Escalation
    escalation_time_hours = Column(Integer, nullable=True)
    escalation_role = Column(SQLEnum(OfficerRole), nullable=True)

    # Lifecycle
    is_active = Column(Boolean, nullable=False, default=True)
    effective_from = Column(DateTime, nullable=True)
    effective_to = Column(DateTime, nullable=True)

    # Usage statistics
    times_applied = Column(Integer, nullable=False, default=0)
    last_applied_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


class RoundRobinCursorDB(Base):
    """
    Round-robin position per officer role.
    Versioned so a stale concurrent write fails instead of overwriting.
    """
    __tablename__ = "round_robin_cursors"

    id = Column(String(36), primary_key=True)  # UUID
    role = Column(SQLEnum(OfficerRole), nullable=False, unique=True)
    last_officer_id = Column(String(36), nullable=True)
    version = Column(Integer, nullable=False)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    __mapper_args__ = {"version_id_col": version}


class AssignmentHistoryDB(Base):
    """
    Immutable assignment audit record.
    Only is_active, inactivated_at and duration_hours change, once, when superseded.
    """
    __tablename__ = "assignment_history"
    __table_args__ = (
        # One active record per case
        Index(
            "uq_assignment_history_active_case",
            "case_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True)
    stage = Column(SQLEnum(StageRole), nullable=False)

    previous_officer_id = Column(String(36), ForeignKey("officers.id"), nullable=True)
    officer_id = Column(String(36), ForeignKey("officers.id"), nullable=False, index=True)
    action = Column(SQLEnum(AssignmentAction), nullable=False)
    reason = Column(Text, nullable=True)
    assigned_by = Column(String(36), nullable=True)  # NULL = system

    # Snapshot
    rule_id = Column(String(36), ForeignKey("assignment_rules.id"), nullable=True)
    strategy_used = Column(SQLEnum(AssignmentStrategy), nullable=True)
    workload_at_assignment = Column(Integer, nullable=False, default=0)
    priority_score = Column(Float, nullable=True)
    status_at_assignment = Column(SQLEnum(ApplicationStatus), nullable=False)

    is_active = Column(Boolean, nullable=False, default=True)
    assigned_at = Column(DateTime, nullable=False, default=utc_now)
    inactivated_at = Column(DateTime, nullable=True)
    duration_hours = Column(Float, nullable=True)

    officer = relationship("OfficerDB", foreign_keys=[officer_id])


# =============================================================================
# SIGNATURES
# =============================================================================

class SignatureAttemptDB(Base):
    """One OTP-authenticated HSM signing attempt for a stage of a case."""
    __tablename__ = "signature_attempts"

    id = Column(String(36), primary_key=True)  # UUID
    case_id = Column(String(36), ForeignKey("applications.id", ondelete="CASCADE"), nullable=False, index=True)
    stage = Column(SQLEnum(StageRole), nullable=False)
    officer_id = Column(String(36), ForeignKey("officers.id"), nullable=False, index=True)

    status = Column(SQLEnum(SignatureStatus), nullable=False, default=SignatureStatus.PENDING, index=True)
    document_type = Column(SQLEnum(DocumentType), nullable=False)
    coordinates = Column(String(100), nullable=True)
    key_label = Column(String(50), nullable=True)
    hsm_transaction_id = Column(String(100), nullable=True)

    # OTP is never stored in clear
    otp_hash = Column(String(64), nullable=True)
    otp_used_at = Column(DateTime, nullable=True)

    # Set while a sign call for this attempt is in flight
    signing_token = Column(String(36), nullable=True)
    signing_started_at = Column(DateTime, nullable=True)

    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    raw_response = Column(Text, nullable=True)  # Truncated provider body

    # Result
    signature_hash = Column(String(64), nullable=True)  # sha256 of signed bytes
    document_ref = Column(String(100), nullable=True)
    completed_by = Column(String(36), nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    verified_at = Column(DateTime, nullable=True)
    verification_details = Column(JSON, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    revoked_by = Column(String(36), nullable=True)
    revocation_reason = Column(Text, nullable=True)
    abandoned_at = Column(DateTime, nullable=True)  # Set = terminally FAILED, not retryable
    abandoned_by = Column(String(36), nullable=True)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class NotificationOutboxDB(Base):
    """
    Assignment notification waiting for delivery.
    Written in the same transaction as the assignment it announces.
    """
    __tablename__ = "notification_outbox"

    id = Column(String(36), primary_key=True)  # UUID
    officer_id = Column(String(36), nullable=False, index=True)
    case_id = Column(String(36), nullable=False, index=True)
    assignment_id = Column(String(36), nullable=True)
    payload = Column(JSON, nullable=False)

    status = Column(SQLEnum(NotificationStatus), nullable=False, default=NotificationStatus.PENDING, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utc_now)
    sent_at = Column(DateTime, nullable=True)


class NotificationDB(Base):
    """In-app notification shown to an officer."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True)  # UUID
    officer_id = Column(String(36), nullable=False, index=True)
    case_id = Column(String(36), nullable=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utc_now)
