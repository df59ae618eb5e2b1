"""
Signature Orchestrator

Drives one stage's OTP-authenticated HSM signature:

1. request_otp  - HSM sends an OTP to the officer's key holder
2. initiate     - SignatureAttempt created IN_PROGRESS for (case, stage)
3. complete     - attempt claimed under the case lock, then signed with the
                  OTP with the lock released; on success the signed bytes
                  replace the stored artifact, the stage is approved + signed
                  and the case advances, all in one commit
4. next stage   - reviewer for the stage just entered is auto-assigned

A gateway failure marks the attempt FAILED and increments its retry count.
FAILED attempts may be retried until the count reaches the cap; after that a
new attempt must be initiated. IN_PROGRESS attempts never expire on their
own; abandon() ends one explicitly.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...clock import utc_now
from ...config import SIGNATURE_COORDINATES, SIGNATURE_MAX_RETRIES, SIGNATURE_RESPONSE_MAX_CHARS
from ...errors import (
    InvalidState, KeyNotConfigured, NotFound, OfficerNotFound,
    RetryLimitExceeded, SigningFailed, GatewayError, ValidationError,
)
from ...locks import case_locks
from ...models.db_models import (
    ActorType, AssignmentHistoryDB, CaseDB, DocumentType, OfficerDB,
    SignatureAttemptDB, SignatureStatus, StageRole,
)
from ..directory.reviewer_directory import ReviewerDirectory, SqlReviewerDirectory
from ..documents.document_store import DocumentStore, SqlDocumentStore
from ..gateway.signing_gateway import SigningGateway, SignResult
from ..workflow.case_records import get_or_create_stage, load_case
from ..workflow.stage_roles import STAGE_CONFIG, document_type_for_stage, signing_stage_for_status
from ..workflow.state_machine import TransitionOutcome, WorkflowStateMachine

logger = logging.getLogger(__name__)

# Attempts that block a new initiate/retry for the same (case, stage)
BLOCKING_STATUSES = [SignatureStatus.IN_PROGRESS, SignatureStatus.COMPLETED, SignatureStatus.VERIFIED]


@dataclass
class SignatureOutcome:
    """Result of a successful complete()."""
    attempt: SignatureAttemptDB
    document_ref: str
    transition: TransitionOutcome

    @property
    def assignment(self) -> Optional[AssignmentHistoryDB]:
        return self.transition.assignment

    @property
    def unassigned(self) -> bool:
        return self.transition.unassigned


def derive_transaction_id(case_id: str) -> str:
    """HSM transaction id for a case; identical for OTP request and sign."""
    return case_id.replace("-", "")


def hash_otp(otp: str) -> str:
    return hashlib.sha256(otp.encode("utf-8")).hexdigest()


class SignatureOrchestrator:
    """Runs the sign protocol for every signing stage of a case."""

    def __init__(
        self,
        db_session: Session,
        gateway: SigningGateway,
        documents: Optional[DocumentStore] = None,
        directory: Optional[ReviewerDirectory] = None,
        state_machine: Optional[WorkflowStateMachine] = None,
        clock: Callable[[], datetime] = utc_now,
        max_retries: int = SIGNATURE_MAX_RETRIES,
    ):
        self.db = db_session
        self.gateway = gateway
        self.documents = documents or SqlDocumentStore(db_session)
        self.directory = directory or SqlReviewerDirectory(db_session)
        self.state_machine = state_machine or WorkflowStateMachine(db_session, clock=clock)
        self.clock = clock
        self.max_retries = max_retries

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def _require_officer(self, officer_id: str) -> OfficerDB:
        officer = self.directory.get_officer(officer_id)
        if officer is None:
            raise OfficerNotFound(f"Officer {officer_id} not found", officer_id=officer_id)
        return officer

    @staticmethod
    def _require_key(officer: OfficerDB) -> str:
        if not officer.key_label or not officer.key_label.strip():
            raise KeyNotConfigured(
                f"No HSM key label configured for officer {officer.id}",
                officer_id=officer.id,
            )
        return officer.key_label.strip()

    def _require_attempt(self, attempt_id: str) -> SignatureAttemptDB:
        attempt = (
            self.db.query(SignatureAttemptDB)
            .filter(SignatureAttemptDB.id == attempt_id)
            .populate_existing()
            .first()
        )
        if attempt is None:
            raise NotFound(f"Signature attempt {attempt_id} not found", attempt_id=attempt_id)
        return attempt

    def _blocking_attempt(
        self,
        case_id: str,
        stage: StageRole,
        exclude_id: Optional[str] = None,
    ) -> Optional[SignatureAttemptDB]:
        query = self.db.query(SignatureAttemptDB).filter(
            SignatureAttemptDB.case_id == case_id,
            SignatureAttemptDB.stage == stage,
            SignatureAttemptDB.status.in_(BLOCKING_STATUSES),
        )
        if exclude_id is not None:
            query = query.filter(SignatureAttemptDB.id != exclude_id)
        return query.first()

    @staticmethod
    def _truncate(raw: Optional[str]) -> Optional[str]:
        if raw is None:
            return None
        return raw[:SIGNATURE_RESPONSE_MAX_CHARS]

    def _check_case_at_stage(self, case: CaseDB, stage: StageRole) -> None:
        if case.status != STAGE_CONFIG[stage]["signing_status"]:
            raise InvalidState(
                f"Case {case.id} is in {case.status.value}, not awaiting {STAGE_CONFIG[stage]['label']} signature",
                case_id=case.id,
                stage=stage.value,
            )

    # =========================================================================
    # STEP 1: OTP
    # =========================================================================

    def request_otp(self, case_id: str, officer_id: str) -> str:
        """Ask the HSM to send an OTP for this case. Returns the gateway's message."""
        officer = self._require_officer(officer_id)
        key_label = self._require_key(officer)
        case = load_case(self.db, case_id)

        result = self.gateway.request_otp(derive_transaction_id(case.id), key_label)
        if not result.success:
            logger.warning(f"OTP request failed for case {case_id}, officer {officer_id}: {result.message}")
            raise GatewayError(
                result.message or "OTP request failed",
                raw_response=result.raw_response,
                case_id=case_id,
                officer_id=officer_id,
            )
        logger.info(f"OTP requested for case {case.case_number} by officer {officer_id}")
        return result.message

    # =========================================================================
    # STEP 2: INITIATE
    # =========================================================================

    def initiate(
        self,
        case_id: str,
        officer_id: str,
        document_type: Optional[DocumentType] = None,
        coordinates: Optional[str] = None,
    ) -> SignatureAttemptDB:
        """Open an IN_PROGRESS attempt for the stage the case is waiting on."""
        with case_locks.hold(case_id):
            try:
                case = load_case(self.db, case_id, for_update=True)
                stage = signing_stage_for_status(case.status)
                if stage is None:
                    raise InvalidState(
                        f"Case {case_id} in status {case.status.value} is not awaiting a signature",
                        case_id=case_id,
                    )

                officer = self._require_officer(officer_id)
                if not officer.is_active:
                    raise InvalidState(f"Officer {officer_id} is not active", officer_id=officer_id)
                key_label = self._require_key(officer)

                stage_row = case.get_stage(stage)
                if stage_row is None or stage_row.assigned_officer_id != officer.id:
                    raise InvalidState(
                        f"Officer {officer_id} is not the assigned {STAGE_CONFIG[stage]['label']} for case {case_id}",
                        case_id=case_id,
                        officer_id=officer_id,
                    )

                document_type = document_type or document_type_for_stage(stage)
                if self.documents.get_document(case_id, document_type) is None:
                    raise NotFound(
                        f"Document {document_type.value} not found for case {case_id}",
                        case_id=case_id,
                        document_type=document_type.value,
                    )

                existing = self._blocking_attempt(case_id, stage)
                if existing is not None:
                    raise InvalidState(
                        f"A {existing.status.value} signature attempt already exists for "
                        f"stage {stage.value} of case {case_id}",
                        case_id=case_id,
                        attempt_id=existing.id,
                    )

                now = self.clock()
                attempt = SignatureAttemptDB(
                    id=str(uuid4()),
                    case_id=case_id,
                    stage=stage,
                    officer_id=officer.id,
                    status=SignatureStatus.IN_PROGRESS,
                    document_type=document_type,
                    coordinates=coordinates or SIGNATURE_COORDINATES[stage.value],
                    key_label=key_label,
                    hsm_transaction_id=derive_transaction_id(case_id),
                    retry_count=0,
                    started_at=now,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(attempt)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info(f"Signature attempt {attempt.id} started for case {case_id} stage {stage.value}")
        return attempt

    # =========================================================================
    # STEP 3 + 4: COMPLETE AND ADVANCE
    # =========================================================================

    def _check_completable(self, attempt: SignatureAttemptDB) -> None:
        if attempt.status == SignatureStatus.FAILED:
            if attempt.abandoned_at is not None or attempt.retry_count >= self.max_retries:
                raise RetryLimitExceeded(
                    f"Signature attempt {attempt.id} has permanently failed; initiate a new attempt",
                    attempt_id=attempt.id,
                    retry_count=attempt.retry_count,
                )
            raise InvalidState(
                f"Signature attempt {attempt.id} failed; retry it before completing",
                attempt_id=attempt.id,
            )
        if attempt.status != SignatureStatus.IN_PROGRESS:
            raise InvalidState(
                f"Signature attempt {attempt.id} is {attempt.status.value}; only IN_PROGRESS attempts can complete",
                attempt_id=attempt.id,
            )
        if attempt.signing_token is not None:
            raise InvalidState(
                f"Signature attempt {attempt.id} is already being signed",
                attempt_id=attempt.id,
            )

    def _check_still_claimed(self, attempt: SignatureAttemptDB, token: str, case: CaseDB) -> None:
        """After the sign call: the attempt must still be ours and the case still at its stage."""
        if attempt.status != SignatureStatus.IN_PROGRESS or attempt.signing_token != token:
            raise InvalidState(
                f"Signature attempt {attempt.id} became {attempt.status.value} while signing; result discarded",
                attempt_id=attempt.id,
            )
        self._check_case_at_stage(case, attempt.stage)

    def complete(
        self,
        attempt_id: str,
        otp: str,
        completed_by: Optional[str] = None,
        comments: Optional[str] = None,
    ) -> SignatureOutcome:
        """
        Sign the artifact and advance the case.

        The attempt is claimed under the case lock, the HSM call runs without
        it (abandon/reject stay possible), and the result is written under the
        lock again only if the claim still holds and the case still awaits
        this stage; otherwise InvalidState and nothing is written.

        Raises SigningFailed (attempt now FAILED) on gateway failure. The
        artifact bytes and case status only change on success.
        """
        if not otp or not otp.strip():
            raise ValidationError("OTP is required", attempt_id=attempt_id)
        otp = otp.strip()

        case_id = self._require_attempt(attempt_id).case_id
        token = str(uuid4())
        with case_locks.hold(case_id):
            try:
                attempt = self._require_attempt(attempt_id)
                self._check_completable(attempt)
                case = load_case(self.db, case_id, for_update=True)
                self._check_case_at_stage(case, attempt.stage)
                document = self.documents.get_document(case_id, attempt.document_type)
                if document is None:
                    raise NotFound(
                        f"Document {attempt.document_type.value} not found for case {case_id}",
                        case_id=case_id,
                    )
                transaction_id = attempt.hsm_transaction_id or derive_transaction_id(case_id)
                key_label = attempt.key_label
                coordinates = attempt.coordinates
                stage = attempt.stage
                document_type = attempt.document_type

                attempt.signing_token = token
                attempt.signing_started_at = self.clock()
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        result = self._call_sign(transaction_id, key_label, document, otp, coordinates)

        with case_locks.hold(case_id):
            try:
                attempt = self._require_attempt(attempt_id)
                case = load_case(self.db, case_id, for_update=True)
                self._check_still_claimed(attempt, token, case)

                now = self.clock()
                attempt.signing_token = None
                attempt.signing_started_at = None
                attempt.otp_hash = hash_otp(otp)
                attempt.otp_used_at = now
                attempt.raw_response = self._truncate(result.raw_response)
                attempt.updated_at = now

                if not result.success:
                    attempt.status = SignatureStatus.FAILED
                    attempt.retry_count = (attempt.retry_count or 0) + 1
                    attempt.error_message = result.message
                    self.db.commit()
                    raise SigningFailed(
                        result.message or "Signing failed",
                        raw_response=result.raw_response,
                        attempt_id=attempt_id,
                        retry_count=attempt.retry_count,
                        retries_remaining=max(0, self.max_retries - attempt.retry_count),
                    )

                document_ref = self.documents.replace_document(case_id, document_type, result.signed_bytes)

                attempt.status = SignatureStatus.COMPLETED
                attempt.error_message = None
                attempt.completed_at = now
                attempt.completed_by = completed_by or attempt.officer_id
                attempt.duration_seconds = (now - attempt.started_at).total_seconds() if attempt.started_at else None
                attempt.signature_hash = hashlib.sha256(result.signed_bytes).hexdigest()
                attempt.document_ref = document_ref

                stage_row = get_or_create_stage(self.db, case, stage)
                stage_row.approved = True
                stage_row.approval_comments = comments
                stage_row.approved_at = now
                stage_row.signature_applied = True
                stage_row.signature_at = now

                from_status, to_status = self.state_machine.transition(
                    case,
                    STAGE_CONFIG[stage]["completion_trigger"],
                    actor=ActorType.OFFICER,
                    actor_id=attempt.completed_by,
                    comments=comments,
                )
                self.db.commit()
            except SigningFailed as e:
                logger.warning(
                    f"Signing failed for case {case_id} stage {stage.value} "
                    f"(attempt {attempt_id}, retry {e.context['retry_count']}): {e.message}"
                )
                raise
            except InvalidState:
                self.db.rollback()
                logger.warning(f"Discarding sign result for attempt {attempt_id}: attempt or case changed during the call")
                raise
            except Exception:
                self.db.rollback()
                raise

            logger.info(
                f"Case {case_id} signed by {stage.value} officer; {from_status.value} -> {to_status.value}"
            )
            transition = TransitionOutcome(
                case_id=case_id,
                from_status=from_status,
                to_status=to_status,
                trigger=STAGE_CONFIG[stage]["completion_trigger"],
                message=f"Document signed; transitioned to {to_status.value}",
            )
            self.state_machine.assign_entered_stage(transition)

        return SignatureOutcome(attempt=attempt, document_ref=document_ref, transition=transition)

    def _call_sign(
        self,
        transaction_id: str,
        key_label: str,
        document: bytes,
        otp: str,
        coordinates: str,
    ) -> SignResult:
        try:
            return self.gateway.sign(transaction_id, key_label, document, otp, coordinates)
        except Exception as e:
            logger.exception(f"Signing gateway raised for transaction {transaction_id}")
            return SignResult(False, message=f"Signing gateway error: {e}")

    # =========================================================================
    # RETRY / ABANDON
    # =========================================================================

    def retry(self, attempt_id: str, otp: str, retried_by: Optional[str] = None) -> SignatureOutcome:
        """Reset a FAILED attempt to IN_PROGRESS and complete it again."""
        if not otp or not otp.strip():
            raise ValidationError("OTP is required", attempt_id=attempt_id)

        case_id = self._require_attempt(attempt_id).case_id
        with case_locks.hold(case_id):
            try:
                attempt = self._require_attempt(attempt_id)
                if attempt.status != SignatureStatus.FAILED:
                    raise InvalidState(
                        f"Only FAILED attempts can be retried; attempt {attempt_id} is {attempt.status.value}",
                        attempt_id=attempt_id,
                    )
                if attempt.abandoned_at is not None or attempt.retry_count >= self.max_retries:
                    raise RetryLimitExceeded(
                        f"Signature attempt {attempt_id} reached the retry limit ({self.max_retries}); "
                        f"initiate a new attempt",
                        attempt_id=attempt_id,
                        retry_count=attempt.retry_count,
                    )
                other = self._blocking_attempt(case_id, attempt.stage, exclude_id=attempt.id)
                if other is not None:
                    raise InvalidState(
                        f"Attempt {other.id} is already {other.status.value} for this stage",
                        attempt_id=attempt_id,
                    )
                self._check_case_at_stage(load_case(self.db, case_id), attempt.stage)

                attempt.status = SignatureStatus.IN_PROGRESS
                attempt.error_message = None
                attempt.signing_token = None
                attempt.signing_started_at = None
                attempt.updated_at = self.clock()
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info(f"Retrying signature attempt {attempt_id} (previous failures: {attempt.retry_count})")
        return self.complete(attempt_id, otp, completed_by=retried_by)

    def abandon(self, attempt_id: str, reason: str, abandoned_by: Optional[str] = None) -> SignatureAttemptDB:
        """
        End an IN_PROGRESS attempt for good so a new one can be initiated.

        Also works while a sign call is in flight; its result is then discarded.
        """
        if not reason or not reason.strip():
            raise ValidationError("Abandonment reason is required", attempt_id=attempt_id)

        case_id = self._require_attempt(attempt_id).case_id
        with case_locks.hold(case_id):
            try:
                attempt = self._require_attempt(attempt_id)
                if attempt.status != SignatureStatus.IN_PROGRESS:
                    raise InvalidState(
                        f"Only IN_PROGRESS attempts can be abandoned; attempt {attempt_id} is {attempt.status.value}",
                        attempt_id=attempt_id,
                    )
                now = self.clock()
                attempt.status = SignatureStatus.FAILED
                attempt.error_message = f"Abandoned: {reason.strip()}"
                attempt.abandoned_at = now
                attempt.abandoned_by = abandoned_by
                attempt.signing_token = None
                attempt.signing_started_at = None
                attempt.updated_at = now
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.info(f"Signature attempt {attempt_id} abandoned: {reason}")
        return attempt

    # =========================================================================
    # VERIFY / REVOKE
    # =========================================================================

    def verify(self, attempt_id: str) -> SignatureAttemptDB:
        """
        Compare the stored artifact with what this attempt produced.

        Matching hash: COMPLETED -> VERIFIED. Mismatch (tampered, or replaced
        by a later stage signature) is recorded and the status stays.
        """
        case_id = self._require_attempt(attempt_id).case_id
        with case_locks.hold(case_id):
            try:
                attempt = self._require_attempt(attempt_id)
                if attempt.status != SignatureStatus.COMPLETED:
                    raise InvalidState(
                        f"Only COMPLETED attempts can be verified; attempt {attempt_id} is {attempt.status.value}",
                        attempt_id=attempt_id,
                    )
                now = self.clock()
                stored_hash = self.documents.get_document_hash(case_id, attempt.document_type)
                is_valid = stored_hash is not None and stored_hash == attempt.signature_hash
                attempt.verification_details = {
                    "valid": is_valid,
                    "checked_at": now.isoformat(),
                    "expected_hash": attempt.signature_hash,
                    "stored_hash": stored_hash,
                }
                if is_valid:
                    attempt.status = SignatureStatus.VERIFIED
                    attempt.verified_at = now
                attempt.updated_at = now
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        return attempt

    def revoke(self, attempt_id: str, reason: str, revoked_by: Optional[str] = None) -> SignatureAttemptDB:
        """Mark a signature revoked. Audit marker only; case status is not rolled back."""
        if not reason or not reason.strip():
            raise ValidationError("Revocation reason is required", attempt_id=attempt_id)

        case_id = self._require_attempt(attempt_id).case_id
        with case_locks.hold(case_id):
            try:
                attempt = self._require_attempt(attempt_id)
                if attempt.status not in (SignatureStatus.COMPLETED, SignatureStatus.VERIFIED):
                    raise InvalidState(
                        f"Only signed attempts can be revoked; attempt {attempt_id} is {attempt.status.value}",
                        attempt_id=attempt_id,
                    )
                now = self.clock()
                attempt.status = SignatureStatus.REVOKED
                attempt.revoked_at = now
                attempt.revoked_by = revoked_by
                attempt.revocation_reason = reason.strip()
                attempt.updated_at = now
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

        logger.warning(f"Signature attempt {attempt_id} revoked: {reason}")
        return attempt

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_attempts(self, case_id: str) -> List[SignatureAttemptDB]:
        return (
            self.db.query(SignatureAttemptDB)
            .filter(SignatureAttemptDB.case_id == case_id)
            .order_by(SignatureAttemptDB.created_at, SignatureAttemptDB.id)
            .all()
        )

    def find_stale_attempts(self, older_than: timedelta) -> List[SignatureAttemptDB]:
        """IN_PROGRESS attempts started before now - older_than. Read only."""
        threshold = self.clock() - older_than
        return (
            self.db.query(SignatureAttemptDB)
            .filter(
                SignatureAttemptDB.status == SignatureStatus.IN_PROGRESS,
                SignatureAttemptDB.started_at <= threshold,
            )
            .order_by(SignatureAttemptDB.started_at)
            .all()
        )

    def get_statistics(self, case_id: Optional[str] = None) -> Dict[str, Any]:
        """Attempt counts by status and mean signing duration."""
        query = self.db.query(SignatureAttemptDB)
        if case_id is not None:
            query = query.filter(SignatureAttemptDB.case_id == case_id)
        attempts = query.all()

        by_status = {status.value: 0 for status in SignatureStatus}
        durations = []
        for attempt in attempts:
            by_status[attempt.status.value] += 1
            if attempt.duration_seconds is not None:
                durations.append(attempt.duration_seconds)

        return {
            "total": len(attempts),
            "by_status": by_status,
            "total_retries": sum(a.retry_count or 0 for a in attempts),
            "average_duration_seconds": round(sum(durations) / len(durations), 2) if durations else None,
        }
