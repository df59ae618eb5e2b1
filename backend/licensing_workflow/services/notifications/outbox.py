"""
Notification Outbox

Assignments enqueue their notification as a row in the same transaction that
writes the assignment. After commit the dispatcher is kicked; it delivers
pending rows through a Notifier in its own session, recording each attempt.
Delivery problems are logged and never reach the assignment caller.
"""
import logging
import threading
from concurrent.futures import Executor
from typing import Callable, Dict, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...clock import utc_now
from ...config import NOTIFICATION_BATCH_SIZE, NOTIFICATION_MAX_ATTEMPTS
from ...models.db_models import (
    AssignmentHistoryDB, CaseDB, NotificationOutboxDB, NotificationStatus,
)
from .notifier import Notifier

logger = logging.getLogger(__name__)


def enqueue_assignment_notification(
    db: Session,
    case: CaseDB,
    history: AssignmentHistoryDB,
) -> NotificationOutboxDB:
    """Add an outbox row for `history`. Does not commit."""
    message = NotificationOutboxDB(
        id=str(uuid4()),
        officer_id=history.officer_id,
        case_id=case.id,
        assignment_id=history.id,
        payload={
            "officer_id": history.officer_id,
            "case_number": case.case_number,
            "case_id": case.id,
            "category": case.category.value,
            "applicant_name": case.applicant_name,
            "assigned_by": history.assigned_by,
        },
        status=NotificationStatus.PENDING,
        attempts=0,
        created_at=utc_now(),
    )
    db.add(message)
    return message


class NotificationDispatcher:
    """
    Delivers pending outbox rows.

    kick() schedules a delivery pass and never raises. The pass runs on the
    executor if one is given, inline when `inline` is set (job runners),
    otherwise on a short-lived daemon thread. Only one pass runs at a time;
    a kick during a pass schedules one more pass.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        notifier: Notifier,
        executor: Optional[Executor] = None,
        inline: bool = False,
        max_attempts: int = NOTIFICATION_MAX_ATTEMPTS,
        batch_size: int = NOTIFICATION_BATCH_SIZE,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.executor = executor
        self.inline = inline
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self._pass_lock = threading.Lock()
        self._rerun = threading.Event()

    def kick(self) -> None:
        if self.inline:
            self._run_passes()
            return
        try:
            if self.executor is not None:
                self.executor.submit(self._run_passes)
            else:
                threading.Thread(target=self._run_passes, name="notification-dispatch", daemon=True).start()
        except RuntimeError as e:
            # Executor shut down or no thread available; rows stay PENDING for the next pass
            logger.warning(f"Notification dispatch not scheduled: {e}")

    def _run_passes(self) -> None:
        if not self._pass_lock.acquire(blocking=False):
            self._rerun.set()
            return
        try:
            while True:
                self._rerun.clear()
                self.dispatch_pending()
                if not self._rerun.is_set():
                    break
        except Exception:
            logger.exception("Notification dispatch pass crashed")
        finally:
            self._pass_lock.release()

    def dispatch_pending(self) -> Dict[str, int]:
        """Deliver up to batch_size pending rows. Returns counts."""
        summary = {"sent": 0, "failed": 0, "retrying": 0}
        db = self.session_factory()
        try:
            pending = (
                db.query(NotificationOutboxDB)
                .filter(NotificationOutboxDB.status == NotificationStatus.PENDING)
                .order_by(NotificationOutboxDB.created_at, NotificationOutboxDB.id)
                .limit(self.batch_size)
                .all()
            )
            for message in pending:
                outcome = self._deliver(message)
                summary[outcome] += 1
                db.commit()
        finally:
            db.close()
        return summary

    def _deliver(self, message: NotificationOutboxDB) -> str:
        message.attempts = (message.attempts or 0) + 1
        payload = message.payload or {}
        try:
            self.notifier.notify_assignment(
                officer_id=payload.get("officer_id", message.officer_id),
                case_number=payload.get("case_number", ""),
                case_id=payload.get("case_id", message.case_id),
                category=payload.get("category", ""),
                applicant_name=payload.get("applicant_name", ""),
                assigned_by=payload.get("assigned_by"),
            )
        except Exception as e:
            message.last_error = str(e)[:1000]
            if message.attempts >= self.max_attempts:
                message.status = NotificationStatus.FAILED
                logger.warning(
                    f"Notification {message.id} for officer {message.officer_id} failed "
                    f"permanently after {message.attempts} attempts: {e}"
                )
                return "failed"
            logger.warning(f"Notification {message.id} delivery attempt {message.attempts} failed: {e}")
            return "retrying"

        message.status = NotificationStatus.SENT
        message.sent_at = utc_now()
        message.last_error = None
        return "sent"
