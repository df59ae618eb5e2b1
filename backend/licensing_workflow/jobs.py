"""
Scheduled jobs.

Usage:
    python -m licensing_workflow.jobs escalations
    python -m licensing_workflow.jobs notifications
"""
import json
import logging
import sys

from .database import SessionLocal
from .services.assignment.assignment_engine import AssignmentEngine
from .services.assignment.escalation import EscalationScheduler
from .services.notifications.notifier import InAppNotifier
from .services.notifications.outbox import NotificationDispatcher

logger = logging.getLogger(__name__)


def run_escalation_scan() -> dict:
    """Escalate every case past its dwell time."""
    db = SessionLocal()
    try:
        dispatcher = NotificationDispatcher(SessionLocal, InAppNotifier(SessionLocal), inline=True)
        engine = AssignmentEngine(db, dispatcher=dispatcher)
        return EscalationScheduler(engine).run_escalation_scan()
    finally:
        db.close()


def run_notification_dispatch() -> dict:
    """Deliver pending assignment notifications."""
    dispatcher = NotificationDispatcher(SessionLocal, InAppNotifier(SessionLocal), inline=True)
    return dispatcher.dispatch_pending()


JOBS = {
    "escalations": run_escalation_scan,
    "notifications": run_notification_dispatch,
}


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1 or args[0] not in JOBS:
        print(f"Usage: python -m licensing_workflow.jobs [{'|'.join(JOBS)}]")
        return 2

    result = JOBS[args[0]]()
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
