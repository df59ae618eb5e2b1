"""
Escalation Scheduler

AUTHORITY: SYSTEM
Periodic job entry point. Finds cases that exceeded their stage dwell time
and transfers each to the escalation role, one case at a time so a failure
on one case does not stop the run.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ...errors import WorkflowError
from ...models.db_models import AssignmentAction
from .assignment_engine import AssignmentEngine

logger = logging.getLogger(__name__)


class EscalationScheduler:
    """Runs escalation scans against an AssignmentEngine."""

    def __init__(self, engine: AssignmentEngine):
        self.engine = engine

    def run_escalation_scan(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Escalate every current candidate.

        Returns a summary of what was found, escalated and what failed.
        """
        now = now or self.engine.clock()
        candidates, scan_errors = self.engine.scan_escalation_candidates(now)

        escalated = []
        skipped = []
        errors = [{"scope": "rule", **error} for error in scan_errors]

        for case_id in candidates:
            try:
                history = self.engine.escalate(case_id, reason="Escalation time exceeded")
                if history.action == AssignmentAction.TRANSFERRED and history.assigned_at >= now:
                    escalated.append({"case_id": case_id, "officer_id": history.officer_id})
                else:
                    skipped.append({"case_id": case_id, "officer_id": history.officer_id})
            except WorkflowError as e:
                logger.warning(f"Escalation of case {case_id} failed: {e.message}")
                errors.append({"scope": "case", "case_id": case_id, "error_code": e.code, "error": e.message})
            except Exception as e:
                logger.exception(f"Unexpected error escalating case {case_id}")
                errors.append({"scope": "case", "case_id": case_id, "error_code": "UNEXPECTED", "error": str(e)})

        logger.info(
            f"Escalation scan: {len(candidates)} candidates, {len(escalated)} escalated, "
            f"{len(errors)} errors"
        )
        return {
            "run_date": now.isoformat(),
            "candidates_found": len(candidates),
            "escalated": len(escalated),
            "skipped": len(skipped),
            "errors": len(errors),
            "details": {
                "escalated": escalated,
                "skipped": skipped,
                "errors": errors,
            },
        }
