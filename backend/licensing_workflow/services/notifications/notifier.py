"""
Notifiers

Delivery side of assignment notifications. The outbox dispatcher calls a
Notifier for each pending message; a raised exception counts as a failed
delivery attempt.
"""
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...models.db_models import NotificationDB

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Assignment notification contract."""

    @abstractmethod
    def notify_assignment(
        self,
        officer_id: str,
        case_number: str,
        case_id: str,
        category: str,
        applicant_name: str,
        assigned_by: Optional[str] = None,
    ) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Writes the notification to the log only."""

    def notify_assignment(self, officer_id, case_number, case_id, category, applicant_name, assigned_by=None):
        logger.info(
            f"Officer {officer_id} assigned to application {case_number} "
            f"({category}, applicant {applicant_name}) by {assigned_by or 'system'}"
        )


class InAppNotifier(Notifier):
    """Persists an in-app notification row in its own session."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def notify_assignment(self, officer_id, case_number, case_id, category, applicant_name, assigned_by=None):
        db = self.session_factory()
        try:
            db.add(NotificationDB(
                id=str(uuid4()),
                officer_id=officer_id,
                case_id=case_id,
                title="New Application Assigned",
                message=(
                    f"Application {case_number} ({category.replace('_', ' ').title()}) "
                    f"from {applicant_name} has been assigned to you."
                ),
            ))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
