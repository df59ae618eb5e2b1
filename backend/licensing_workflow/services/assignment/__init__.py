from .assignment_engine import AssignmentEngine
from .escalation import EscalationScheduler
from .history import AssignmentHistoryRepository
from .rules import AssignmentRuleRepository
from .strategies import Selection, select_officer

__all__ = [
    'AssignmentEngine',
    'EscalationScheduler',
    'AssignmentHistoryRepository',
    'AssignmentRuleRepository',
    'Selection',
    'select_officer',
]
