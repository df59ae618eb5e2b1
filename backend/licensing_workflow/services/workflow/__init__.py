from .state_machine import WorkflowStateMachine, TransitionOutcome, STATUS_CONFIG, TRANSITIONS
from .stage_roles import STAGE_CONFIG, resolve_officer_role, stage_for_status, signing_stage_for_status

__all__ = [
    'WorkflowStateMachine',
    'TransitionOutcome',
    'STATUS_CONFIG',
    'TRANSITIONS',
    'STAGE_CONFIG',
    'resolve_officer_role',
    'stage_for_status',
    'signing_stage_for_status',
]
