"""
Licensing Workflow Services

- workflow:      status state machine and stage-role lookup
- assignment:    reviewer selection, assignment history, escalation
- signature:     OTP + HSM signing protocol
- directory, documents, gateway, notifications: collaborator contracts
"""
from .workflow_service import LicensingWorkflowService

__all__ = ["LicensingWorkflowService"]
