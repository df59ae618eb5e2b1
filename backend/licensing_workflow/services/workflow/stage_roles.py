"""
Stage-Role Lookup

A single parameterized mapping from {category x stage} to the concrete
officer role that reviews it, plus per-stage configuration shared by the
state machine, assignment engine and signature orchestrator.
"""
from typing import Dict, Optional

from ...models.db_models import (
    ApplicationStatus, DocumentType, OfficerRole, PositionCategory,
    RoleTier, StageRole, WorkflowTrigger,
)


# =============================================================================
# ROLE TABLE
# =============================================================================

CATEGORY_ROLES: Dict[PositionCategory, Dict[RoleTier, OfficerRole]] = {
    PositionCategory.ARCHITECT: {
        RoleTier.JUNIOR: OfficerRole.JUNIOR_ARCHITECT,
        RoleTier.ASSISTANT: OfficerRole.ASSISTANT_ARCHITECT,
    },
    PositionCategory.LICENCE_ENGINEER: {
        RoleTier.JUNIOR: OfficerRole.JUNIOR_LICENCE_ENGINEER,
        RoleTier.ASSISTANT: OfficerRole.ASSISTANT_LICENCE_ENGINEER,
    },
    PositionCategory.STRUCTURAL_ENGINEER: {
        RoleTier.JUNIOR: OfficerRole.JUNIOR_STRUCTURAL_ENGINEER,
        RoleTier.ASSISTANT: OfficerRole.ASSISTANT_STRUCTURAL_ENGINEER,
    },
    PositionCategory.SUPERVISOR1: {
        RoleTier.JUNIOR: OfficerRole.JUNIOR_SUPERVISOR1,
        RoleTier.ASSISTANT: OfficerRole.ASSISTANT_SUPERVISOR1,
    },
    PositionCategory.SUPERVISOR2: {
        RoleTier.JUNIOR: OfficerRole.JUNIOR_SUPERVISOR2,
        RoleTier.ASSISTANT: OfficerRole.ASSISTANT_SUPERVISOR2,
    },
}

# Tiers staffed by one role regardless of category
SHARED_TIER_ROLES: Dict[RoleTier, OfficerRole] = {
    RoleTier.EXECUTIVE: OfficerRole.EXECUTIVE_ENGINEER,
    RoleTier.CITY: OfficerRole.CITY_ENGINEER,
    RoleTier.CLERK: OfficerRole.CLERK,
}


# =============================================================================
# STAGE CONFIGURATION
# =============================================================================
#
# review_statuses: statuses during which the stage's assignee owns the case
# signing_status:  status in which the stage signature is taken (None = no signature)
# completion_trigger: trigger fired once the stage has signed / approved
#
# =============================================================================

STAGE_CONFIG = {
    StageRole.JE: {
        "label": "Junior Engineer",
        "tier": RoleTier.JUNIOR,
        "review_statuses": [
            ApplicationStatus.JE_PENDING,
            ApplicationStatus.APPOINTMENT_SCHEDULED,
            ApplicationStatus.DOCUMENT_VERIFICATION_PENDING,
            ApplicationStatus.DOCUMENT_VERIFICATION_IN_PROGRESS,
            ApplicationStatus.DOCUMENT_VERIFICATION_COMPLETED,
            ApplicationStatus.AWAITING_JE_SIGNATURE,
        ],
        "signing_status": ApplicationStatus.AWAITING_JE_SIGNATURE,
        "document_type": DocumentType.RECOMMENDATION_FORM,
        "completion_trigger": WorkflowTrigger.JE_SIGNED,
    },
    StageRole.AE: {
        "label": "Assistant Engineer",
        "tier": RoleTier.ASSISTANT,
        "review_statuses": [ApplicationStatus.AE_PENDING],
        "signing_status": ApplicationStatus.AE_PENDING,
        "document_type": DocumentType.RECOMMENDATION_FORM,
        "completion_trigger": WorkflowTrigger.AE_SIGNED,
    },
    StageRole.EE: {
        "label": "Executive Engineer",
        "tier": RoleTier.EXECUTIVE,
        "review_statuses": [ApplicationStatus.EE_PENDING],
        "signing_status": ApplicationStatus.EE_PENDING,
        "document_type": DocumentType.RECOMMENDATION_FORM,
        "completion_trigger": WorkflowTrigger.EE_SIGNED,
    },
    StageRole.CE: {
        "label": "City Engineer",
        "tier": RoleTier.CITY,
        "review_statuses": [ApplicationStatus.CE_PENDING],
        "signing_status": ApplicationStatus.CE_PENDING,
        "document_type": DocumentType.RECOMMENDATION_FORM,
        "completion_trigger": WorkflowTrigger.CE_SIGNED,
    },
    StageRole.CLERK: {
        "label": "Clerk",
        "tier": RoleTier.CLERK,
        "review_statuses": [ApplicationStatus.CLERK_PENDING],
        "signing_status": None,
        "document_type": None,
        "completion_trigger": WorkflowTrigger.CLERK_APPROVED,
    },
    StageRole.EE_STAGE2: {
        "label": "Executive Engineer (certificate)",
        "tier": RoleTier.EXECUTIVE,
        "review_statuses": [ApplicationStatus.EE_SIGN_PENDING],
        "signing_status": ApplicationStatus.EE_SIGN_PENDING,
        "document_type": DocumentType.LICENCE_CERTIFICATE,
        "completion_trigger": WorkflowTrigger.EE_STAGE2_SIGNED,
    },
    StageRole.CE_STAGE2: {
        "label": "City Engineer (certificate)",
        "tier": RoleTier.CITY,
        "review_statuses": [ApplicationStatus.CE_SIGN_PENDING],
        "signing_status": ApplicationStatus.CE_SIGN_PENDING,
        "document_type": DocumentType.LICENCE_CERTIFICATE,
        "completion_trigger": WorkflowTrigger.CE_STAGE2_SIGNED,
    },
}

_STATUS_STAGES: Dict[ApplicationStatus, StageRole] = {
    status: stage
    for stage, config in STAGE_CONFIG.items()
    for status in config["review_statuses"]
}


def resolve_officer_role(category: PositionCategory, stage: StageRole) -> OfficerRole:
    """Concrete officer role that reviews `stage` for a case of `category`."""
    tier = STAGE_CONFIG[stage]["tier"]
    if tier in SHARED_TIER_ROLES:
        return SHARED_TIER_ROLES[tier]
    return CATEGORY_ROLES[category][tier]


def stage_for_status(status: ApplicationStatus) -> Optional[StageRole]:
    """Stage whose reviewer owns a case in `status`; None for unowned statuses."""
    return _STATUS_STAGES.get(status)


def signing_stage_for_status(status: ApplicationStatus) -> Optional[StageRole]:
    """Stage that signs while the case is in `status`, if any."""
    for stage, config in STAGE_CONFIG.items():
        if config["signing_status"] == status:
            return stage
    return None


def stage_for_trigger(trigger: WorkflowTrigger) -> Optional[StageRole]:
    """Stage completed by `trigger`, if the trigger completes one."""
    for stage, config in STAGE_CONFIG.items():
        if config["completion_trigger"] == trigger:
            return stage
    return None


def requires_signature(stage: StageRole) -> bool:
    return STAGE_CONFIG[stage]["signing_status"] is not None


def document_type_for_stage(stage: StageRole) -> Optional[DocumentType]:
    return STAGE_CONFIG[stage]["document_type"]
