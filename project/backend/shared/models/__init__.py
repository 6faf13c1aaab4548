"""
Data models for the orchestration and billing backend.

This module exports all Pydantic models shared across modules.
"""

from .common import new_id, utc_now
from .credits import (
    AlertType,
    BonusAllocation,
    BonusCredit,
    CreditAlert,
    CreditBalance,
    CreditReservation,
    CreditTransaction,
    CreditTransactionType,
    DailyUsageSummary,
    GrantSource,
    ReservationStatus,
    UsageBucket,
)
from .payment import PaymentOrder, PaymentOrderStatus, WebhookEvent
from .project import GeneratedMedia, Project, Scene, Story
from .pipeline import (
    SATISFIED_STAGE_STATUSES,
    TERMINAL_RUN_STATUSES,
    CompletionCheckResult,
    PipelineRun,
    PipelineRunStage,
    PipelineStageDefinition,
    PipelineTemplate,
    PreparedJob,
    StageHandlerContext,
    StageQueueConfig,
)

__all__ = [
    "new_id",
    "utc_now",
    # Credit models
    "AlertType",
    "BonusAllocation",
    "BonusCredit",
    "CreditAlert",
    "CreditBalance",
    "CreditReservation",
    "CreditTransaction",
    "CreditTransactionType",
    "DailyUsageSummary",
    "GrantSource",
    "ReservationStatus",
    "UsageBucket",
    # Payment models
    "PaymentOrder",
    "PaymentOrderStatus",
    "WebhookEvent",
    # Project models
    "GeneratedMedia",
    "Project",
    "Scene",
    "Story",
    # Pipeline models
    "SATISFIED_STAGE_STATUSES",
    "TERMINAL_RUN_STATUSES",
    "CompletionCheckResult",
    "PipelineRun",
    "PipelineRunStage",
    "PipelineStageDefinition",
    "PipelineTemplate",
    "PreparedJob",
    "StageHandlerContext",
    "StageQueueConfig",
]
