"""
Nudge Models
"""

from milo_nudges.models.nudge import Nudge, NudgeFeedback
from milo_nudges.models.nudge_stats import NudgeStats
from milo_nudges.models.nudge_settings import NudgeSettings
from milo_nudges.models.pagination import PaginatedResult
from milo_nudges.models.batch_operation import (
    AnyBatchOperation,
    BatchOperation,
    CreateOperation,
    DeleteOperation,
    UpdateOperation,
)

__all__ = [
    "Nudge",
    "NudgeFeedback",
    "NudgeStats",
    "NudgeSettings",
    "PaginatedResult",
    "AnyBatchOperation",
    "BatchOperation",
    "CreateOperation",
    "UpdateOperation",
    "DeleteOperation",
]
