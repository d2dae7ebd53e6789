"""
Nudge Statistics Model

Aggregates computed over a capped scan of the most recent nudges. The scan
is an approximation for users with more nudges than the scan limit.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class NudgeStats(BaseModel):
    """Engagement statistics for the current user's nudges."""

    total_nudges: int = 0
    active_nudges: int = 0
    delivered_nudges: int = 0
    acted_upon_nudges: int = 0
    average_rating: float = Field(default=0.0, description="Rating-weighted mean across nudges")
    total_ratings: int = 0
    engagement_rate: float = Field(default=0.0, description="Acted upon / delivered, in percent")
    last_updated: datetime
    error: Optional[str] = Field(
        default=None,
        description="Set when the statistics could not be computed"
    )

    @classmethod
    def empty(cls, error: Optional[str], now: datetime) -> "NudgeStats":
        """Zero-valued statistics annotated with the failure."""
        return cls(last_updated=now, error=error)
