"""
Nudge Settings Model

Per-user notification preferences stored in nudgeSettings/{userId}.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class NudgeSettings(BaseModel):
    """Notification preferences; defaults apply when nothing is stored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    is_enabled: bool = True
    max_daily_nudges: int = Field(default=3, ge=0)
    preferred_time_ranges: List[str] = Field(default_factory=lambda: ["morning", "evening"])
    notification_sound: str = "gentle"
    vibration_pattern: str = "default"
    updated_at: Optional[datetime] = None
    error: Optional[str] = Field(
        default=None,
        description="Set on defaults returned because the stored settings could not be read"
    )

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"error"}, exclude_none=True)

    @classmethod
    def from_document(cls, data: Dict[str, Any]) -> "NudgeSettings":
        return cls.model_validate(data)
