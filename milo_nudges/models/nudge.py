"""
Nudge Models

Typed records for nudges and their feedback. Documents are stored with
camelCase field names; these models are the only place where the mapping
between Python attributes and stored fields lives.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class Nudge(BaseModel):
    """
    A scheduled reminder prompt with delivery and engagement tracking.

    `id` is assigned by the store on creation and is never part of the
    stored document body. Content may be empty on a draft; the repository
    rejects empty content at creation time.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Optional[str] = None
    user_id: Optional[str] = None
    content: str = ""
    is_active: bool = True
    scheduled_days: Set[int] = Field(
        default_factory=set,
        description="ISO weekdays the nudge may fire on (1=Monday .. 7=Sunday)"
    )
    scheduled_minutes: Optional[int] = Field(
        default=None,
        ge=0,
        le=1439,
        description="Minute of day the nudge becomes due"
    )
    last_delivered_at: Optional[datetime] = None
    delivery_count: int = Field(default=0, ge=0)
    last_acted_at: Optional[datetime] = None
    action_count: int = Field(default=0, ge=0)
    average_rating: float = Field(default=0.0, ge=0.0)
    rating_count: int = Field(default=0, ge=0)
    last_feedback_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("scheduled_days")
    @classmethod
    def _check_weekdays(cls, days: Set[int]) -> Set[int]:
        invalid = [day for day in days if day < 1 or day > 7]
        if invalid:
            raise ValueError(f"scheduled days must be between 1 and 7, got {sorted(invalid)}")
        return days

    @classmethod
    def document_field(cls, name: str) -> str:
        """
        Resolve a field name to the name used in stored documents.

        Accepts either the Python attribute name ("created_at") or the
        stored name ("createdAt").

        Raises:
            ValueError: If the name is not a stored nudge field
        """
        for field_name, info in cls.model_fields.items():
            if field_name == "id":
                continue
            alias = info.alias or field_name
            if name in (field_name, alias):
                return alias
        raise ValueError(f"Unknown nudge field: {name}")

    def to_document(self) -> Dict[str, Any]:
        """Serialize to a document body (no id, unset optionals omitted)."""
        data = self.model_dump(by_alias=True, exclude={"id"}, exclude_none=True)
        data["scheduledDays"] = sorted(self.scheduled_days)
        return data

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Nudge":
        """
        Decode a stored document.

        Raises:
            pydantic.ValidationError: If the document does not describe a nudge
        """
        return cls.model_validate({**data, "id": doc_id})

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, payload: str) -> "Nudge":
        return cls.model_validate_json(payload)


class NudgeFeedback(BaseModel):
    """User rating of a delivered nudge, stored in the feedback collection."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    nudge_id: str
    user_id: str
    rating: int
    comment: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
