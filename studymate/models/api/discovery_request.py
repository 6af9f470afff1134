# studymate/models/api/discovery_request.py
"""
Discovery API request models.
Used by routes for input validation.
"""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from studymate.features.matching.domain import JobPriority, SwipeAction


class CamelModel(BaseModel):
    """Accepts camelCase (client) or snake_case field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SwipeActionItem(CamelModel):
    """One like / pass inside a batch submission."""

    target_user_id: str = Field(..., description="User the action applies to")
    action: SwipeAction = Field(..., description="LIKE or PASS")


class SmartMatchActionRequest(CamelModel):
    """
    Outcome submission.

    Either a single ``targetUserId`` + ``action`` pair or an ``actions``
    list for batched swipes.
    """

    target_user_id: str | None = Field(default=None, description="Single-action target")
    action: SwipeAction | None = Field(default=None, description="Single-action LIKE or PASS")
    actions: list[SwipeActionItem] | None = Field(
        default=None, max_length=100, description="Batched actions"
    )


class PrecomputeRequest(CamelModel):
    """Request an on-demand precomputation for the authenticated user."""

    priority: JobPriority = Field(default=JobPriority.HIGH, description="high, normal or low")
