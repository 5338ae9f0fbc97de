"""
nima/schemas.py
───────────────
Pydantic v2 request / response schemas (DTOs).

Kept separate from SQLModel table models so that the API contract
can evolve independently of the persistence layer. The mobile client
speaks camelCase; Python code uses snake_case field names.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

GENDERS = {"male", "female", "prefer-not-to-say"}
BUDGET_RANGES = {"low", "mid", "premium"}


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ── Workflow-internal payloads ───────────────────────────────────────


class StyleProfile(BaseModel):
    """What the stylist needs to know about a user."""

    user_id: int
    gender: Optional[str] = None
    style_preferences: List[str] = Field(default_factory=list)
    budget_range: Optional[str] = None
    first_name: Optional[str] = None

    @field_validator("gender")
    @classmethod
    def validate_gender(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().lower()
        return v if v in GENDERS else None

    @field_validator("budget_range")
    @classmethod
    def validate_budget(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().lower()
        return v if v in BUDGET_RANGES else None

    @property
    def catalog_gender(self) -> Optional[str]:
        """male/female select gendered + unisex items; anything else means all."""
        return self.gender if self.gender in ("male", "female") else None

    @property
    def target_gender(self) -> str:
        return self.gender if self.gender in ("male", "female") else "unisex"


class CatalogItem(BaseModel):
    """Catalog entry as shown to the curation model."""

    id: int
    name: str
    brand: Optional[str] = None
    category: str
    colors: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    price: float = 0
    currency: str = "KES"

    model_config = ConfigDict(from_attributes=True)


class LookComposition(BaseModel):
    """One curated outfit, before it is persisted as a Look."""

    item_ids: List[int] = Field(min_length=1)
    name: str = "Curated Look"
    style_tags: List[str] = Field(default_factory=list)
    occasion: str = "casual"
    comment: str = ""


# ── API contracts ────────────────────────────────────────────────────


class ShouldStartResponse(CamelModel):
    should_start: bool
    reason: Optional[str] = None
    pending_count: int = 0
    completed_count: int = 0


class StartWorkflowResponse(CamelModel):
    success: bool
    workflow_id: Optional[str] = None
    error: Optional[str] = None


class WorkflowStatusResponse(CamelModel):
    has_looks: bool = False
    pending_count: int = 0
    processing_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    total_count: int = 0
    is_complete: bool = False


class StartItemTryOnRequest(CamelModel):
    item_id: int = Field(examples=[42])
    selected_size: Optional[str] = Field(default=None, max_length=32, examples=["M"])
    selected_color: Optional[str] = Field(default=None, max_length=64, examples=["Navy"])


class StartItemTryOnResponse(CamelModel):
    success: bool
    try_on_id: Optional[int] = None
    error: Optional[str] = None


class ItemTryOnResponse(CamelModel):
    id: int
    item_id: int
    status: str
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None
    error_message: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class LookResponse(CamelModel):
    id: int
    public_id: str
    name: Optional[str] = None
    item_ids: List[int]
    total_price: float
    currency: str
    style_tags: List[str]
    occasion: Optional[str] = None
    nima_comment: Optional[str] = None
    generation_status: str
    error_message: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime


class CreditBalanceResponse(CamelModel):
    free_remaining: int
    purchased: int
    total: int
    free_per_week: int
    next_reset_at: datetime


class WorkflowStepSummary(CamelModel):
    step_key: str
    status: str
    attempts: int
    error: Optional[str] = None


class WorkflowRunResponse(CamelModel):
    id: str
    name: str
    status: str
    result: Optional[dict] = None
    error: Optional[str] = None
    steps: List[WorkflowStepSummary] = Field(default_factory=list)
    created_at: datetime
    completed_at: Optional[datetime] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str


class UserImageResponse(CamelModel):
    id: int
    is_primary: bool
    updated_at: datetime
