"""
nima/models.py
──────────────
SQLModel table definitions.

Each class that carries  table=True  maps to a database table.
Fields without defaults are required on INSERT.
"""

import secrets
import string
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from nima.core.config import get_settings

ONE_WEEK = timedelta(weeks=1)

_PUBLIC_ID_ALPHABET = string.ascii_lowercase + string.digits


def _utcnow() -> datetime:
    """Return the current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def _next_weekly_reset() -> datetime:
    return _utcnow() + ONE_WEEK


def generate_public_id(prefix: str) -> str:
    """Short shareable id such as ``look_k3v9x0q2mz7a``."""
    suffix = "".join(secrets.choice(_PUBLIC_ID_ALPHABET) for _ in range(12))
    return f"{prefix}_{suffix}"


class GenerationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class User(SQLModel, table=True):
    """
    An app user plus their styling profile and credit balance.
    Credit fields are only written through nima.services.credits.
    """

    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)

    # Subject claim from the identity provider
    auth_subject: str = Field(index=True, unique=True, max_length=128)
    email: Optional[str] = Field(default=None, max_length=256)
    first_name: Optional[str] = Field(default=None, max_length=128)

    gender: Optional[str] = Field(default=None, max_length=32)        # male | female | prefer-not-to-say
    style_preferences: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    budget_range: Optional[str] = Field(default=None, max_length=16)  # low | mid | premium

    # Credit balance
    free_credits_remaining: int = Field(default_factory=lambda: get_settings().FREE_WEEKLY_CREDITS, ge=0)
    purchased_credits: int = Field(default=0, ge=0)
    weekly_credits_reset_at: datetime = Field(default_factory=_next_weekly_reset)
    credits_version: int = Field(default=0)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class UserImage(SQLModel, table=True):
    """A reference photo. At most one per user carries is_primary."""

    __tablename__ = "user_images"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    storage_id: str = Field(max_length=64)
    is_primary: bool = Field(default=False, index=True)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Item(SQLModel, table=True):
    """Catalog product. Read-only from the generation core."""

    __tablename__ = "items"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=256)
    brand: Optional[str] = Field(default=None, max_length=128)
    category: str = Field(max_length=64)      # top | bottom | dress | outfit | outerwear | shoes | accessory …
    gender: str = Field(default="unisex", index=True, max_length=16)  # male | female | unisex

    price: float = Field(default=0, ge=0)
    currency: str = Field(default="KES", max_length=8)
    colors: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))

    description: Optional[str] = Field(default=None)
    image_url: Optional[str] = Field(default=None, max_length=512)
    is_active: bool = Field(default=True, index=True)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Look(SQLModel, table=True):
    """
    An AI-curated outfit. Created 'pending' by the generation workflow and
    moved forward to 'processing' and then 'completed' or 'failed'.
    """

    __tablename__ = "looks"
    __table_args__ = (UniqueConstraint("workflow_run_id", "batch_index"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    public_id: str = Field(default_factory=lambda: generate_public_id("look"), index=True, max_length=32)
    creator_user_id: int = Field(foreign_key="users.id", index=True)

    item_ids: List[int] = Field(default_factory=list, sa_column=Column(JSON))
    total_price: float = Field(default=0)
    currency: str = Field(default="KES", max_length=8)

    name: Optional[str] = Field(default=None, max_length=256)
    style_tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    occasion: Optional[str] = Field(default=None, max_length=64)
    nima_comment: Optional[str] = Field(default=None)
    target_gender: str = Field(default="unisex", max_length=16)
    target_budget_range: Optional[str] = Field(default=None, max_length=16)

    generation_status: str = Field(default=GenerationStatus.PENDING.value, index=True, max_length=16)
    error_message: Optional[str] = Field(default=None)
    created_by: str = Field(default="system", max_length=16)
    workflow_run_id: Optional[str] = Field(default=None, index=True, max_length=32)
    # Slot within the generating run's batch
    batch_index: Optional[int] = Field(default=None)
    is_active: bool = Field(default=True)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class LookImage(SQLModel, table=True):
    """Rendered try-on image for a look (1:1)."""

    __tablename__ = "look_images"

    id: Optional[int] = Field(default=None, primary_key=True)
    look_id: int = Field(foreign_key="looks.id", index=True, unique=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    user_image_id: Optional[int] = Field(default=None, foreign_key="user_images.id")
    storage_id: str = Field(max_length=64)
    status: str = Field(default=GenerationStatus.COMPLETED.value, max_length=16)
    generation_provider: str = Field(default="openai", max_length=32)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ItemTryOn(SQLModel, table=True):
    """Single-item try-on request and its result. One row per (user, item); retries reuse it."""

    __tablename__ = "item_try_ons"
    __table_args__ = (UniqueConstraint("user_id", "item_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    item_id: int = Field(foreign_key="items.id", index=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    user_image_id: Optional[int] = Field(default=None, foreign_key="user_images.id")

    status: str = Field(default=GenerationStatus.PENDING.value, max_length=16)
    selected_size: Optional[str] = Field(default=None, max_length=32)
    selected_color: Optional[str] = Field(default=None, max_length=64)
    storage_id: Optional[str] = Field(default=None, max_length=64)
    generation_provider: Optional[str] = Field(default=None, max_length=32)
    error_message: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class PushToken(SQLModel, table=True):
    """Expo push token registered by a device."""

    __tablename__ = "push_tokens"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    token: str = Field(max_length=256)
    platform: str = Field(default="ios", max_length=16)   # ios | android | web
    is_active: bool = Field(default=True)

    created_at: datetime = Field(default_factory=_utcnow)


class WorkflowRun(SQLModel, table=True):
    """One execution of a durable workflow."""

    __tablename__ = "workflow_runs"

    id: str = Field(primary_key=True, max_length=32)
    name: str = Field(index=True, max_length=64)
    user_id: Optional[int] = Field(default=None, index=True)
    args: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    status: str = Field(default=RunStatus.RUNNING.value, index=True, max_length=16)
    result: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = Field(default=None)


class WorkflowStep(SQLModel, table=True):
    """Checkpoint of a finished step; replays return the stored outcome."""

    __tablename__ = "workflow_steps"
    __table_args__ = (UniqueConstraint("run_id", "step_key"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    run_id: str = Field(foreign_key="workflow_runs.id", index=True, max_length=32)
    step_key: str = Field(max_length=128)
    input_hash: str = Field(max_length=64)

    status: str = Field(max_length=16)
    attempts: int = Field(default=1)
    output: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
