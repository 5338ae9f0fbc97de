"""
nima/services/try_on.py
───────────────────────
Single-item try-on requests.

States: pending → processing → completed | failed, and failed → pending
when the user retries. A completed, processing or pending try-on is
returned as-is and never charged again; creating one or retrying a
failed one costs one credit.

The row is claimed before the charge: a unique (user, item) row for a new
try-on, a conditional failed → pending update for a retry. Whoever loses the
claim gets the winner's id back without paying. A refused charge undoes the
claim. Rendering runs as the durable item_try_on workflow.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from nima.core.config import get_settings
from nima.core.exceptions import (
    InsufficientCreditsError,
    PreconditionFailedError,
    ResourceNotFoundError,
    UserNotFoundError,
)
from nima.models import GenerationStatus, Item, ItemTryOn, User
from nima.services import credits, notifications
from nima.services.user_images import get_primary_image
from nima.workflows.engine import workflow
from nima.workflows.item_try_on import ITEM_TRY_ON_WORKFLOW
from nima.workflows.scheduler import scheduler

logger = logging.getLogger(__name__)
settings = get_settings()

TRY_ON_COST = 1


def latest_try_on(session: Session, user_id: int, item_id: int) -> Optional[ItemTryOn]:
    return session.exec(
        select(ItemTryOn)
        .where(ItemTryOn.user_id == user_id, ItemTryOn.item_id == item_id)
        .order_by(ItemTryOn.created_at.desc(), ItemTryOn.id.desc())  # type: ignore[attr-defined]
    ).first()


def _charge(session: Session, user_id: int) -> None:
    result = credits.deduct_credits(session, user_id, TRY_ON_COST)
    if not result.success:
        if result.error == credits.USER_NOT_FOUND:
            raise UserNotFoundError()
        raise InsufficientCreditsError()
    if result.remaining <= settings.LOW_CREDIT_THRESHOLD:
        scheduler.schedule(notifications.send_low_credit, user_id, result.remaining)


def _set_status_if(session: Session, try_on_id: int, expected: GenerationStatus, new: GenerationStatus) -> bool:
    statement = (
        update(ItemTryOn)
        .where(ItemTryOn.id == try_on_id, ItemTryOn.status == expected.value)
        .values(status=new.value, updated_at=datetime.now(timezone.utc))
    )
    claimed = session.connection().execute(statement).rowcount == 1
    session.commit()
    return claimed


def _claim_new(
    session: Session,
    user_id: int,
    item_id: int,
    photo_id: int,
    selected_size: Optional[str],
    selected_color: Optional[str],
) -> Optional[int]:
    """Insert the pending row. Returns None when a concurrent request got there first."""
    try_on = ItemTryOn(
        item_id=item_id,
        user_id=user_id,
        user_image_id=photo_id,
        selected_size=selected_size,
        selected_color=selected_color,
    )
    session.add(try_on)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        return None
    session.refresh(try_on)
    return try_on.id


def start_item_try_on(
    session: Session,
    user: User,
    item_id: int,
    selected_size: Optional[str] = None,
    selected_color: Optional[str] = None,
) -> int:
    """
    Return the id of the try-on for (user, item), creating or retrying it
    when needed. Must run on the event loop.
    """
    user_id = user.id
    item = session.get(Item, item_id)
    if item is None or not item.is_active:
        raise ResourceNotFoundError("Item not found or inactive")

    photo = get_primary_image(session, user_id)
    if photo is None:
        raise PreconditionFailedError("Please upload a photo first to try on items")
    photo_id = photo.id

    existing = latest_try_on(session, user_id, item_id)
    if existing is not None and existing.status != GenerationStatus.FAILED.value:
        logger.info("Returning existing %s try-on %s for item %s", existing.status, existing.id, item_id)
        return existing.id

    if existing is not None:
        try_on_id = existing.id
        if not _set_status_if(session, try_on_id, GenerationStatus.FAILED, GenerationStatus.PENDING):
            logger.info("Try-on %s was already retried by another request", try_on_id)
            return try_on_id
        try:
            _charge(session, user_id)
        except Exception:
            session.rollback()
            _set_status_if(session, try_on_id, GenerationStatus.PENDING, GenerationStatus.FAILED)
            raise
        existing = session.get(ItemTryOn, try_on_id)
        existing.error_message = None
        existing.user_image_id = photo_id
        existing.selected_size = selected_size
        existing.selected_color = selected_color
        existing.updated_at = datetime.now(timezone.utc)
        session.add(existing)
        session.commit()
        logger.info("[WORKFLOW:ITEM_TRYON] Retrying try-on %s for item %s", try_on_id, item_id)
    else:
        try_on_id = _claim_new(session, user_id, item_id, photo_id, selected_size, selected_color)
        if try_on_id is None:
            winner = latest_try_on(session, user_id, item_id)
            if winner is None:
                raise ResourceNotFoundError("Item not found or inactive")
            logger.info("Try-on for item %s was created by another request: %s", item_id, winner.id)
            return winner.id
        try:
            _charge(session, user_id)
        except Exception:
            session.rollback()
            session.delete(session.get(ItemTryOn, try_on_id))
            session.commit()
            raise
        logger.info("[WORKFLOW:ITEM_TRYON] Starting try-on for item %s, try_on_id=%s", item_id, try_on_id)

    workflow.start(session, ITEM_TRY_ON_WORKFLOW, try_on_id=try_on_id, user_id=user_id)
    return try_on_id
