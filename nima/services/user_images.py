"""
nima/services/user_images.py
────────────────────────────
Reference photos. Exactly one photo per user should be primary; the
generation steps fall back to any photo if none is.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Session, select

from nima.core.exceptions import ResourceNotFoundError
from nima.models import User, UserImage

logger = logging.getLogger(__name__)


def has_any_image(session: Session, user_id: int) -> bool:
    return session.exec(select(UserImage.id).where(UserImage.user_id == user_id)).first() is not None


def get_primary_image(session: Session, user_id: int) -> Optional[UserImage]:
    return session.exec(
        select(UserImage)
        .where(UserImage.user_id == user_id, UserImage.is_primary == True)  # noqa: E712
        .order_by(UserImage.id)  # type: ignore[arg-type]
    ).first()


def get_reference_image(session: Session, user_id: int) -> Optional[UserImage]:
    """Primary photo, or the oldest photo when none is flagged."""
    primary = get_primary_image(session, user_id)
    if primary is not None:
        return primary
    return session.exec(
        select(UserImage).where(UserImage.user_id == user_id).order_by(UserImage.id)  # type: ignore[arg-type]
    ).first()


def set_primary_image(session: Session, user: User, image_id: int) -> UserImage:
    """Make `image_id` the user's only primary photo."""
    image = session.get(UserImage, image_id)
    if image is None or image.user_id != user.id:
        raise ResourceNotFoundError("Image not found")
    if image.is_primary:
        return image

    now = datetime.now(timezone.utc)
    current = session.exec(
        select(UserImage).where(UserImage.user_id == user.id, UserImage.is_primary == True)  # noqa: E712
    ).all()
    for other in current:
        other.is_primary = False
        other.updated_at = now
        session.add(other)

    image.is_primary = True
    image.updated_at = now
    session.add(image)
    session.commit()
    session.refresh(image)
    logger.info("Primary image set: user_id=%s image_id=%s (cleared %d)", user.id, image.id, len(current))
    return image
