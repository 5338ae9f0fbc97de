"""
nima/services/catalog.py
────────────────────────
Catalog reads used by look generation.
"""

import logging
from collections.abc import Iterable
from typing import List, Optional

from sqlmodel import Session, select

from nima.models import Item

logger = logging.getLogger(__name__)


def active_items_for(session: Session, gender: Optional[str]) -> List[Item]:
    """
    Active items a user can wear: gendered + unisex for male/female,
    every active item otherwise. De-duplicated, catalog order.
    """
    statement = select(Item).where(Item.is_active == True)  # noqa: E712
    if gender in ("male", "female"):
        statement = statement.where(Item.gender.in_([gender, "unisex"]))  # type: ignore[attr-defined]
    return list(session.exec(statement.order_by(Item.id)).all())  # type: ignore[arg-type]


def available_items(
    session: Session,
    gender: Optional[str],
    exclude_item_ids: Iterable[int] = (),
) -> List[Item]:
    excluded = set(exclude_item_ids)
    items = [item for item in active_items_for(session, gender) if item.id not in excluded]
    logger.debug(
        "Catalog for gender=%s: %d available after excluding %d",
        gender, len(items), len(excluded),
    )
    return items
