"""
nima/services/curation.py
─────────────────────────
Turns raw stylist-model output into usable look compositions.

Rules applied to every look
───────────────────────────
• only ids from the offered catalog, no item reused across looks
• at most one item per category (no two jackets, no two pairs of shoes)
• at least two items; a short look is topped up from unused categories
• a dress or outfit/set is a complete base, so no top or bottom with it

When the model returns fewer usable looks than requested, rule-based
fallback looks fill the gap.
"""

import json
import logging
import re
from collections.abc import Iterable, Sequence
from typing import Any, Dict, List, Optional, Set

from nima.schemas import CatalogItem, LookComposition

logger = logging.getLogger(__name__)

MIN_ITEMS_PER_LOOK = 2
COMPLETE_PIECES = {"dress", "outfit"}
TOP_UP_CATEGORIES = ["top", "bottom", "shoes", "accessory", "dress", "outfit", "outerwear"]

_FALLBACK_CONFIGS: List[Dict[str, Any]] = [
    {
        "name": "Evening Elegance",
        "occasion": "Date Night",
        "style_tags": ["elegant", "romantic", "chic"],
        "complete_piece": True,
        "target_items": 2,
        "categories": ["shoes"],
    },
    {
        "name": "Effortless Style",
        "occasion": "Everyday Casual",
        "style_tags": ["casual", "comfortable", "versatile"],
        "complete_piece": False,
        "target_items": 3,
        "categories": ["top", "bottom", "shoes"],
    },
    {
        "name": "Polished Look",
        "occasion": "Smart Casual",
        "style_tags": ["smart", "polished", "versatile"],
        "complete_piece": False,
        "target_items": 4,
        "categories": ["top", "bottom", "shoes", "accessory"],
    },
]

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


def extract_json_array(text: str) -> List[Any]:
    """Pull the first JSON array out of a model reply (tolerates code fences)."""
    match = _JSON_ARRAY_RE.search(text or "")
    if not match:
        raise ValueError("No JSON array found in AI response")
    data = json.loads(match.group(0))
    if not isinstance(data, list):
        raise ValueError("AI response is not a JSON array")
    return data


def _coerce_id(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _raw_item_ids(raw_look: Dict[str, Any]) -> List[int]:
    ids: List[int] = []
    for entry in raw_look.get("items") or raw_look.get("itemIds") or []:
        value = entry.get("itemId") if isinstance(entry, dict) else entry
        item_id = _coerce_id(value)
        if item_id is not None:
            ids.append(item_id)
    return ids


def _fits(item: CatalogItem, chosen: Sequence[CatalogItem]) -> bool:
    categories = {c.category for c in chosen}
    if item.category in categories:
        return False
    if item.category in ("top", "bottom") and categories & COMPLETE_PIECES:
        return False
    if item.category in COMPLETE_PIECES and categories & {"top", "bottom"}:
        return False
    return True


def clean_look_items(
    item_ids: Iterable[int],
    by_id: Dict[int, CatalogItem],
    used: Set[int],
) -> List[CatalogItem]:
    """Keep known, unused items in order, dropping category clashes."""
    chosen: List[CatalogItem] = []
    for item_id in item_ids:
        item = by_id.get(item_id)
        if item is None or item_id in used:
            continue
        if not _fits(item, chosen):
            logger.warning("Dropping clashing item %s (%s) from look", item.name, item.category)
            continue
        chosen.append(item)
    return chosen


def _top_up(chosen: List[CatalogItem], items: Sequence[CatalogItem], used: Set[int]) -> None:
    taken = {c.id for c in chosen}
    for category in TOP_UP_CATEGORIES:
        if len(chosen) >= MIN_ITEMS_PER_LOOK:
            return
        candidate = next(
            (
                i for i in items
                if i.category == category and i.id not in used and i.id not in taken and _fits(i, chosen)
            ),
            None,
        )
        if candidate is not None:
            chosen.append(candidate)
            taken.add(candidate.id)


def validate_compositions(
    raw_looks: Sequence[Any],
    items: Sequence[CatalogItem],
    limit: int,
) -> List[LookComposition]:
    """Apply the look rules to model output; unusable looks are dropped."""
    by_id = {item.id: item for item in items}
    used: Set[int] = set()
    looks: List[LookComposition] = []

    for raw in list(raw_looks)[:limit]:
        if not isinstance(raw, dict):
            continue
        chosen = clean_look_items(_raw_item_ids(raw), by_id, used)
        if len(chosen) < MIN_ITEMS_PER_LOOK:
            _top_up(chosen, items, used)
        if len(chosen) < MIN_ITEMS_PER_LOOK:
            logger.warning("Discarding look '%s': fewer than %d usable items", raw.get("name"), MIN_ITEMS_PER_LOOK)
            continue

        used.update(c.id for c in chosen)
        looks.append(
            LookComposition(
                item_ids=[c.id for c in chosen],
                name=str(raw.get("name") or "Curated Look"),
                style_tags=[str(t) for t in raw.get("styleTags") or raw.get("style_tags") or []],
                occasion=str(raw.get("occasion") or "casual"),
            )
        )
    return looks


def build_fallback_looks(
    items: Sequence[CatalogItem],
    exclude: Iterable[int] = (),
    limit: int = 3,
) -> List[LookComposition]:
    """Rule-based looks of varied size (2, 3 and 4 items)."""
    used: Set[int] = set(exclude)
    by_category: Dict[str, List[CatalogItem]] = {}
    for item in items:
        by_category.setdefault(item.category, []).append(item)

    def first_unused(category: str) -> Optional[CatalogItem]:
        return next((i for i in by_category.get(category, []) if i.id not in used), None)

    looks: List[LookComposition] = []
    for config in _FALLBACK_CONFIGS:
        if len(looks) >= limit:
            break
        chosen: List[CatalogItem] = []
        if config["complete_piece"]:
            piece = first_unused("outfit") or first_unused("dress")
            if piece is not None:
                chosen.append(piece)
                used.add(piece.id)
        if not config["complete_piece"] or chosen:
            for category in config["categories"]:
                if len(chosen) >= config["target_items"]:
                    break
                candidate = first_unused(category)
                if candidate is not None and _fits(candidate, chosen):
                    chosen.append(candidate)
                    used.add(candidate.id)

        if len(chosen) < MIN_ITEMS_PER_LOOK:
            for item in items:
                if len(chosen) >= config["target_items"]:
                    break
                if item.id in used or not _fits(item, chosen):
                    continue
                chosen.append(item)
                used.add(item.id)

        if len(chosen) >= MIN_ITEMS_PER_LOOK:
            looks.append(
                LookComposition(
                    item_ids=[c.id for c in chosen],
                    name=config["name"],
                    style_tags=list(config["style_tags"]),
                    occasion=config["occasion"],
                )
            )
        else:
            # Leave the items for the next configuration.
            used.difference_update(c.id for c in chosen)
    return looks


def finalize_compositions(
    raw_looks: Optional[Sequence[Any]],
    items: Sequence[CatalogItem],
    limit: int,
) -> List[LookComposition]:
    """Validated model looks, topped up with fallback looks to `limit`."""
    looks = validate_compositions(raw_looks or [], items, limit)
    if len(looks) < limit:
        logger.warning("Only %d valid looks from AI, using fallback for the rest", len(looks))
        taken = {item_id for look in looks for item_id in look.item_ids}
        looks.extend(build_fallback_looks(items, exclude=taken, limit=limit - len(looks)))
    return looks
