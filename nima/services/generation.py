"""
nima/services/generation.py
───────────────────────────
Image-generation units of work for looks and single-item try-ons.

Each function here is one retryable step: it raises on failure and leaves
the terminal 'failed' transition to the caller once retries are used up
(mark_look_failed / mark_try_on_failed). Status moves forward only:
pending → processing → completed | failed.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx
from sqlmodel import select

from nima.core.config import get_settings
from nima.database import session_scope
from nima.models import GenerationStatus, Item, ItemTryOn, Look, LookImage, UserImage
from nima.services import ai_service
from nima.services.user_images import get_reference_image
from nima.storage import storage
from nima.workflows.engine import PermanentStepError

logger = logging.getLogger(__name__)
settings = get_settings()

GENERATION_PROVIDER = "openai"


def describe_item(item: Item, color: Optional[str] = None) -> str:
    """'navy/white Linen Shirt by Acme' style label used in prompts."""
    color_str = color or "/".join(item.colors)
    brand = f" by {item.brand}" if item.brand else ""
    return f"{color_str} {item.name}{brand}".strip()


async def fetch_item_image(client: httpx.AsyncClient, item: Item) -> Optional[bytes]:
    if not item.image_url:
        return None
    try:
        response = await client.get(item.image_url)
        response.raise_for_status()
        return response.content
    except httpx.HTTPError as exc:
        logger.warning("Could not fetch image for item %s: %s", item.id, exc)
        return None


async def fetch_item_images(items: Sequence[Item]) -> List[Optional[bytes]]:
    """Fetch catalog images concurrently; missing or failed ones come back as None."""
    async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS, follow_redirects=True) as client:
        return list(await asyncio.gather(*(fetch_item_image(client, item) for item in items)))


def _read_reference(storage_id: str) -> bytes:
    try:
        return storage.read(storage_id)
    except (OSError, ValueError) as exc:
        raise PermanentStepError(f"Reference photo could not be read: {exc}") from exc


def _try_on_prompt(direction: str, descriptions: Sequence[str], single_item: bool) -> str:
    references = "\n".join(
        f"Reference Image {i}: {d}" for i, d in enumerate(descriptions, start=2)
    )
    what = "the item" if single_item else "ALL the clothing items"
    only = "- Show ONLY this single item, no other outfit pieces\n" if single_item else ""
    return (
        "Virtual try-on fashion photo: Create an image of this person (shown in the first "
        f"reference image) wearing {what} shown in the other reference images.\n\n"
        "Reference Image 1: Photo of the person who should be wearing the clothes\n"
        f"{references}\n\n"
        f"{direction}\n\n"
        "Important:\n"
        "- Keep the person's face, body type & size, and identity exactly as shown in Reference Image 1\n"
        f"- Dress them in {what} from the other reference images\n"
        f"{only}"
        "- Make it look like a professional fashion photograph"
    )


async def _render(person: bytes, garments: List[bytes], descriptions: List[str], single_item: bool) -> bytes:
    direction = await ai_service.write_try_on_prompt(descriptions, single_item=single_item)
    rendered = await ai_service.render_try_on(
        person, garments, _try_on_prompt(direction, descriptions, single_item)
    )
    if rendered is None:
        logger.warning("No image in first render, retrying with a simpler prompt")
        rendered = await ai_service.render_try_on(
            person,
            [],
            "Generate a professional fashion photograph of THIS PERSON wearing: "
            f"{', '.join(descriptions)}. Clean background, natural lighting. "
            "Keep the person's identity, face, and body type exactly as shown.",
        )
    if rendered is None:
        raise RuntimeError("Image generation failed - model did not return an image.")
    return rendered


# ── Looks ────────────────────────────────────────────────────────────


def set_look_status(look_id: int, status: GenerationStatus, error: Optional[str] = None) -> None:
    with session_scope() as session:
        look = session.get(Look, look_id)
        if look is None:
            logger.error("Look not found: %s", look_id)
            return
        look.generation_status = status.value
        look.error_message = error
        look.updated_at = datetime.now(timezone.utc)
        session.add(look)
        session.commit()
    logger.info("Look %s is now %s", look_id, status.value)


def mark_look_failed(look_id: int, error: str) -> Dict[str, Any]:
    set_look_status(look_id, GenerationStatus.FAILED, error=error)
    return {"look_id": look_id, "status": GenerationStatus.FAILED.value}


async def generate_look_image(look_id: int, user_id: int) -> Dict[str, Any]:
    """Render, store and attach the try-on image for one look."""
    set_look_status(look_id, GenerationStatus.PROCESSING)

    with session_scope() as session:
        look = session.get(Look, look_id)
        if look is None:
            raise PermanentStepError(f"Look not found: {look_id}")
        reference = get_reference_image(session, user_id)
        if reference is None:
            raise PermanentStepError("User does not have a primary image for try-on")
        items = [item for item in (session.get(Item, i) for i in look.item_ids) if item is not None]
        reference_id, reference_storage_id = reference.id, reference.storage_id

    person = _read_reference(reference_storage_id)
    fetched = await fetch_item_images(items)
    garments = [data for data in fetched if data is not None]
    descriptions = [describe_item(item) for item, data in zip(items, fetched) if data is not None]
    if not descriptions:
        descriptions = [describe_item(item) for item in items]

    rendered = await _render(person, garments, descriptions, single_item=False)
    storage_id = storage.store(rendered)

    now = datetime.now(timezone.utc)
    with session_scope() as session:
        look_image = session.exec(select(LookImage).where(LookImage.look_id == look_id)).first()
        if look_image is None:
            look_image = LookImage(look_id=look_id, user_id=user_id, storage_id=storage_id)
        look_image.storage_id = storage_id
        look_image.user_image_id = reference_id
        look_image.status = GenerationStatus.COMPLETED.value
        look_image.generation_provider = GENERATION_PROVIDER
        look_image.updated_at = now
        session.add(look_image)
        session.commit()
        look_image_id = look_image.id

    set_look_status(look_id, GenerationStatus.COMPLETED)
    return {"look_id": look_id, "look_image_id": look_image_id, "storage_id": storage_id}


# ── Single-item try-ons ──────────────────────────────────────────────


def set_try_on_status(
    try_on_id: int,
    status: GenerationStatus,
    storage_id: Optional[str] = None,
    error: Optional[str] = None,
) -> Optional[ItemTryOn]:
    with session_scope() as session:
        try_on = session.get(ItemTryOn, try_on_id)
        if try_on is None:
            logger.error("Item try-on not found: %s", try_on_id)
            return None
        try_on.status = status.value
        if storage_id is not None:
            try_on.storage_id = storage_id
            try_on.generation_provider = GENERATION_PROVIDER
        if error is not None:
            try_on.error_message = error
        try_on.updated_at = datetime.now(timezone.utc)
        session.add(try_on)
        session.commit()
        session.refresh(try_on)
        return try_on


def mark_try_on_failed(try_on_id: int, error: str) -> None:
    set_try_on_status(try_on_id, GenerationStatus.FAILED, error=error)


async def generate_item_try_on_image(try_on_id: int) -> str:
    """Render the user wearing one catalog item. Returns the storage id."""
    set_try_on_status(try_on_id, GenerationStatus.PROCESSING)

    with session_scope() as session:
        try_on = session.get(ItemTryOn, try_on_id)
        if try_on is None:
            raise PermanentStepError(f"Item try-on not found: {try_on_id}")
        item = session.get(Item, try_on.item_id)
        if item is None:
            raise PermanentStepError(f"Item not found: {try_on.item_id}")
        reference = None
        if try_on.user_image_id is not None:
            reference = session.get(UserImage, try_on.user_image_id)
        if reference is None:
            reference = get_reference_image(session, try_on.user_id)
        if reference is None:
            raise PermanentStepError("User does not have a primary image for try-on")
        reference_storage_id = reference.storage_id
        description = describe_item(item, color=try_on.selected_color)
        session.expunge(item)

    person = _read_reference(reference_storage_id)
    garments = [data for data in await fetch_item_images([item]) if data is not None]
    rendered = await _render(person, garments, [description], single_item=True)
    storage_id = storage.store(rendered)
    set_try_on_status(try_on_id, GenerationStatus.COMPLETED, storage_id=storage_id)
    return storage_id
