"""
nima/services/ai_service.py
───────────────────────────
All interactions with the OpenAI API live here.

Design principles
─────────────────
• One AsyncOpenAI client shared across the process lifetime.
• API failures raise AIServiceError so the calling workflow step can retry.
• Unusable model *content* (bad JSON, unknown ids) never fails a run: the
  curation rules and fallback looks in curation.py take over.
• The stylist comment is cosmetic; it falls back to a stock line.
"""

import asyncio
import base64
import json
import logging
from typing import Any, List, Optional, Sequence

from openai import AsyncOpenAI, OpenAIError

from nima.core.config import get_settings
from nima.core.exceptions import AIServiceError
from nima.schemas import CatalogItem, LookComposition, StyleProfile
from nima.services.curation import extract_json_array, finalize_compositions

logger = logging.getLogger(__name__)
settings = get_settings()

_client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)

_FALLBACK_COMMENT = "This look is absolutely perfect for you! Trust the process."

_MIME_TO_EXTENSION: dict[str, str] = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


def detect_mime(image_bytes: bytes) -> str:
    """
    Detect image MIME type from magic bytes.
    Returns a string like 'image/jpeg'.
    """
    if image_bytes[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if image_bytes[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if image_bytes[:4] in (b"RIFF", b"WEBP") or b"WEBP" in image_bytes[:12]:
        return "image/webp"
    return "application/octet-stream"


def _as_upload(name: str, image_bytes: bytes) -> tuple[str, bytes, str]:
    mime = detect_mime(image_bytes)
    if mime not in _MIME_TO_EXTENSION:
        # The edit endpoint only takes real image types; label unknowns as JPEG.
        mime = "image/jpeg"
    return f"{name}.{_MIME_TO_EXTENSION[mime]}", image_bytes, mime


def _gender_rules(profile: StyleProfile) -> str:
    if profile.gender == "male":
        return (
            "- User is MALE: NEVER include dresses, skirts, blouses, heels, or feminine clothing.\n"
            "- ONLY use items categorized as: top, bottom, outerwear, shoes, accessory, bag, jewelry."
        )
    if profile.gender == "female":
        return "- User is FEMALE: You may include dresses, skirts, blouses, heels, and any clothing items."
    return (
        "- Gender not specified: Use gender-neutral items only. "
        "Prefer tops, bottoms, outerwear, and unisex accessories."
    )


def _build_curation_prompt(profile: StyleProfile, items: Sequence[CatalogItem], count: int) -> str:
    catalog = "\n".join(
        f'- ID: {item.id}, Name: "{item.name}", Category: {item.category}, '
        f"Colors: {', '.join(item.colors)}, Tags: {', '.join(item.tags)}, "
        f"Price: {item.price} {item.currency}"
        for item in items
    )
    return (
        "You are Nima, an expert fashion stylist with a fun, energetic personality.\n"
        f"Create {count} unique, stylish outfit combinations (looks) for this user.\n\n"
        "User Profile:\n"
        f"- Gender preference: {profile.gender or 'not specified'}\n"
        f"- Style preferences: {', '.join(profile.style_preferences) or 'casual'}\n"
        f"- Budget range: {profile.budget_range or 'mid'}\n\n"
        "Available Items (use these item IDs exactly):\n"
        f"{catalog}\n\n"
        "CRITICAL GENDER RULES:\n"
        f"{_gender_rules(profile)}\n\n"
        "OUTFIT RULES:\n"
        "1. Vary the look sizes: one with 2 items, one with 3, one with 4.\n"
        "2. A dress, jumpsuit or outfit/set is a complete base: only add shoes or accessories.\n"
        "3. Top + bottom together form a complete base outfit.\n"
        "4. At most ONE item per category in a look (one pair of shoes, one top, one bag).\n"
        "   An outerwear piece over a top is allowed.\n"
        "5. Never repeat an item across looks. Use only the IDs listed above.\n"
        "6. Give each look a catchy name and a varied occasion "
        "(casual, work, date night, weekend, brunch ...).\n\n"
        "Return ONLY a JSON object of the form:\n"
        '{"looks": [{"items": [{"itemId": 12, "category": "top", "name": "..."}], '
        '"occasion": "casual", "styleTags": ["casual"], "name": "Weekend Wanderer"}]}\n'
        'If you cannot build any valid look return {"looks": []}.'
    )


async def select_look_compositions(
    profile: StyleProfile,
    items: Sequence[CatalogItem],
    count: int,
) -> List[LookComposition]:
    """
    Ask the stylist model for `count` looks drawn from `items`, then validate
    them and add a short stylist comment to each.

    Raises AIServiceError if the API call itself fails.
    """
    if not items:
        raise AIServiceError("No items available for look generation")

    try:
        response = await _client.chat.completions.create(
            model=settings.OPENAI_MODEL,
            messages=[
                {"role": "system", "content": "You are a fashion stylist. Output JSON only."},
                {"role": "user", "content": _build_curation_prompt(profile, items, count)},
            ],
            response_format={"type": "json_object"},
            temperature=0.8,
        )
    except OpenAIError as exc:
        logger.error("select_look_compositions error: %s", exc)
        raise AIServiceError(f"Look curation failed: {exc}") from exc

    raw_looks: Optional[List[Any]] = None
    try:
        content = response.choices[0].message.content or ""
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            data = extract_json_array(content)
        raw_looks = data.get("looks") if isinstance(data, dict) else data
        if not isinstance(raw_looks, list):
            raise ValueError("'looks' is not a list")
    except (json.JSONDecodeError, ValueError, IndexError) as exc:
        logger.error("Could not parse curation reply, using fallback looks: %s", exc)
        raw_looks = None

    looks = finalize_compositions(raw_looks, items, count)
    comments = await asyncio.gather(
        *(write_stylist_comment(look.name, look.occasion, profile.first_name) for look in looks)
    )
    for look, comment in zip(looks, comments):
        look.comment = comment

    logger.info("Curated %d look(s) for user_id=%s", len(looks), profile.user_id)
    return looks


async def write_stylist_comment(look_name: str, occasion: str, first_name: Optional[str] = None) -> str:
    """
    One or two hype sentences about a look.
    Never raises; returns a stock comment on any error.
    """
    addressee = f" (their name is {first_name})" if first_name else ""
    prompt = (
        "You are Nima, a fun and hyping fashion stylist. Generate a short, energetic comment "
        f'(1-2 sentences max) about this outfit called "{look_name}" for {occasion}. '
        f"Address the user{addressee} directly. Keep it under 100 characters if possible. No emojis."
    )
    try:
        response = await _client.chat.completions.create(
            model=settings.OPENAI_MINI_MODEL,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=80,
            temperature=0.9,
        )
        text = (response.choices[0].message.content or "").strip()
        return text[:150] or _FALLBACK_COMMENT
    except (OpenAIError, IndexError) as exc:
        logger.warning("write_stylist_comment error: %s", exc)
        return _FALLBACK_COMMENT


async def write_try_on_prompt(descriptions: Sequence[str], single_item: bool = False) -> str:
    """Have the text model write the photo direction for a try-on render."""
    if single_item:
        subject = f"this single item:\n- {descriptions[0]}"
        extra = (
            "1. Shows the person wearing ONLY this single item naturally\n"
            "2. For tops show from the waist up, for bottoms the full body, "
            "for shoes focus on the lower body\n"
        )
    else:
        listing = "\n".join(f"{i}. {d}" for i, d in enumerate(descriptions, start=1))
        subject = f"these clothing items:\n{listing}"
        extra = "1. Shows all the clothing items together as a complete outfit\n"

    prompt = (
        "You are a fashion photography director. Write a detailed image generation prompt "
        "for a virtual try-on photo.\n\n"
        f"The person in the reference photo should be shown wearing {subject}\n\n"
        "Create a prompt that:\n"
        f"{extra}"
        "3. Maintains the person's identity, face, and body from the reference\n"
        "4. Results in a high-quality, professional fashion photography style image\n"
        "5. Specifies natural lighting and a clean background\n\n"
        "Keep it under 500 characters. No markdown."
    )
    try:
        response = await _client.chat.completions.create(
            model=settings.OPENAI_MODEL,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=300,
            temperature=0.7,
        )
        return (response.choices[0].message.content or "").strip()
    except (OpenAIError, IndexError) as exc:
        logger.error("write_try_on_prompt error: %s", exc)
        raise AIServiceError(f"Prompt writing failed: {exc}") from exc


async def render_try_on(
    person_image: bytes,
    garment_images: Sequence[bytes],
    prompt: str,
) -> Optional[bytes]:
    """
    Render the person from `person_image` wearing the garments.

    Returns PNG bytes, or None when the model answered without an image.
    Raises AIServiceError if the API call fails.
    """
    uploads = [_as_upload("person", person_image)]
    uploads += [_as_upload(f"garment_{i}", data) for i, data in enumerate(garment_images[:5], start=1)]

    try:
        response = await _client.images.edit(
            model=settings.OPENAI_IMAGE_MODEL,
            image=uploads,
            prompt=prompt,
        )
    except OpenAIError as exc:
        logger.error("render_try_on error: %s", exc)
        raise AIServiceError(f"Image generation failed: {exc}") from exc

    if not response.data or not response.data[0].b64_json:
        return None
    return base64.b64decode(response.data[0].b64_json)
