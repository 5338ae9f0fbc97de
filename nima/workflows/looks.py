"""
nima/workflows/looks.py
───────────────────────
The look-generation pipeline, registered as two durable workflows:

  onboarding      first batch after signup, free, ends with a push
  generate_more   paid batch that skips items the user already has looks for

Pipeline
────────
  profile → curate → persist:<n> (one pending Look each)
          → generate:<look_id> for every look, concurrently, all awaited
          → aggregate → notify (onboarding only)

A failed image step only fails its own look; the siblings carry on.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from sqlmodel import select

from nima.core.config import get_settings
from nima.database import session_scope
from nima.models import Item, Look, User
from nima.schemas import CatalogItem, LookComposition, StyleProfile
from nima.services import ai_service, generation, notifications
from nima.services.catalog import available_items
from nima.workflows.engine import StepFailedError, WorkflowContext, workflow

logger = logging.getLogger(__name__)
settings = get_settings()

ONBOARDING_WORKFLOW = "onboarding"
GENERATE_MORE_WORKFLOW = "generate_more"
LOOK_WORKFLOWS = (ONBOARDING_WORKFLOW, GENERATE_MORE_WORKFLOW)


class LookGenerationMode(str, Enum):
    ONBOARDING = "onboarding"
    GENERATE_MORE = "generate_more"


# ── Step bodies ──────────────────────────────────────────────────────


def load_profile(user_id: int) -> Optional[Dict[str, Any]]:
    with session_scope() as session:
        user = session.get(User, user_id)
        if user is None:
            return None
        profile = StyleProfile(
            user_id=user.id,
            gender=user.gender,
            style_preferences=list(user.style_preferences or []),
            budget_range=user.budget_range,
            first_name=user.first_name,
        )
    return profile.model_dump()


async def curate_looks(profile_data: Dict[str, Any], exclude_item_ids: Sequence[int]) -> List[Dict[str, Any]]:
    profile = StyleProfile.model_validate(profile_data)
    with session_scope() as session:
        items = [
            CatalogItem.model_validate(item)
            for item in available_items(session, profile.catalog_gender, exclude_item_ids)
        ]
    logger.info("Curating from %d item(s) for user_id=%s", len(items), profile.user_id)

    looks = await ai_service.select_look_compositions(profile, items, settings.LOOKS_PER_BATCH)
    return [look.model_dump() for look in looks[: settings.LOOKS_PER_BATCH]]


def persist_look(
    user_id: int,
    composition_data: Dict[str, Any],
    target_gender: str,
    budget_range: Optional[str],
    run_id: str,
    batch_index: int,
) -> int:
    """
    Insert one pending Look and return its id.

    A Look already stored for (run_id, batch_index) is returned instead, so a
    run that died between the insert and its checkpoint does not persist the
    slot twice.
    """
    composition = LookComposition.model_validate(composition_data)
    with session_scope() as session:
        existing = session.exec(
            select(Look).where(Look.workflow_run_id == run_id, Look.batch_index == batch_index)
        ).first()
        if existing is not None:
            logger.info("Reusing look %s for slot %d of run %s", existing.id, batch_index, run_id)
            return existing.id

        items = [session.get(Item, item_id) for item_id in composition.item_ids]
        found = [item for item in items if item is not None]
        look = Look(
            creator_user_id=user_id,
            item_ids=[item.id for item in found],
            total_price=sum(item.price for item in found),
            currency=found[0].currency if found else "KES",
            name=composition.name,
            style_tags=composition.style_tags,
            occasion=composition.occasion,
            nima_comment=composition.comment or None,
            target_gender=target_gender,
            target_budget_range=budget_range,
            workflow_run_id=run_id,
            batch_index=batch_index,
        )
        session.add(look)
        session.commit()
        session.refresh(look)
        logger.info("Created pending look %s (%s) with %d item(s)", look.id, look.name, len(found))
        return look.id


async def _generate_one(ctx: WorkflowContext, look_id: int, user_id: int) -> bool:
    try:
        await ctx.run_step(f"generate:{look_id}", generation.generate_look_image, look_id, user_id)
        return True
    except StepFailedError as exc:
        logger.error("Image generation failed for look %s: %s", look_id, exc.message)
        await ctx.run_step(f"fail:{look_id}", generation.mark_look_failed, look_id, exc.message, retry=False)
        return False


# ── Pipeline ─────────────────────────────────────────────────────────


async def run_look_generation(
    ctx: WorkflowContext,
    user_id: int,
    exclude_item_ids: Sequence[int],
    mode: LookGenerationMode,
) -> Dict[str, Any]:
    tag = mode.value.upper()
    logger.info("[%s] Starting look generation for user_id=%s", tag, user_id)

    profile = await ctx.run_step("profile", load_profile, user_id)
    if profile is None:
        logger.error("[%s] User %s not found, nothing to generate", tag, user_id)
        return {"look_ids": [], "success_count": 0, "failed_count": 0}

    compositions = await ctx.run_step("curate", curate_looks, profile, list(exclude_item_ids))
    logger.info("[%s] Curated %d look(s)", tag, len(compositions))

    target = StyleProfile.model_validate(profile)
    look_ids: List[int] = []
    for index, composition in enumerate(compositions):
        look_id = await ctx.run_step(
            f"persist:{index}",
            persist_look,
            user_id,
            composition,
            target.target_gender,
            target.budget_range,
            ctx.run_id,
            index,
            retry=False,
        )
        look_ids.append(look_id)

    results = await asyncio.gather(*(_generate_one(ctx, look_id, user_id) for look_id in look_ids))
    success_count = sum(1 for ok in results if ok)
    failed_count = len(results) - success_count
    logger.info("[%s] Generated %d look(s), %d failed", tag, success_count, failed_count)

    if mode is LookGenerationMode.ONBOARDING and success_count > 0:
        try:
            await ctx.run_step(
                "notify", notifications.send_onboarding_looks_ready, user_id, success_count, retry=False
            )
        except StepFailedError as exc:
            logger.error("[%s] Failed to send onboarding notification: %s", tag, exc.message)

    return {"look_ids": look_ids, "success_count": success_count, "failed_count": failed_count}


@workflow.define(ONBOARDING_WORKFLOW)
async def onboarding_workflow(ctx: WorkflowContext, user_id: int) -> Dict[str, Any]:
    return await run_look_generation(ctx, user_id, [], LookGenerationMode.ONBOARDING)


@workflow.define(GENERATE_MORE_WORKFLOW)
async def generate_more_workflow(
    ctx: WorkflowContext, user_id: int, exclude_item_ids: Sequence[int] = ()
) -> Dict[str, Any]:
    return await run_look_generation(ctx, user_id, exclude_item_ids, LookGenerationMode.GENERATE_MORE)
