"""
nima/workflows/item_try_on.py
─────────────────────────────
Single-item try-on rendering, registered as a durable workflow so a render
charged before a restart is picked up again by resume_incomplete().

  generate → notify
      └─(exhausted)→ fail
"""

import logging
from typing import Any, Dict, Optional

from nima.database import session_scope
from nima.models import GenerationStatus, Item, ItemTryOn
from nima.services import generation, notifications
from nima.workflows.engine import StepFailedError, WorkflowContext, workflow

logger = logging.getLogger(__name__)

ITEM_TRY_ON_WORKFLOW = "item_try_on"


def _ready_details(try_on_id: int) -> Optional[Dict[str, Any]]:
    with session_scope() as session:
        try_on = session.get(ItemTryOn, try_on_id)
        if try_on is None:
            return None
        item = session.get(Item, try_on.item_id)
        return {"user_id": try_on.user_id, "item_name": item.name if item else "your item"}


async def notify_try_on_ready(try_on_id: int) -> int:
    details = _ready_details(try_on_id)
    if details is None:
        return 0
    return await notifications.send_try_on_ready(details["user_id"], try_on_id, details["item_name"])


@workflow.define(ITEM_TRY_ON_WORKFLOW)
async def item_try_on_workflow(ctx: WorkflowContext, try_on_id: int, user_id: int) -> Dict[str, Any]:
    try:
        storage_id = await ctx.run_step("generate", generation.generate_item_try_on_image, try_on_id)
    except StepFailedError as exc:
        logger.error("[WORKFLOW:ITEM_TRYON] Try-on %s failed: %s", try_on_id, exc.message)
        await ctx.run_step("fail", generation.mark_try_on_failed, try_on_id, exc.message, retry=False)
        return {"try_on_id": try_on_id, "status": GenerationStatus.FAILED.value}

    try:
        await ctx.run_step("notify", notify_try_on_ready, try_on_id, retry=False)
    except StepFailedError as exc:
        logger.error("[WORKFLOW:ITEM_TRYON] Ready push for try-on %s failed: %s", try_on_id, exc.message)

    return {"try_on_id": try_on_id, "status": GenerationStatus.COMPLETED.value, "storage_id": storage_id}
