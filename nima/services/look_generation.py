"""
nima/services/look_generation.py
────────────────────────────────
Entry points that decide whether a look-generation workflow may start,
charge for it and start it, plus the aggregate status the client polls.

Every precondition is checked before any credit is spent. The start
functions must run on the event loop (they schedule the workflow driver).
"""

import logging
from collections import Counter
from typing import List, Set

from sqlmodel import Session, select

from nima.core.config import get_settings
from nima.core.exceptions import InsufficientCreditsError, PreconditionFailedError, UserNotFoundError
from nima.models import GenerationStatus, Look, RunStatus, User, WorkflowRun
from nima.schemas import ShouldStartResponse, WorkflowStatusResponse
from nima.services import credits, notifications
from nima.services.catalog import available_items
from nima.services.user_images import has_any_image
from nima.workflows.engine import workflow
from nima.workflows.looks import GENERATE_MORE_WORKFLOW, LOOK_WORKFLOWS, ONBOARDING_WORKFLOW
from nima.workflows.scheduler import scheduler

logger = logging.getLogger(__name__)
settings = get_settings()

IN_FLIGHT = (GenerationStatus.PENDING.value, GenerationStatus.PROCESSING.value)


def _user_looks(session: Session, user_id: int) -> List[Look]:
    return list(session.exec(select(Look).where(Look.creator_user_id == user_id)).all())


def _has_running_look_workflow(session: Session, user_id: int) -> bool:
    statement = select(WorkflowRun.id).where(
        WorkflowRun.user_id == user_id,
        WorkflowRun.status == RunStatus.RUNNING.value,
        WorkflowRun.name.in_(LOOK_WORKFLOWS),  # type: ignore[attr-defined]
    )
    return session.exec(statement).first() is not None


def completed_look_item_ids(looks: List[Look]) -> List[int]:
    """Items of completed looks; failed or pending looks leave their items reusable."""
    seen: Set[int] = set()
    ordered: List[int] = []
    for look in looks:
        if look.generation_status != GenerationStatus.COMPLETED.value:
            continue
        for item_id in look.item_ids:
            if item_id not in seen:
                seen.add(item_id)
                ordered.append(item_id)
    return ordered


def should_start_onboarding(session: Session, user: User) -> ShouldStartResponse:
    looks = _user_looks(session, user.id)
    counts = Counter(look.generation_status for look in looks)
    pending = counts[GenerationStatus.PENDING.value]
    completed = counts[GenerationStatus.COMPLETED.value]

    if looks:
        if counts[GenerationStatus.PROCESSING.value] > 0:
            reason = "Workflow in progress"
        elif completed > 0:
            reason = "Looks already generated"
        else:
            reason = "Looks pending"
        return ShouldStartResponse(
            should_start=False, reason=reason, pending_count=pending, completed_count=completed
        )

    if _has_running_look_workflow(session, user.id):
        return ShouldStartResponse(should_start=False, reason="Workflow in progress")

    if not has_any_image(session, user.id):
        return ShouldStartResponse(should_start=False, reason="No photos uploaded")

    return ShouldStartResponse(should_start=True)


def start_onboarding(session: Session, user: User) -> str:
    """Start the free first batch. Returns the workflow run id."""
    if _user_looks(session, user.id) or _has_running_look_workflow(session, user.id):
        raise PreconditionFailedError("Looks already exist or are being generated")
    if not has_any_image(session, user.id):
        raise PreconditionFailedError("Please upload at least one photo first")

    logger.info("[WORKFLOW:ONBOARDING] Starting workflow for user_id=%s", user.id)
    return workflow.start(session, ONBOARDING_WORKFLOW, user_id=user.id)


def start_generate_more(session: Session, user: User) -> str:
    """Charge for and start another batch of looks. Returns the workflow run id."""
    if not has_any_image(session, user.id):
        raise PreconditionFailedError("Please upload at least one photo first")

    looks = _user_looks(session, user.id)
    if any(look.generation_status in IN_FLIGHT for look in looks) or _has_running_look_workflow(
        session, user.id
    ):
        raise PreconditionFailedError(
            "Looks are already being generated. Please wait for them to complete."
        )

    exclude_item_ids = completed_look_item_ids(looks)
    gender = user.gender if user.gender in ("male", "female") else None
    available = len(available_items(session, gender, exclude_item_ids))
    logger.info(
        "[WORKFLOW:GENERATE_MORE] user_id=%s looks=%d excluded=%d available=%d",
        user.id, len(looks), len(exclude_item_ids), available,
    )

    if available == 0:
        raise PreconditionFailedError(
            "You've seen all our current styles! Check back soon for new arrivals."
        )
    if available < settings.MIN_ITEMS_FOR_WORKFLOW:
        raise PreconditionFailedError(
            "We need more items in your size/style to create new looks. "
            f"Only {available} items available. Check back soon for new arrivals!"
        )

    user_id = user.id
    result = credits.deduct_credits(session, user_id, settings.LOOKS_PER_BATCH)
    if not result.success:
        if result.error == credits.USER_NOT_FOUND:
            raise UserNotFoundError()
        raise InsufficientCreditsError()
    if result.remaining <= settings.LOW_CREDIT_THRESHOLD:
        scheduler.schedule(notifications.send_low_credit, user_id, result.remaining)

    logger.info("[WORKFLOW:GENERATE_MORE] Starting workflow for user_id=%s", user_id)
    return workflow.start(
        session, GENERATE_MORE_WORKFLOW, user_id=user_id, exclude_item_ids=exclude_item_ids
    )


def get_generation_status(session: Session, user: User) -> WorkflowStatusResponse:
    counts = Counter(look.generation_status for look in _user_looks(session, user.id))
    pending = counts[GenerationStatus.PENDING.value]
    processing = counts[GenerationStatus.PROCESSING.value]
    total = sum(counts.values())
    return WorkflowStatusResponse(
        has_looks=total > 0,
        pending_count=pending,
        processing_count=processing,
        completed_count=counts[GenerationStatus.COMPLETED.value],
        failed_count=counts[GenerationStatus.FAILED.value],
        total_count=total,
        is_complete=total > 0 and pending == 0 and processing == 0,
    )
