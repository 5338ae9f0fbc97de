"""
nima/services/status.py
───────────────────────
Read models the client polls. Image URLs are resolved on every read and
are absent until an image exists. Callers only ever see their own rows.
"""

from typing import Optional

from sqlmodel import Session, select

from nima.core.exceptions import ResourceNotFoundError
from nima.models import ItemTryOn, Look, LookImage, User
from nima.schemas import ItemTryOnResponse, LookResponse, WorkflowRunResponse, WorkflowStepSummary
from nima.services.try_on import latest_try_on
from nima.storage import storage
from nima.workflows.engine import workflow


def _try_on_view(try_on: ItemTryOn) -> ItemTryOnResponse:
    view = ItemTryOnResponse.model_validate(try_on)
    view.image_url = storage.get_url(try_on.storage_id)
    return view


def get_look_view(session: Session, user: User, look_id: int) -> LookResponse:
    look = session.get(Look, look_id)
    if look is None or look.creator_user_id != user.id:
        raise ResourceNotFoundError("Look not found")

    view = LookResponse.model_validate(look)
    look_image = session.exec(select(LookImage).where(LookImage.look_id == look.id)).first()
    view.image_url = storage.get_url(look_image.storage_id if look_image else None)
    return view


def get_try_on_view(session: Session, user: User, try_on_id: int) -> ItemTryOnResponse:
    try_on = session.get(ItemTryOn, try_on_id)
    if try_on is None or try_on.user_id != user.id:
        raise ResourceNotFoundError("Try-on not found")
    return _try_on_view(try_on)


def get_item_try_on_for_user(session: Session, user: User, item_id: int) -> Optional[ItemTryOnResponse]:
    """Latest try-on of `item_id` by this user, or None if there never was one."""
    try_on = latest_try_on(session, user.id, item_id)
    return _try_on_view(try_on) if try_on else None


def get_workflow_run(session: Session, user: User, run_id: str) -> WorkflowRunResponse:
    run = workflow.get_run(session, run_id)
    if run is None or run.user_id != user.id:
        raise ResourceNotFoundError("Workflow run not found")

    steps = [WorkflowStepSummary.model_validate(step) for step in workflow.get_steps(session, run_id)]
    return WorkflowRunResponse(
        id=run.id,
        name=run.name,
        status=run.status,
        result=run.result,
        error=run.error,
        steps=steps,
        created_at=run.created_at,
        completed_at=run.completed_at,
    )
