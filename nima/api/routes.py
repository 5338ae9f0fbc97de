"""
nima/api/routes.py
──────────────────
Nima API v1 endpoints. Every route except /files identifies the caller by
the X-Auth-Subject header.

Endpoints
─────────
GET  /workflows/onboarding/should-start
    • Whether the first batch of looks should be generated now, and why not.

POST /workflows/onboarding
    • Starts the free onboarding workflow (3 looks + try-on images).

POST /workflows/generate-more
    • Charges 3 credits and starts another batch from items the user has
      not seen in a completed look yet.

GET  /workflows/onboarding/status
    • Look counts by generation status; isComplete once nothing is in flight.

GET  /workflows/runs/{run_id}
    • One workflow run with its step log.

POST /try-ons
    • Starts (or returns the cached / in-flight) single-item try-on.

GET  /try-ons/{try_on_id}          GET /items/{item_id}/try-on
GET  /looks/{look_id}              GET /credits
POST /user-images/{image_id}/primary

GET  /files/{storage_id}
    • Serves a stored image behind a signed, expiring URL.

The start-style endpoints always answer 200 with {success, error?} so the
client can branch on the error string; read endpoints use HTTP errors.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlmodel import Session

from nima.api.deps import get_auth_subject, get_current_user, lookup_user
from nima.core.exceptions import NimaError, ResourceNotFoundError
from nima.database import get_session
from nima.models import User
from nima.schemas import (
    CreditBalanceResponse,
    ItemTryOnResponse,
    LookResponse,
    ShouldStartResponse,
    StartItemTryOnRequest,
    StartItemTryOnResponse,
    StartWorkflowResponse,
    UserImageResponse,
    WorkflowRunResponse,
    WorkflowStatusResponse,
)
from nima.services import credits, look_generation, status as status_views, try_on
from nima.services.ai_service import detect_mime
from nima.services.user_images import set_primary_image
from nima.storage import storage

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Look-generation workflows ────────────────────────────────────────


@router.get(
    "/workflows/onboarding/should-start",
    response_model=ShouldStartResponse,
    response_model_by_alias=True,
    tags=["Workflows"],
    summary="Should the onboarding workflow start?",
)
async def should_start_onboarding_workflow(
    auth_subject: Optional[str] = Depends(get_auth_subject),
    db: Session = Depends(get_session),
) -> ShouldStartResponse:
    try:
        user = lookup_user(db, auth_subject)
    except NimaError as exc:
        return ShouldStartResponse(should_start=False, reason=exc.detail)
    return look_generation.should_start_onboarding(db, user)


@router.post(
    "/workflows/onboarding",
    response_model=StartWorkflowResponse,
    response_model_by_alias=True,
    tags=["Workflows"],
    summary="Start the onboarding workflow",
)
async def start_onboarding_workflow(
    auth_subject: Optional[str] = Depends(get_auth_subject),
    db: Session = Depends(get_session),
) -> StartWorkflowResponse:
    try:
        user = lookup_user(db, auth_subject)
        run_id = look_generation.start_onboarding(db, user)
    except NimaError as exc:
        logger.info("start_onboarding refused: %s", exc.detail)
        return StartWorkflowResponse(success=False, error=exc.detail)
    return StartWorkflowResponse(success=True, workflow_id=run_id)


@router.post(
    "/workflows/generate-more",
    response_model=StartWorkflowResponse,
    response_model_by_alias=True,
    tags=["Workflows"],
    summary="Generate three more looks (3 credits)",
)
async def start_generate_more_looks(
    auth_subject: Optional[str] = Depends(get_auth_subject),
    db: Session = Depends(get_session),
) -> StartWorkflowResponse:
    try:
        user = lookup_user(db, auth_subject)
        run_id = look_generation.start_generate_more(db, user)
    except NimaError as exc:
        logger.info("start_generate_more refused: %s", exc.detail)
        return StartWorkflowResponse(success=False, error=exc.detail)
    return StartWorkflowResponse(success=True, workflow_id=run_id)


@router.get(
    "/workflows/onboarding/status",
    response_model=WorkflowStatusResponse,
    response_model_by_alias=True,
    tags=["Workflows"],
    summary="Look generation progress",
)
async def get_onboarding_workflow_status(
    auth_subject: Optional[str] = Depends(get_auth_subject),
    db: Session = Depends(get_session),
) -> WorkflowStatusResponse:
    try:
        user = lookup_user(db, auth_subject)
    except NimaError:
        return WorkflowStatusResponse()
    return look_generation.get_generation_status(db, user)


@router.get(
    "/workflows/runs/{run_id}",
    response_model=WorkflowRunResponse,
    response_model_by_alias=True,
    tags=["Workflows"],
    summary="Workflow run and its steps",
)
async def get_workflow_run(
    run_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_session),
) -> WorkflowRunResponse:
    return status_views.get_workflow_run(db, user, run_id)


# ── Try-ons ──────────────────────────────────────────────────────────


@router.post(
    "/try-ons",
    response_model=StartItemTryOnResponse,
    response_model_by_alias=True,
    tags=["Try-ons"],
    summary="Try a single item on (1 credit unless cached)",
)
async def start_item_try_on(
    request: StartItemTryOnRequest,
    auth_subject: Optional[str] = Depends(get_auth_subject),
    db: Session = Depends(get_session),
) -> StartItemTryOnResponse:
    try:
        user = lookup_user(db, auth_subject)
        try_on_id = try_on.start_item_try_on(
            db, user, request.item_id, request.selected_size, request.selected_color
        )
    except NimaError as exc:
        logger.info("start_item_try_on refused: item_id=%s error=%s", request.item_id, exc.detail)
        return StartItemTryOnResponse(success=False, error=exc.detail)
    return StartItemTryOnResponse(success=True, try_on_id=try_on_id)


@router.get(
    "/try-ons/{try_on_id}",
    response_model=ItemTryOnResponse,
    response_model_by_alias=True,
    tags=["Try-ons"],
)
async def get_item_try_on(
    try_on_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_session),
) -> ItemTryOnResponse:
    return status_views.get_try_on_view(db, user, try_on_id)


@router.get(
    "/items/{item_id}/try-on",
    response_model=Optional[ItemTryOnResponse],
    response_model_by_alias=True,
    tags=["Try-ons"],
    summary="The caller's latest try-on of an item, or null",
)
async def get_item_try_on_for_item(
    item_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_session),
) -> Optional[ItemTryOnResponse]:
    return status_views.get_item_try_on_for_user(db, user, item_id)


# ── Looks, credits, photos ───────────────────────────────────────────


@router.get(
    "/looks/{look_id}",
    response_model=LookResponse,
    response_model_by_alias=True,
    tags=["Looks"],
)
async def get_look(
    look_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_session),
) -> LookResponse:
    return status_views.get_look_view(db, user, look_id)


@router.get(
    "/credits",
    response_model=CreditBalanceResponse,
    response_model_by_alias=True,
    tags=["Credits"],
    summary="Current credit balance",
)
async def get_credit_balance(user: User = Depends(get_current_user)) -> CreditBalanceResponse:
    return CreditBalanceResponse.model_validate(credits.get_balance(user))


@router.post(
    "/user-images/{image_id}/primary",
    response_model=UserImageResponse,
    response_model_by_alias=True,
    tags=["Photos"],
    summary="Make a photo the one used for try-ons",
)
async def make_primary_image(
    image_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_session),
) -> UserImageResponse:
    return UserImageResponse.model_validate(set_primary_image(db, user, image_id))


@router.get(
    "/files/{storage_id}",
    tags=["Files"],
    summary="Serve a stored image behind a signed URL",
    responses={status.HTTP_200_OK: {"content": {"image/png": {}}}},
)
async def get_file(
    storage_id: str,
    expires: int = Query(...),
    signature: str = Query(..., max_length=128),
) -> Response:
    if not storage.verify(storage_id, expires, signature) or not storage.exists(storage_id):
        raise ResourceNotFoundError("File not found")
    data = storage.read(storage_id)
    return Response(
        content=data,
        media_type=detect_mime(data),
        headers={"Cache-Control": "private, max-age=300"},
    )
