"""Onboarding and generate-more: preconditions, charging, fan-out and status."""

import asyncio

import pytest
from sqlmodel import select

from conftest import add_items, add_photo, add_push_token, make_user
from nima.core.exceptions import AIServiceError, InsufficientCreditsError, PreconditionFailedError
from nima.models import GenerationStatus, Look, LookImage, RunStatus, StepStatus, User, WorkflowRun, WorkflowStep
from nima.services import ai_service, look_generation, notifications
from nima.workflows.engine import WorkflowContext, workflow
from nima.workflows.scheduler import scheduler


def _run(fn, *args):
    async def scenario():
        result = fn(*args)
        await scheduler.drain()
        return result

    return asyncio.run(scenario())


def _looks(session, user_id):
    session.expire_all()
    return list(session.exec(select(Look).where(Look.creator_user_id == user_id).order_by(Look.id)).all())


def _onboard(session, user):
    return _run(look_generation.start_onboarding, session, user)


def test_should_start_without_photo(session, user):
    view = look_generation.should_start_onboarding(session, user)
    assert view.should_start is False
    assert view.reason == "No photos uploaded"


def test_should_start_with_photo_and_no_looks(session, user):
    add_photo(session, user)
    assert look_generation.should_start_onboarding(session, user).should_start is True


@pytest.mark.parametrize(
    "statuses, reason",
    [
        (["processing", "pending"], "Workflow in progress"),
        (["completed", "failed"], "Looks already generated"),
        (["pending"], "Looks pending"),
    ],
)
def test_should_start_reasons(session, user, statuses, reason):
    add_photo(session, user)
    for status in statuses:
        session.add(Look(creator_user_id=user.id, item_ids=[1], generation_status=status))
    session.commit()

    view = look_generation.should_start_onboarding(session, user)
    assert view.should_start is False
    assert view.reason == reason


def test_onboarding_requires_a_photo(session, user):
    with pytest.raises(PreconditionFailedError, match="upload at least one photo"):
        look_generation.start_onboarding(session, user)


def test_onboarding_fans_out_and_isolates_failures(session, user, catalog, fake_ai, pushes):
    add_photo(session, user)
    add_push_token(session, user)

    run_id = _onboard(session, user)

    looks = _looks(session, user.id)
    assert len(looks) == 3
    statuses = [look.generation_status for look in looks]
    assert statuses.count(GenerationStatus.COMPLETED.value) == 2
    assert statuses.count(GenerationStatus.FAILED.value) == 1

    failed = next(look for look in looks if look.generation_status == GenerationStatus.FAILED.value)
    assert "render boom" in failed.error_message
    assert all(look.workflow_run_id == run_id for look in looks)
    assert all(look.target_gender == "female" for look in looks)
    assert all(look.nima_comment for look in looks)

    oxford = next(item for item in catalog if item.name == "Oxford Shirt")
    assert all(oxford.id not in look.item_ids for look in looks)

    images = session.exec(select(LookImage)).all()
    assert len(images) == 2

    run = session.get(WorkflowRun, run_id)
    assert run.status == RunStatus.COMPLETED.value
    assert run.result["success_count"] == 2
    assert run.result["failed_count"] == 1

    keys = {s.step_key for s in session.exec(select(WorkflowStep).where(WorkflowStep.run_id == run_id))}
    assert {"profile", "curate", "persist:0", "persist:1", "persist:2", "notify"} <= keys
    assert f"fail:{failed.id}" in keys

    assert len(pushes) == 1
    assert pushes[0]["data"] == {"type": "onboarding_looks_ready", "successCount": 2}

    # Onboarding is free.
    assert session.get(User, user.id).free_credits_remaining == 5


def test_onboarding_without_push_tokens_still_completes(session, user, catalog, fake_ai, pushes):
    add_photo(session, user)
    run_id = _onboard(session, user)
    session.expire_all()
    assert session.get(WorkflowRun, run_id).status == RunStatus.COMPLETED.value
    assert pushes == []


def test_onboarding_cannot_start_twice(session, user, catalog, fake_ai, pushes):
    add_photo(session, user)
    _onboard(session, user)
    with pytest.raises(PreconditionFailedError, match="already exist"):
        look_generation.start_onboarding(session, user)


def test_status_counts_after_onboarding(session, user, catalog, fake_ai, pushes):
    add_photo(session, user)
    _onboard(session, user)
    session.expire_all()

    view = look_generation.get_generation_status(session, user)
    assert view.has_looks is True
    assert view.total_count == 3
    assert view.completed_count == 2
    assert view.failed_count == 1
    assert view.pending_count == 0
    assert view.is_complete is True


def test_status_is_not_complete_while_looks_are_in_flight(session, user):
    session.add(Look(creator_user_id=user.id, item_ids=[1], generation_status="completed"))
    session.add(Look(creator_user_id=user.id, item_ids=[2], generation_status="processing"))
    session.commit()
    view = look_generation.get_generation_status(session, user)
    assert view.processing_count == 1
    assert view.is_complete is False


def test_status_without_looks(session, user):
    view = look_generation.get_generation_status(session, user)
    assert view.has_looks is False
    assert view.is_complete is False


def test_generate_more_excludes_completed_items_and_checks_inventory(session, user, catalog, fake_ai, pushes):
    add_photo(session, user)
    _onboard(session, user)

    # Two completed looks hold 7 of the 9 wearable items.
    with pytest.raises(PreconditionFailedError, match="Only 2 items available"):
        _run(look_generation.start_generate_more, session, user)
    session.expire_all()
    assert session.get(User, user.id).free_credits_remaining == 5


def test_generate_more_when_everything_was_seen(session, user, fake_ai):
    add_photo(session, user)
    items = add_items(session, [("Tee", "top", "female", 10), ("Jeans", "bottom", "female", 20)])
    session.add(Look(creator_user_id=user.id, item_ids=[i.id for i in items], generation_status="completed"))
    session.commit()

    with pytest.raises(PreconditionFailedError, match="seen all our current styles"):
        _run(look_generation.start_generate_more, session, user)


def test_generate_more_charges_three_and_excludes_seen_items(session, user, fake_ai, pushes):
    add_photo(session, user)
    add_push_token(session, user)
    seen = add_items(session, [("Old Tee", "top", "female", 10)])
    session.add(Look(creator_user_id=user.id, item_ids=[seen[0].id], generation_status="completed"))
    session.commit()
    add_items(session, [
        ("Tee", "top", "female", 10),
        ("Jeans", "bottom", "female", 20),
        ("Sneakers", "shoes", "unisex", 30),
        ("Cap", "accessory", "unisex", 5),
    ])

    run_id = _run(look_generation.start_generate_more, session, user)

    session.expire_all()
    assert session.get(User, user.id).free_credits_remaining == 2
    assert fake_ai["curate"][0] and seen[0].id not in fake_ai["curate"][0]

    run = session.get(WorkflowRun, run_id)
    assert run.status == RunStatus.COMPLETED.value
    assert run.args["exclude_item_ids"] == [seen[0].id]
    assert run.result["success_count"] == len(run.result["look_ids"]) > 0

    # Generate-more does not send the onboarding push, only the low-credit one.
    assert [p["data"]["type"] for p in pushes] == ["low_credits"]


def test_generate_more_refuses_while_looks_are_in_flight(session, user, catalog):
    add_photo(session, user)
    session.add(Look(creator_user_id=user.id, item_ids=[catalog[0].id], generation_status="pending"))
    session.commit()

    with pytest.raises(PreconditionFailedError, match="already being generated"):
        look_generation.start_generate_more(session, user)
    session.expire_all()
    assert session.get(User, user.id).free_credits_remaining == 5


def test_generate_more_with_too_few_credits_creates_nothing(session, catalog, fake_ai):
    user = make_user(session, subject="broke", free_credits_remaining=2, purchased_credits=0)
    add_photo(session, user)

    with pytest.raises(InsufficientCreditsError):
        _run(look_generation.start_generate_more, session, user)

    session.expire_all()
    assert _looks(session, user.id) == []
    assert session.exec(select(WorkflowRun)).all() == []
    assert session.get(User, user.id).free_credits_remaining == 2


def test_curation_failure_fails_the_run_without_looks_or_refund(session, user, catalog, fake_ai, pushes, monkeypatch):
    add_photo(session, user)
    attempts = []

    async def select_look_compositions(profile, items, count):
        attempts.append(1)
        raise AIServiceError("stylist unavailable")

    monkeypatch.setattr(ai_service, "select_look_compositions", select_look_compositions)

    run_id = _run(look_generation.start_generate_more, session, user)

    session.expire_all()
    run = session.get(WorkflowRun, run_id)
    assert run.status == RunStatus.FAILED.value
    assert "stylist unavailable" in run.error
    assert len(attempts) == 3
    assert _looks(session, user.id) == []
    assert session.get(User, user.id).free_credits_remaining == 2


def test_notification_failure_does_not_fail_onboarding(session, user, catalog, fake_ai, monkeypatch):
    add_photo(session, user)

    async def send_onboarding_looks_ready(user_id, success_count):
        raise RuntimeError("expo is down")

    monkeypatch.setattr(notifications, "send_onboarding_looks_ready", send_onboarding_looks_ready)

    run_id = _onboard(session, user)

    session.expire_all()
    run = session.get(WorkflowRun, run_id)
    assert run.status == RunStatus.COMPLETED.value
    assert run.result["success_count"] == 2

    statuses = sorted(look.generation_status for look in _looks(session, user.id))
    assert statuses == ["completed", "completed", "failed"]

    notify = session.exec(
        select(WorkflowStep).where(WorkflowStep.run_id == run_id, WorkflowStep.step_key == "notify")
    ).one()
    assert notify.status == StepStatus.FAILED.value
    assert "expo is down" in notify.error


def test_resumed_run_reuses_looks_persisted_before_a_crash(session, user, catalog, fake_ai, pushes, monkeypatch):
    add_photo(session, user)
    save_checkpoint = WorkflowContext._save_checkpoint
    crashed = []

    def dying_save_checkpoint(self, step_key, *args, **kwargs):
        # The look row is committed; the process dies before its checkpoint lands.
        if step_key == "persist:0" and not crashed:
            crashed.append(step_key)
            raise RuntimeError("process killed")
        return save_checkpoint(self, step_key, *args, **kwargs)

    monkeypatch.setattr(WorkflowContext, "_save_checkpoint", dying_save_checkpoint)

    run_id = _onboard(session, user)
    session.expire_all()
    assert crashed == ["persist:0"]
    assert len(_looks(session, user.id)) == 1

    run = session.get(WorkflowRun, run_id)
    run.status = RunStatus.RUNNING.value
    session.add(run)
    session.commit()

    async def restart():
        resumed = workflow.resume_incomplete()
        await scheduler.drain()
        return resumed

    assert asyncio.run(restart()) == [run_id]

    looks = _looks(session, user.id)
    assert len(looks) == 3
    assert sorted(look.batch_index for look in looks) == [0, 1, 2]
    assert all(look.generation_status != GenerationStatus.PENDING.value for look in looks)
    assert look_generation.get_generation_status(session, user).is_complete is True
