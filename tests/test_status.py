"""Read models: look and try-on views, workflow run summaries."""

import asyncio

import pytest

from conftest import add_photo, make_user
from nima.core.exceptions import ResourceNotFoundError
from nima.models import ItemTryOn, Look, LookImage
from nima.services import look_generation, status
from nima.storage import storage
from nima.workflows.scheduler import scheduler


def test_look_view_has_no_url_until_an_image_exists(session, user):
    look = Look(creator_user_id=user.id, item_ids=[1, 2], name="Brunch Ready", total_price=99.5)
    session.add(look)
    session.commit()

    view = status.get_look_view(session, user, look.id)
    assert view.name == "Brunch Ready"
    assert view.generation_status == "pending"
    assert view.image_url is None


def test_look_view_resolves_image_url(session, user):
    look = Look(creator_user_id=user.id, item_ids=[1], generation_status="completed")
    session.add(look)
    session.commit()
    session.add(LookImage(look_id=look.id, user_id=user.id, storage_id=storage.store(b"img")))
    session.commit()

    view = status.get_look_view(session, user, look.id)
    assert view.image_url.startswith(f"{storage.base_url}/api/v1/files/")
    assert "signature=" in view.image_url


def test_views_are_owner_only(session, user):
    stranger = make_user(session, subject="stranger")
    look = Look(creator_user_id=user.id, item_ids=[1])
    record = ItemTryOn(item_id=1, user_id=user.id)
    session.add(look)
    session.add(record)
    session.commit()

    with pytest.raises(ResourceNotFoundError):
        status.get_look_view(session, stranger, look.id)
    with pytest.raises(ResourceNotFoundError):
        status.get_try_on_view(session, stranger, record.id)


def test_item_try_on_for_user(session, user):
    assert status.get_item_try_on_for_user(session, user, 1) is None

    record = ItemTryOn(item_id=1, user_id=user.id, status="completed", storage_id=storage.store(b"img"))
    session.add(record)
    session.commit()

    view = status.get_item_try_on_for_user(session, user, 1)
    assert view.id == record.id
    assert view.image_url is not None


def test_try_on_view_with_missing_blob_has_no_url(session, user):
    record = ItemTryOn(item_id=1, user_id=user.id, status="completed", storage_id="0" * 32)
    session.add(record)
    session.commit()
    assert status.get_try_on_view(session, user, record.id).image_url is None


def test_workflow_run_summary(session, user, catalog, fake_ai, pushes):
    add_photo(session, user)

    async def scenario():
        run_id = look_generation.start_onboarding(session, user)
        await scheduler.drain()
        return run_id

    run_id = asyncio.run(scenario())
    session.expire_all()

    view = status.get_workflow_run(session, user, run_id)
    assert view.name == "onboarding"
    assert view.status == "completed"
    assert [s.step_key for s in view.steps][:2] == ["profile", "curate"]

    stranger = make_user(session, subject="stranger")
    with pytest.raises(ResourceNotFoundError):
        status.get_workflow_run(session, stranger, run_id)
