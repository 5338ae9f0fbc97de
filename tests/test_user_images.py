"""Primary reference photo handling."""

import pytest
from sqlmodel import select

from conftest import add_photo, make_user
from nima.core.exceptions import ResourceNotFoundError
from nima.models import UserImage
from nima.services.user_images import get_reference_image, has_any_image, set_primary_image


def _primaries(session, user_id):
    session.expire_all()
    return session.exec(
        select(UserImage).where(UserImage.user_id == user_id, UserImage.is_primary == True)  # noqa: E712
    ).all()


def test_setting_primary_leaves_exactly_one(session, user):
    first = add_photo(session, user, primary=True)
    second = add_photo(session, user, primary=False)

    set_primary_image(session, user, second.id)

    primaries = _primaries(session, user.id)
    assert [image.id for image in primaries] == [second.id]
    assert first.id != second.id


def test_duplicate_primaries_are_cleaned_up(session, user):
    add_photo(session, user, primary=True)
    add_photo(session, user, primary=True)
    third = add_photo(session, user, primary=False)

    set_primary_image(session, user, third.id)
    assert [image.id for image in _primaries(session, user.id)] == [third.id]


def test_cannot_pick_someone_elses_photo(session, user):
    stranger = make_user(session, subject="stranger")
    theirs = add_photo(session, stranger)
    with pytest.raises(ResourceNotFoundError):
        set_primary_image(session, user, theirs.id)


def test_reference_image_falls_back_to_oldest_photo(session, user):
    assert has_any_image(session, user.id) is False
    oldest = add_photo(session, user, primary=False)
    add_photo(session, user, primary=False)

    assert has_any_image(session, user.id) is True
    assert get_reference_image(session, user.id).id == oldest.id
