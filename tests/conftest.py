"""
Shared fixtures. The environment is pointed at a throwaway database and
storage directory before anything from nima is imported; the OpenAI and
Expo capabilities are replaced with in-process fakes.
"""

import os
import tempfile
from pathlib import Path
from typing import Dict, List

_TMP = Path(tempfile.mkdtemp(prefix="nima-tests-"))
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.db'}"
os.environ["STORAGE_DIR"] = str(_TMP / "storage")
os.environ["STEP_RETRY_INITIAL_BACKOFF_SECONDS"] = "0"
os.environ["APP_SECRET_KEY"] = "test-secret"

import pytest  # noqa: E402
from sqlmodel import Session, SQLModel  # noqa: E402

from nima.core.exceptions import AIServiceError  # noqa: E402
from nima.database import create_db_and_tables, engine  # noqa: E402
from nima.models import Item, PushToken, User, UserImage  # noqa: E402
from nima.services import ai_service, notifications  # noqa: E402
from nima.services.curation import build_fallback_looks  # noqa: E402
from nima.storage import storage  # noqa: E402
import nima.workflows.item_try_on  # noqa: E402,F401
import nima.workflows.looks  # noqa: E402,F401

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


@pytest.fixture(autouse=True)
def fresh_db():
    SQLModel.metadata.drop_all(engine)
    create_db_and_tables()
    yield


@pytest.fixture()
def session():
    with Session(engine) as s:
        yield s


def make_user(session: Session, subject: str = "user_1", **fields) -> User:
    user = User(auth_subject=subject, first_name="Amani", gender="female",
                style_preferences=["casual", "chic"], budget_range="mid")
    for key, value in fields.items():
        setattr(user, key, value)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


def add_photo(session: Session, user: User, primary: bool = True) -> UserImage:
    image = UserImage(user_id=user.id, storage_id=storage.store(b"person-photo"), is_primary=primary)
    session.add(image)
    session.commit()
    session.refresh(image)
    return image


def add_push_token(session: Session, user: User) -> PushToken:
    token = PushToken(user_id=user.id, token="ExponentPushToken[test]")
    session.add(token)
    session.commit()
    return token


def add_items(session: Session, specs) -> List[Item]:
    items = []
    for name, category, gender, price in specs:
        item = Item(name=name, brand="Nima Studio", category=category, gender=gender,
                    price=price, colors=["black"], tags=["everyday"])
        session.add(item)
        items.append(item)
    session.commit()
    for item in items:
        session.refresh(item)
    return items


WOMENS_CATALOG = [
    ("Cursed Gown", "dress", "female", 120),
    ("Strappy Heels", "shoes", "female", 80),
    ("Silk Blouse", "top", "female", 45),
    ("Wide Leg Trousers", "bottom", "female", 60),
    ("White Sneakers", "shoes", "unisex", 70),
    ("Linen Shirt", "top", "unisex", 40),
    ("Pleated Skirt", "bottom", "female", 55),
    ("Loafers", "shoes", "unisex", 90),
    ("Leather Belt", "accessory", "unisex", 25),
    ("Oxford Shirt", "top", "male", 50),
]


@pytest.fixture()
def user(session) -> User:
    return make_user(session)


@pytest.fixture()
def catalog(session) -> List[Item]:
    return add_items(session, WOMENS_CATALOG)


@pytest.fixture()
def fake_ai(monkeypatch) -> Dict[str, list]:
    """Deterministic stylist: rule-based looks, renders fail for 'Cursed' items."""
    calls: Dict[str, list] = {"curate": [], "render": []}

    async def select_look_compositions(profile, items, count):
        calls["curate"].append([item.id for item in items])
        looks = build_fallback_looks(items, limit=count)
        for look in looks:
            look.comment = "You will turn heads in this!"
        return looks

    async def write_try_on_prompt(descriptions, single_item=False):
        return "Studio shot, soft natural light."

    async def render_try_on(person_image, garment_images, prompt):
        calls["render"].append(prompt)
        if "Cursed" in prompt:
            raise AIServiceError("render boom")
        return PNG_BYTES

    monkeypatch.setattr(ai_service, "select_look_compositions", select_look_compositions)
    monkeypatch.setattr(ai_service, "write_try_on_prompt", write_try_on_prompt)
    monkeypatch.setattr(ai_service, "render_try_on", render_try_on)
    return calls


@pytest.fixture()
def pushes(monkeypatch) -> List[dict]:
    sent: List[dict] = []

    async def send_push(tokens, title, body, data=None, channel_id="default"):
        if not tokens:
            return 0
        sent.append({"tokens": tokens, "title": title, "body": body, "data": data or {}})
        return len(tokens)

    monkeypatch.setattr(notifications, "send_push", send_push)
    return sent
