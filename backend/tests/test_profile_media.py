from __future__ import annotations

import random
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import settings  # noqa: E402
from db.database import Base  # noqa: E402
from db.models import User  # noqa: E402
from services.errors import NotFound  # noqa: E402
from services.friend_discovery_service import FriendDiscovery  # noqa: E402
from services.media_service import LocalMediaStore, validate_image_payload  # noqa: E402
from services.profile_service import (  # noqa: E402
    ProfileService,
    normalize_display_name,
    parse_stat_preferences,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


class _ScriptedRng:
    def __init__(self, values):
        self.values = list(values)

    def randint(self, low, high):
        return self.values.pop(0)


def test_create_profile_assigns_code_and_defaults():
    db = _new_db()
    user = ProfileService(db, discovery=FriendDiscovery(db, rng=random.Random(3))).create_profile(
        "uid-1", "  Jamie   Lee ", timezone="Europe/Berlin"
    )

    assert user.display_name == "Jamie Lee"
    assert len(user.friend_code) == 4 and user.friend_code.isdigit()
    assert user.timezone == "Europe/Berlin"
    assert user.profile_image_url == settings.DEFAULT_PROFILE_PICTURE_URL
    assert parse_stat_preferences(user.stat_preferences) == []


def test_create_profile_twice_fails():
    db = _new_db()
    service = ProfileService(db)
    service.create_profile("uid-1", "Jamie")
    with pytest.raises(ValueError):
        service.create_profile("uid-1", "Jamie Again")


def test_code_taken_at_commit_is_redrawn():
    db = _new_db()
    db.add(User(id="existing", display_name="Old", friend_code="1111", is_active=True))
    db.commit()

    class _BlindDiscovery(FriendDiscovery):
        # Simulates a concurrent signup: the pre-check misses the taken code.
        def _code_in_use(self, code):
            return False

    discovery = _BlindDiscovery(db, rng=_ScriptedRng([1111, 2222]))
    user = ProfileService(db, discovery=discovery).create_profile("uid-2", "Newbie")

    assert user.friend_code == "2222"


@pytest.mark.parametrize("name", ["", " a ", "x" * 41, "Bad#Name"])
def test_invalid_display_names_are_rejected(name):
    with pytest.raises(ValueError):
        normalize_display_name(name)


def test_update_profile_and_stat_preferences():
    db = _new_db()
    service = ProfileService(db)
    service.create_profile("uid-1", "Jamie")

    updated = service.update_profile("uid-1", display_name="Jamie B", timezone="Asia/Tokyo")
    stats = service.set_stat_preferences("uid-1", ["PR", "cardio", "pr"])

    assert updated.display_name == "Jamie B"
    assert updated.timezone == "Asia/Tokyo"
    assert stats == ["pr", "cardio"]
    with pytest.raises(ValueError):
        service.set_stat_preferences("uid-1", ["bench"])
    with pytest.raises(ValueError):
        service.update_profile("uid-1", timezone="Mars/Olympus")
    with pytest.raises(NotFound):
        service.update_profile("nobody", display_name="Ghost")


def test_validate_image_payload_accepts_png_signature():
    mime, ext = validate_image_payload(PNG_BYTES, content_type="image/png")
    assert mime == "image/png"
    assert ext == ".png"


def test_validate_image_payload_rejects_mismatched_or_unknown_payloads():
    with pytest.raises(ValueError):
        validate_image_payload(b"not-an-image", content_type="image/png")
    with pytest.raises(ValueError):
        validate_image_payload(PNG_BYTES, content_type="image/jpeg")
    with pytest.raises(ValueError):
        validate_image_payload(b"")


def test_local_media_store_writes_file_and_returns_url(tmp_path):
    store = LocalMediaStore(root=tmp_path, base_url="https://cdn.example/media/")

    url = store.upload(PNG_BYTES, "profile-pictures", content_type="image/png")

    assert url.startswith("https://cdn.example/media/profile-pictures/")
    assert url.endswith(".png")
    stored = list((tmp_path / "profile-pictures").iterdir())
    assert len(stored) == 1
    assert stored[0].read_bytes() == PNG_BYTES


def test_local_media_store_rejects_path_like_folders(tmp_path):
    store = LocalMediaStore(root=tmp_path)
    with pytest.raises(ValueError):
        store.upload(PNG_BYTES, "../outside")
