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

from db.database import Base  # noqa: E402
from db.models import User  # noqa: E402
from services.errors import CodeSpaceExhausted, InvalidCodeFormat  # noqa: E402
from services.friend_discovery_service import (  # noqa: E402
    FRIEND_CODE_MAX,
    FRIEND_CODE_MIN,
    FriendDiscovery,
    validate_friend_code,
)
from services.profile_service import ProfileService  # noqa: E402


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


class _ScriptedRng:
    """Returns the scripted codes in order, then repeats the last one."""

    def __init__(self, values):
        self.values = list(values)

    def randint(self, low, high):
        value = self.values.pop(0) if len(self.values) > 1 else self.values[0]
        assert low <= value <= high
        return value


def _add_user(db, user_id, name, code, active=True):
    db.add(User(id=user_id, display_name=name, friend_code=code, timezone="UTC", is_active=active))
    db.commit()


def test_generated_code_is_four_digits():
    db = _new_db()
    code = FriendDiscovery(db, rng=random.Random(7)).generate_unique_code()
    assert len(code) == 4 and code.isdigit()
    assert FRIEND_CODE_MIN <= int(code) <= FRIEND_CODE_MAX


def test_generated_code_skips_codes_held_by_active_users():
    db = _new_db()
    _add_user(db, "u1", "Alex", "1234")
    _add_user(db, "u2", "Sam", "4321")

    code = FriendDiscovery(db, rng=_ScriptedRng([1234, 4321, 5555])).generate_unique_code()

    assert code == "5555"


def test_inactive_users_do_not_hold_codes():
    db = _new_db()
    _add_user(db, "u1", "Alex", "1234", active=False)

    code = FriendDiscovery(db, rng=_ScriptedRng([1234])).generate_unique_code()

    assert code == "1234"


def test_exhausted_attempt_limit_raises():
    db = _new_db()
    _add_user(db, "u1", "Alex", "1234")

    discovery = FriendDiscovery(db, rng=_ScriptedRng([1234]), max_attempts=5)
    with pytest.raises(CodeSpaceExhausted):
        discovery.generate_unique_code()


def test_generated_codes_never_collide_across_signups():
    db = _new_db()
    discovery = FriendDiscovery(db, rng=random.Random(42))
    profiles = ProfileService(db, discovery=discovery)

    for index in range(40):
        profiles.create_profile(f"user-{index}", f"Lifter {index}")

    codes = [row.friend_code for row in db.query(User.friend_code).all()]
    assert len(codes) == 40
    assert len(set(codes)) == 40


def test_resolve_by_name_and_code_is_exact():
    db = _new_db()
    _add_user(db, "u1", "Alex", "1234")
    _add_user(db, "u2", "alex", "1234", active=False)
    discovery = FriendDiscovery(db)

    assert discovery.resolve_by_name_and_code("Alex", "1234").id == "u1"
    assert discovery.resolve_by_name_and_code("alex", "1234") is None
    assert discovery.resolve_by_name_and_code("Alex", "9999") is None


@pytest.mark.parametrize("bad_code", ["123", "12345", "12a4", "", " 1234", "1234\n", "١٢٣٤"])
def test_malformed_codes_are_rejected(bad_code):
    with pytest.raises(InvalidCodeFormat):
        validate_friend_code(bad_code)

    with pytest.raises(InvalidCodeFormat):
        FriendDiscovery(_new_db()).resolve_by_name_and_code("Alex", bad_code)
