from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from db.models import User
from services.errors import CodeSpaceExhausted, NotFound, store_call
from services.friend_discovery_service import FriendDiscovery
from utils.batching import unique_in_order
from utils.datetime_utils import is_valid_timezone, to_db_utc, utcnow

logger = logging.getLogger(__name__)

STAT_LABELS = {
    "pr": "Personal Record",
    "cardio": "Cardio (minutes)",
    "stretch": "Stretch (minutes)",
    "weight": "Weight (lbs)",
    "reps": "Total Reps",
    "duration": "Duration (minutes)",
}


def normalize_display_name(name: str | None) -> str:
    cleaned = " ".join((name or "").strip().split())
    if len(cleaned) < settings.DISPLAY_NAME_MIN_LENGTH:
        raise ValueError(f"Name must be at least {settings.DISPLAY_NAME_MIN_LENGTH} characters")
    if len(cleaned) > settings.DISPLAY_NAME_MAX_LENGTH:
        raise ValueError(f"Name must be at most {settings.DISPLAY_NAME_MAX_LENGTH} characters")
    if "#" in cleaned:
        # '#' separates name and code in friend search input.
        raise ValueError("Name cannot contain '#'")
    return cleaned


def _validated_timezone(tz_name: str | None) -> str:
    value = (tz_name or "").strip()
    if not value:
        return settings.DEFAULT_TIMEZONE
    if not is_valid_timezone(value):
        raise ValueError(f"Unknown timezone: {value}")
    return value


def parse_stat_preferences(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        values = json.loads(raw)
    except json.JSONDecodeError:
        return []
    if not isinstance(values, list):
        return []
    return [str(v) for v in values if str(v) in STAT_LABELS]


class ProfileService:
    def __init__(
        self,
        db: Session,
        *,
        discovery: FriendDiscovery | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.discovery = discovery or FriendDiscovery(db)
        self._clock = clock

    def get_user(self, user_id: str) -> User:
        with store_call(self.db, "get_user"):
            user = self.db.query(User).filter(User.id == user_id).first()
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user

    def create_profile(
        self,
        user_id: str,
        display_name: str,
        *,
        profile_image_url: str | None = None,
        timezone: str | None = None,
    ) -> User:
        """Create the User for an authenticated identity and allocate its friend code.

        A code taken by a concurrent signup between drawing and commit shows up
        as a unique-index violation; the profile is retried with a fresh code
        within the discovery attempt limit.
        """
        user_id = (user_id or "").strip()
        if not user_id:
            raise ValueError("user id is required")
        name = normalize_display_name(display_name)
        tz_name = _validated_timezone(timezone)

        collided: set[str] = set()
        with store_call(self.db, "create_profile"):
            if self.db.query(User.id).filter(User.id == user_id).first() is not None:
                raise ValueError("Profile already exists")
            for _ in range(self.discovery.max_attempts):
                code = self.discovery.generate_unique_code(exclude=collided)
                now = to_db_utc(self._clock())
                user = User(
                    id=user_id,
                    display_name=name,
                    friend_code=code,
                    profile_image_url=(profile_image_url or "").strip() or settings.DEFAULT_PROFILE_PICTURE_URL,
                    timezone=tz_name,
                    stat_preferences=json.dumps([]),
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(user)
                try:
                    self.db.commit()
                except IntegrityError:
                    self.db.rollback()
                    if self.db.query(User.id).filter(User.id == user_id).first() is not None:
                        raise ValueError("Profile already exists")
                    collided.add(code)
                    logger.info("Friend code %s taken at commit; drawing again", code)
                    continue
                self.db.refresh(user)
                logger.info("Created profile %s with friend code %s", user_id, code)
                return user
        raise CodeSpaceExhausted("Could not allocate a friend code")

    def update_profile(
        self,
        user_id: str,
        *,
        display_name: str | None = None,
        profile_image_url: str | None = None,
        timezone: str | None = None,
    ) -> User:
        user = self.get_user(user_id)
        if display_name is not None:
            user.display_name = normalize_display_name(display_name)
        if profile_image_url is not None:
            user.profile_image_url = profile_image_url.strip() or settings.DEFAULT_PROFILE_PICTURE_URL
        if timezone is not None:
            user.timezone = _validated_timezone(timezone)
        with store_call(self.db, "update_profile"):
            self.db.commit()
            self.db.refresh(user)
        return user

    def set_stat_preferences(self, user_id: str, stat_ids: list[str]) -> list[str]:
        cleaned = unique_in_order(str(s).strip().lower() for s in stat_ids if str(s).strip())
        unknown = [s for s in cleaned if s not in STAT_LABELS]
        if unknown:
            raise ValueError(f"Unknown stats: {', '.join(unknown)}")
        user = self.get_user(user_id)
        user.stat_preferences = json.dumps(cleaned)
        with store_call(self.db, "set_stat_preferences"):
            self.db.commit()
        return cleaned
