from __future__ import annotations

import logging
import random
import re

from sqlalchemy.orm import Session

from config import settings
from db.models import User
from services.errors import CodeSpaceExhausted, InvalidCodeFormat, store_call

logger = logging.getLogger(__name__)

FRIEND_CODE_MIN = 1000
FRIEND_CODE_MAX = 9999
FRIEND_CODE_RE = re.compile(r"[0-9]{4}")


def validate_friend_code(code: str) -> str:
    if not isinstance(code, str) or not FRIEND_CODE_RE.fullmatch(code):
        raise InvalidCodeFormat("Friend code must be exactly 4 digits")
    return code


class FriendDiscovery:
    """Friend-code allocation and ``(display name, code)`` lookup.

    Codes are not reserved between drawing and the first commit; the unique
    index on active codes turns a lost race into an ``IntegrityError`` that the
    profile service answers with a fresh draw.
    """

    def __init__(
        self,
        db: Session,
        *,
        rng: random.Random | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self.db = db
        self._rng = rng or random.SystemRandom()
        self.max_attempts = int(max_attempts or settings.FRIEND_CODE_MAX_ATTEMPTS)

    def _code_in_use(self, code: str) -> bool:
        row = (
            self.db.query(User.id)
            .filter(User.friend_code == code, User.is_active.is_(True))
            .first()
        )
        return row is not None

    def generate_unique_code(self, *, exclude: set[str] | None = None) -> str:
        skipped = exclude or set()
        with store_call(self.db, "generate_unique_code"):
            for attempt in range(1, self.max_attempts + 1):
                code = str(self._rng.randint(FRIEND_CODE_MIN, FRIEND_CODE_MAX))
                if code in skipped or self._code_in_use(code):
                    continue
                if attempt > 1:
                    logger.debug("Friend code found after %d attempts", attempt)
                return code
        logger.warning("Friend code space exhausted after %d attempts", self.max_attempts)
        raise CodeSpaceExhausted(f"No free friend code after {self.max_attempts} attempts")

    def resolve_by_name_and_code(self, name: str, code: str) -> User | None:
        validate_friend_code(code)
        with store_call(self.db, "resolve_by_name_and_code"):
            return (
                self.db.query(User)
                .filter(
                    User.display_name == name,
                    User.friend_code == code,
                    User.is_active.is_(True),
                )
                .order_by(User.created_at.asc(), User.id.asc())
                .first()
            )
