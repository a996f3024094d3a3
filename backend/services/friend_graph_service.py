from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from db.models import FriendRequest, User, UserFriend
from services.errors import (
    AlreadyFriends,
    AlreadyResolved,
    DuplicateRequest,
    NotFound,
    SelfRequest,
    store_call,
)
from utils.batching import chunked, unique_in_order
from utils.datetime_utils import to_db_utc, utcnow

logger = logging.getLogger(__name__)

REQUEST_STATUSES = ("pending", "accepted", "rejected")


class FriendGraphManager:
    """Symmetric friend sets plus the friend-request log.

    Requests are append-mostly records: a resolved request is never reopened,
    and re-requesting after a rejection always creates a new row. Accepting and
    removing touch both directions of the friendship inside one transaction.
    """

    def __init__(
        self,
        db: Session,
        *,
        batch_size: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.batch_size = int(batch_size or settings.FRIEND_QUERY_BATCH_SIZE)
        self._clock = clock

    def _now(self) -> datetime:
        return to_db_utc(self._clock())

    # --- reads ---

    def _user_exists(self, user_id: str) -> bool:
        return self.db.query(User.id).filter(User.id == user_id).first() is not None

    def _has_edge(self, user_id: str, friend_id: str) -> bool:
        row = (
            self.db.query(UserFriend.id)
            .filter(UserFriend.user_id == user_id, UserFriend.friend_id == friend_id)
            .first()
        )
        return row is not None

    def friend_ids(self, user_id: str) -> list[str]:
        with store_call(self.db, "friend_ids"):
            rows = (
                self.db.query(UserFriend.friend_id)
                .filter(UserFriend.user_id == user_id)
                .order_by(UserFriend.id.asc())
                .all()
            )
        return unique_in_order(str(row.friend_id) for row in rows)

    def are_friends(self, user_id: str, other_id: str) -> bool:
        with store_call(self.db, "are_friends"):
            return self._has_edge(user_id, other_id)

    def list_friends(self, user_id: str) -> list[User]:
        """Resolve the friend set to User rows; ids of missing users are dropped."""
        ids = self.friend_ids(user_id)
        if not ids:
            return []
        found: dict[str, User] = {}
        with store_call(self.db, "list_friends"):
            for batch in chunked(ids, self.batch_size):
                for user in self.db.query(User).filter(User.id.in_(batch)).all():
                    found[user.id] = user
        friends = [found[friend_id] for friend_id in ids if friend_id in found]
        if len(friends) != len(ids):
            logger.debug(
                "Dropped %d dangling friend ids for user %s",
                len(ids) - len(friends),
                user_id,
            )
        return friends

    def get_request(self, request_id: str) -> FriendRequest:
        with store_call(self.db, "get_request"):
            request = self.db.query(FriendRequest).filter(FriendRequest.id == request_id).first()
        if request is None:
            raise NotFound(f"Friend request {request_id} not found")
        return request

    def list_pending_incoming(self, user_id: str) -> list[FriendRequest]:
        with store_call(self.db, "list_pending_incoming"):
            return (
                self.db.query(FriendRequest)
                .filter(FriendRequest.recipient_id == user_id, FriendRequest.status == "pending")
                .order_by(FriendRequest.created_at.asc(), FriendRequest.id.asc())
                .all()
            )

    def list_pending_outgoing(self, user_id: str) -> list[FriendRequest]:
        with store_call(self.db, "list_pending_outgoing"):
            return (
                self.db.query(FriendRequest)
                .filter(FriendRequest.sender_id == user_id, FriendRequest.status == "pending")
                .order_by(FriendRequest.created_at.asc(), FriendRequest.id.asc())
                .all()
            )

    # --- request lifecycle ---

    def send_friend_request(self, from_id: str, to_id: str) -> str:
        if from_id == to_id:
            raise SelfRequest("You cannot send a friend request to yourself")

        with store_call(self.db, "send_friend_request"):
            for user_id in (from_id, to_id):
                if not self._user_exists(user_id):
                    raise NotFound(f"User {user_id} not found")
            if self._has_edge(from_id, to_id):
                raise AlreadyFriends(f"{from_id} and {to_id} are already friends")
            pending = (
                self.db.query(FriendRequest.id)
                .filter(
                    FriendRequest.sender_id == from_id,
                    FriendRequest.recipient_id == to_id,
                    FriendRequest.status == "pending",
                )
                .first()
            )
            if pending is not None:
                raise DuplicateRequest("Friend request already sent")

            request = FriendRequest(
                sender_id=from_id,
                recipient_id=to_id,
                status="pending",
                created_at=self._now(),
            )
            self.db.add(request)
            try:
                self.db.commit()
            except IntegrityError as exc:
                # A concurrent sender won the pending-pair unique index.
                self.db.rollback()
                raise DuplicateRequest("Friend request already sent") from exc

        logger.info("Friend request %s sent %s -> %s", request.id, from_id, to_id)
        return str(request.id)

    def _resolve(self, request_id: str, status: str) -> FriendRequest:
        request = self.db.query(FriendRequest).filter(FriendRequest.id == request_id).first()
        if request is None:
            raise NotFound(f"Friend request {request_id} not found")
        if request.status != "pending":
            raise AlreadyResolved(f"Friend request {request_id} is already {request.status}")
        updated = (
            self.db.query(FriendRequest)
            .filter(FriendRequest.id == request_id, FriendRequest.status == "pending")
            .update({"status": status, "resolved_at": self._now()}, synchronize_session=False)
        )
        if updated != 1:
            self.db.rollback()
            raise AlreadyResolved(f"Friend request {request_id} was resolved concurrently")
        return request

    def _add_edge(self, user_id: str, friend_id: str) -> bool:
        if self._has_edge(user_id, friend_id):
            return False
        self.db.add(UserFriend(user_id=user_id, friend_id=friend_id, created_at=self._now()))
        return True

    def accept_friend_request(self, request_id: str) -> FriendRequest:
        with store_call(self.db, "accept_friend_request"):
            request = self._resolve(request_id, "accepted")
            sender_id, recipient_id = str(request.sender_id), str(request.recipient_id)
            self._add_edge(sender_id, recipient_id)
            self._add_edge(recipient_id, sender_id)
            # A crossing request in the other direction is settled by this one.
            reverse = (
                self.db.query(FriendRequest)
                .filter(
                    FriendRequest.sender_id == recipient_id,
                    FriendRequest.recipient_id == sender_id,
                    FriendRequest.status == "pending",
                )
                .update({"status": "accepted", "resolved_at": self._now()}, synchronize_session=False)
            )
            self.db.commit()
            self.db.refresh(request)
        logger.info("Friend request %s accepted; %s <-> %s", request_id, sender_id, recipient_id)
        if reverse:
            logger.info("Crossing request %s -> %s accepted with it", recipient_id, sender_id)
        return request

    def reject_friend_request(self, request_id: str) -> FriendRequest:
        with store_call(self.db, "reject_friend_request"):
            request = self._resolve(request_id, "rejected")
            self.db.commit()
            self.db.refresh(request)
        logger.info("Friend request %s rejected", request_id)
        return request

    # --- graph maintenance ---

    def remove_friend(self, user_id: str, friend_id: str) -> None:
        with store_call(self.db, "remove_friend"):
            removed = (
                self.db.query(UserFriend)
                .filter(
                    or_(
                        and_(UserFriend.user_id == user_id, UserFriend.friend_id == friend_id),
                        and_(UserFriend.user_id == friend_id, UserFriend.friend_id == user_id),
                    )
                )
                .delete(synchronize_session=False)
            )
            if not removed:
                self.db.rollback()
                raise NotFound(f"{friend_id} is not a friend of {user_id}")
            self.db.commit()
        logger.info("Friendship removed %s <-> %s", user_id, friend_id)

    def reconcile_friendships(self, user_id: str | None = None) -> int:
        """Add the missing reverse edge for every one-sided friendship.

        Friendship is treated as the union of both directions, so a half-written
        pair is completed rather than dropped. Returns the number of edges added.
        """
        with store_call(self.db, "reconcile_friendships"):
            query = self.db.query(UserFriend.user_id, UserFriend.friend_id)
            if user_id is not None:
                query = query.filter(or_(UserFriend.user_id == user_id, UserFriend.friend_id == user_id))
            edges = {(str(row.user_id), str(row.friend_id)) for row in query.all()}
            missing = sorted((b, a) for a, b in edges if (b, a) not in edges)
            for owner_id, other_id in missing:
                self.db.add(UserFriend(user_id=owner_id, friend_id=other_id, created_at=self._now()))
            self.db.commit()
        if missing:
            logger.warning("Repaired %d one-sided friendship edges", len(missing))
        return len(missing)
