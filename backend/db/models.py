import uuid
from datetime import datetime
from sqlalchemy import (
    Column, Integer, Float, Text, Boolean, ForeignKey, Index,
    DateTime, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship
from db.database import Base


def _new_id() -> str:
    return uuid.uuid4().hex


class User(Base):
    __tablename__ = "users"

    id = Column(Text, primary_key=True)  # opaque id issued by the identity provider
    display_name = Column(Text, nullable=False)
    friend_code = Column(Text, nullable=False)  # 4 digits, unique among active users
    profile_image_url = Column(Text)
    timezone = Column(Text)
    stat_preferences = Column(Text)  # JSON array of stat ids
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    workouts = relationship("Workout", back_populates="owner", cascade="all, delete-orphan")
    calorie_entries = relationship("CalorieEntry", back_populates="owner", cascade="all, delete-orphan")

    __table_args__ = (
        Index(
            "uq_users_active_friend_code",
            "friend_code",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("idx_users_name_code", "display_name", "friend_code"),
    )


class UserFriend(Base):
    """One directed edge of the friend set; the service keeps both directions."""

    __tablename__ = "user_friends"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Text, ForeignKey("users.id"), nullable=False)
    friend_id = Column(Text, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "friend_id", name="uq_user_friends_pair"),
        Index("idx_user_friends_friend", "friend_id"),
    )


class FriendRequest(Base):
    __tablename__ = "friend_requests"

    id = Column(Text, primary_key=True, default=_new_id)
    sender_id = Column(Text, ForeignKey("users.id"), nullable=False)
    recipient_id = Column(Text, ForeignKey("users.id"), nullable=False)
    status = Column(Text, nullable=False, default="pending")  # pending | accepted | rejected
    created_at = Column(DateTime, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_friend_requests_pending_pair",
            "sender_id",
            "recipient_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
        Index("idx_friend_requests_recipient_status", "recipient_id", "status"),
        Index("idx_friend_requests_sender_status", "sender_id", "status"),
    )


class Workout(Base):
    __tablename__ = "workouts"

    id = Column(Text, primary_key=True, default=_new_id)
    owner_id = Column(Text, ForeignKey("users.id"), nullable=False)
    date = Column(DateTime, nullable=False, default=datetime.utcnow)  # UTC, bucketed by local day
    muscle_group = Column(Text)
    completed = Column(Boolean, nullable=False, default=False)
    stats_json = Column(Text)  # JSON object: stat id -> number
    created_at = Column(DateTime, default=datetime.utcnow)

    owner = relationship("User", back_populates="workouts")

    __table_args__ = (
        Index("idx_workouts_owner_date", "owner_id", "date"),
    )


class CalorieEntry(Base):
    __tablename__ = "calorie_entries"

    id = Column(Text, primary_key=True, default=_new_id)
    owner_id = Column(Text, ForeignKey("users.id"), nullable=False)
    date = Column(DateTime, nullable=False, default=datetime.utcnow)
    amount = Column(Integer, nullable=False)
    description = Column(Text)
    protein_g = Column(Float)
    carbs_g = Column(Float)
    fat_g = Column(Float)
    created_at = Column(DateTime, default=datetime.utcnow)

    owner = relationship("User", back_populates="calorie_entries")

    __table_args__ = (
        Index("idx_calorie_entries_owner_date", "owner_id", "date"),
    )
