from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth.utils import get_current_user, get_current_user_id
from db.database import get_db
from db.models import User
from services.media_service import PROFILE_PICTURE_FOLDER, LocalMediaStore, MediaStore
from services.profile_service import STAT_LABELS, ProfileService, parse_stat_preferences

router = APIRouter(prefix="/users", tags=["users"])


def get_media_store() -> MediaStore:
    return LocalMediaStore()


# --- Pydantic Schemas ---

class ProfileCreate(BaseModel):
    display_name: str
    profile_image_url: Optional[str] = None
    timezone: Optional[str] = None


class ProfileUpdate(BaseModel):
    display_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    timezone: Optional[str] = None


class StatPreferencesUpdate(BaseModel):
    stats: list[str]


def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "display_name": user.display_name,
        "friend_code": user.friend_code,
        "search_tag": f"{user.display_name}#{user.friend_code}",
        "profile_image_url": user.profile_image_url,
        "timezone": user.timezone,
        "stat_preferences": parse_stat_preferences(user.stat_preferences),
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


@router.post("/me", status_code=201)
def create_profile(
    req: ProfileCreate,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    try:
        user = ProfileService(db).create_profile(
            user_id,
            req.display_name,
            profile_image_url=req.profile_image_url,
            timezone=req.timezone,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return serialize_user(user)


@router.get("/me")
def get_profile(user: User = Depends(get_current_user)):
    return serialize_user(user)


@router.patch("/me")
def update_profile(
    req: ProfileUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        updated = ProfileService(db).update_profile(
            user.id,
            display_name=req.display_name,
            profile_image_url=req.profile_image_url,
            timezone=req.timezone,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return serialize_user(updated)


@router.get("/stat-options")
def stat_options():
    return [{"id": stat_id, "label": label} for stat_id, label in STAT_LABELS.items()]


@router.put("/me/stat-preferences")
def set_stat_preferences(
    req: StatPreferencesUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        stats = ProfileService(db).set_stat_preferences(user.id, req.stats)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"stats": stats}


@router.post("/me/profile-picture")
async def upload_profile_picture(
    file: UploadFile = File(...),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    media: MediaStore = Depends(get_media_store),
):
    contents = await file.read()
    try:
        url = media.upload(contents, PROFILE_PICTURE_FOLDER, content_type=file.content_type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    updated = ProfileService(db).update_profile(user.id, profile_image_url=url)
    return serialize_user(updated)
