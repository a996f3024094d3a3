from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from api.users import serialize_user
from auth.utils import get_current_user
from db.database import get_db
from db.models import FriendRequest, User
from services.errors import NotFound
from services.friend_discovery_service import FriendDiscovery
from services.friend_graph_service import FriendGraphManager

router = APIRouter(prefix="/friends", tags=["friends"])


class FriendRequestCreate(BaseModel):
    to_user_id: str


def parse_search_input(raw: str) -> tuple[str, str]:
    """Split ``Name#1234`` into ``(name, code)``; the code is validated by discovery."""
    parts = (raw or "").strip().split("#")
    if len(parts) != 2 or not parts[0].strip() or not parts[1].strip():
        raise ValueError("Please use format: Name#1234")
    return parts[0].strip(), parts[1].strip()


def _serialize_request(request: FriendRequest, users: dict[str, User]) -> dict:
    sender = users.get(request.sender_id)
    recipient = users.get(request.recipient_id)
    return {
        "id": request.id,
        "from_user": serialize_user(sender) if sender else None,
        "to_user": serialize_user(recipient) if recipient else None,
        "status": request.status,
        "created_at": request.created_at.isoformat() if request.created_at else None,
        "resolved_at": request.resolved_at.isoformat() if request.resolved_at else None,
    }


def _serialize_requests(db: Session, requests: list[FriendRequest]) -> list[dict]:
    ids = {r.sender_id for r in requests} | {r.recipient_id for r in requests}
    users = {u.id: u for u in db.query(User).filter(User.id.in_(ids)).all()} if ids else {}
    return [_serialize_request(r, users) for r in requests]


def _own_request(graph: FriendGraphManager, request_id: str, user: User) -> FriendRequest:
    request = graph.get_request(request_id)
    if request.recipient_id != user.id:
        # Only the recipient resolves a request; hide others' requests entirely.
        raise NotFound(f"Friend request {request_id} not found")
    return request


@router.get("")
def list_friends(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return [serialize_user(friend) for friend in FriendGraphManager(db).list_friends(user.id)]


@router.get("/search")
def search_user(
    q: str = Query(..., description="Name#1234"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        name, code = parse_search_input(q)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    found = FriendDiscovery(db).resolve_by_name_and_code(name, code)
    if found is None:
        raise HTTPException(status_code=404, detail="No user found with that name and code")
    graph = FriendGraphManager(db)
    return {
        **serialize_user(found),
        "is_self": found.id == user.id,
        "is_friend": graph.are_friends(user.id, found.id),
    }


@router.post("/requests", status_code=201)
def send_request(
    req: FriendRequestCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    request_id = FriendGraphManager(db).send_friend_request(user.id, req.to_user_id)
    return {"id": request_id, "status": "pending"}


@router.get("/requests/incoming")
def incoming_requests(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _serialize_requests(db, FriendGraphManager(db).list_pending_incoming(user.id))


@router.get("/requests/outgoing")
def outgoing_requests(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _serialize_requests(db, FriendGraphManager(db).list_pending_outgoing(user.id))


@router.post("/requests/{request_id}/accept")
def accept_request(
    request_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    graph = FriendGraphManager(db)
    _own_request(graph, request_id, user)
    request = graph.accept_friend_request(request_id)
    return _serialize_requests(db, [request])[0]


@router.post("/requests/{request_id}/reject")
def reject_request(
    request_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    graph = FriendGraphManager(db)
    _own_request(graph, request_id, user)
    request = graph.reject_friend_request(request_id)
    return _serialize_requests(db, [request])[0]


@router.delete("/{friend_id}", status_code=204)
def remove_friend(
    friend_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    FriendGraphManager(db).remove_friend(user.id, friend_id)
