import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Request
from slugify import slugify
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, get_password_hash, require_roles
from ..db import get_db
from ..errors import ConflictError, NotFoundError, ValidationError
from ..models.models import User
from ..schemas.users import BreakTimesUpdate, UserCreate, UserUpdate
from ..services import audit
from ..services.serializers import serialize_user
from ..services.time_rules import validate_break_times


router = APIRouter(prefix="/users", tags=["users"])


def _get_user(db: Session, user_id: str) -> User:
    try:
        user_uuid = uuid.UUID(str(user_id))
    except ValueError:
        raise NotFoundError("User not found")
    user = db.query(User).filter(User.id == user_uuid).first()
    if not user:
        raise NotFoundError("User not found")
    return user


def _unique_username(db: Session, name: str) -> str:
    base = slugify(name, separator=".") or "user"
    candidate = base
    n = 1
    while db.query(User.id).filter(User.username == candidate).first():
        n += 1
        candidate = f"{base}{n}"
    return candidate


def _check_level(role: Optional[str], level: Optional[str]) -> None:
    if level and role != "technician":
        raise ValidationError("Only technicians carry a level", field="level")


@router.get("")
def list_users(
    q: Optional[str] = None,
    role: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
    db: Session = Depends(get_db),
    _=Depends(require_roles("administrator")),
):
    """
    List users with pagination

    Args:
        q: Search query (name, username, or email)
        role: Only users with this role
        page: Page number (1-indexed)
        limit: Number of items per page (default 50, max 200)
    """
    limit = min(max(1, limit), 200)
    page = max(1, page)
    offset = (page - 1) * limit

    query = db.query(User)
    if q:
        like = f"%{q}%"
        query = query.filter(
            (User.name.ilike(like)) |
            (User.username.ilike(like)) |
            (User.email.ilike(like))
        )
    if role:
        query = query.filter(User.role == role)

    total = query.count()
    rows = query.order_by(User.name.asc()).offset(offset).limit(limit).all()
    return {
        "items": [serialize_user(u) for u in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit if limit > 0 else 0,
    }


@router.post("", status_code=201)
def create_user(
    payload: UserCreate,
    request: Request,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("administrator")),
):
    role = payload.role.value
    level = payload.level.value if payload.level else None
    _check_level(role, level)
    breaks = [b.model_dump() for b in payload.break_times]
    validate_break_times(breaks)

    email = payload.email.lower()
    if db.query(User.id).filter(User.email == email).first():
        raise ConflictError("Email already in use", {"email": email})
    if payload.username:
        username = payload.username.strip()
        if db.query(User.id).filter(User.username == username).first():
            raise ConflictError("Username already in use", {"username": username})
    else:
        username = _unique_username(db, payload.name)

    user = User(
        name=payload.name.strip(),
        username=username,
        email=email,
        password_hash=get_password_hash(payload.password),
        role=role,
        level=level if role == "technician" else None,
        break_times=breaks,
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    after = serialize_user(user)
    audit.record(db, "create", "User", user.id, actor=me, after_state=after, request=request, request_body=payload.model_dump(mode="json"))
    return {"user": after}


@router.put("/me/break-times")
def update_my_break_times(
    payload: BreakTimesUpdate,
    request: Request,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    if me.role != "technician":
        raise ValidationError("Only technicians have break times", field="break_times")
    breaks = [b.model_dump() for b in payload.break_times]
    validate_break_times(breaks)
    before = serialize_user(me)
    me.break_times = breaks
    db.commit()
    db.refresh(me)
    after = serialize_user(me)
    audit.record(db, "update", "User", me.id, actor=me, before_state=before, after_state=after, request=request)
    return {"user": after}


@router.get("/{user_id}")
def get_user(user_id: str, db: Session = Depends(get_db), _=Depends(require_roles("administrator"))):
    return {"user": serialize_user(_get_user(db, user_id))}


@router.put("/{user_id}")
def update_user(
    user_id: str,
    payload: UserUpdate,
    request: Request,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("administrator")),
):
    user = _get_user(db, user_id)
    before = serialize_user(user)
    data = payload.model_dump(exclude_unset=True)

    role = data["role"].value if data.get("role") else user.role
    if data.get("level"):
        _check_level(role, data["level"].value)
        level = data["level"].value
    elif "level" in data:
        level = None
    else:
        level = user.level if role == "technician" else None

    if data.get("email"):
        email = data["email"].lower()
        taken = db.query(User.id).filter(User.email == email, User.id != user.id).first()
        if taken:
            raise ConflictError("Email already in use", {"email": email})
        user.email = email
    if data.get("name"):
        user.name = data["name"].strip()
    if data.get("password"):
        user.password_hash = get_password_hash(data["password"])
    if data.get("break_times") is not None:
        validate_break_times(data["break_times"])
        user.break_times = data["break_times"]
    if data.get("is_active") is not None:
        user.is_active = data["is_active"]
    user.role = role
    user.level = level

    db.commit()
    db.refresh(user)
    after = serialize_user(user)
    body = payload.model_dump(mode="json", exclude_unset=True)
    audit.record(db, "update", "User", user.id, actor=me, before_state=before, after_state=after, request=request, request_body=body)
    return {"user": after}


@router.delete("/{user_id}")
def delete_user(
    user_id: str,
    request: Request,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("administrator")),
):
    user = _get_user(db, user_id)
    if user.id == me.id:
        raise ValidationError("You cannot delete your own account")
    before = serialize_user(user)
    db.delete(user)
    db.commit()
    audit.record(db, "delete", "User", before["id"], actor=me, before_state=before, request=request)
    return {"status": "ok"}
