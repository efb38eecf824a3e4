# app/api/deps.py
from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.core.rbac import Actor, as_role
from app.db.session import get_db
from app.models.user import User
from app.services.notifier import Notifier, get_notifier
from app.utils.jwt import decode_token

__all__ = ["get_db", "current_user", "current_actor", "notifier_dep"]


# =========================================================
# AUTH HELPERS
# =========================================================
def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def user_from_token(raw_token: Optional[str], db: Session) -> User:
    if not raw_token:
        raise HTTPException(status_code=401, detail="Missing token")

    payload = decode_token(raw_token)
    if payload is None:
        raise HTTPException(status_code=401, detail="Invalid token")

    sub = payload.get("sub")
    if not sub or not str(sub).isdigit():
        raise HTTPException(status_code=401, detail="Invalid token payload")

    user: Optional[User] = db.get(User, int(sub))
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="User inactive")
    if as_role(user.role) is None:
        raise HTTPException(status_code=403, detail="Unknown role")
    return user


def actor_for(user: User) -> Actor:
    return Actor(id=user.id, role=as_role(user.role), name=user.name or "")


def current_user(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> User:
    return user_from_token(_extract_bearer(authorization), db)


def current_actor(user: User = Depends(current_user)) -> Actor:
    """What the workflow services receive: id, role, display name."""
    return actor_for(user)


def notifier_dep() -> Notifier:
    return get_notifier()
