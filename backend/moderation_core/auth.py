from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from . import schemas

ROLES = ("member", "moderator", "administrator")


def get_current_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> schemas.Actor:
    """Identity resolved upstream by the gateway and forwarded as trusted headers."""
    if not x_actor_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing actor identity")
    try:
        actor_id = int(x_actor_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid actor identity")
    role = (x_actor_role or "member").strip().lower()
    if role not in ROLES:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown actor role")
    return schemas.Actor(id=actor_id, role=role)


def require_staff(actor: schemas.Actor = Depends(get_current_actor)) -> schemas.Actor:
    if not actor.is_staff:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Moderators and administrators only.")
    return actor


def require_admin(actor: schemas.Actor = Depends(get_current_actor)) -> schemas.Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrators only.")
    return actor
