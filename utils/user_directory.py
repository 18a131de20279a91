from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Iterable, Optional

from jose import JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import User


logger = logging.getLogger(__name__)

JWT_SECRET = os.getenv("JWT_SECRET", "change_me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")


def find_current_user_from_auth_token(db: Session, token: Optional[str]) -> Optional[User]:
    """Resolve a raw bearer token to its user, or None if it does not check out."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        return None
    sub = payload.get("sub")
    if not sub:
        return None
    try:
        return db.get(User, int(sub))
    except (TypeError, ValueError):
        return None


def mark_phone_verified(db: Session, user_id: int) -> bool:
    user = db.get(User, user_id)
    if not user:
        return False
    user.phone_verified = True
    user.phone_verified_at = datetime.utcnow()
    try:
        db.add(user)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Could not mark phone verified for user %s", user_id)
        return False
    return True


def find_and_mark_phone_verified_by_phone_variants(db: Session, variants: Iterable[str]) -> Optional[User]:
    """
    Mark the first user whose stored phone matches any variant. The match is
    loose on purpose; see utils.phone_variants.
    """
    candidates = sorted(set(variants))
    if not candidates:
        return None
    user = db.query(User).filter(User.phone.in_(candidates)).order_by(User.id).first()
    if not user:
        return None
    return user if mark_phone_verified(db, user.id) else None
