# posoffice/services/user_service.py
"""
Back-office user records.

username and email are unique. role is one of USER_ROLES. Users are only
attribution here (orders.created_by_user_id); credentials live elsewhere.
"""
from __future__ import annotations

from flask import current_app

from ..errors import DuplicateValueError, InvalidOperationError, NotFoundError
from ..extensions import db
from ..models import Order, User, USER_ROLES
from .concurrency import run_with_retry

USER_MUTABLE_FIELDS = {"username", "email", "full_name", "role", "is_active"}


def apply_user_patch(u: User, patch: dict) -> None:
    for k, v in patch.items():
        if k not in USER_MUTABLE_FIELDS:
            continue
        setattr(u, k, v)


def validate_role(role: str) -> None:
    if role not in USER_ROLES:
        raise InvalidOperationError(f"Invalid role '{role}'. Must be one of: {', '.join(USER_ROLES)}")


def _require_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    return user


def _check_patch(patch: dict, exclude_id: int | None = None) -> None:
    for field in ("username", "email"):
        if field in patch and not patch[field]:
            raise InvalidOperationError(f"{field} is required")
    if "role" in patch:
        validate_role(patch["role"])

    username = patch.get("username")
    if username:
        q = db.session.query(User.id).filter(User.username == username)
        if exclude_id is not None:
            q = q.filter(User.id != exclude_id)
        if q.first() is not None:
            raise DuplicateValueError(f"Username already exists: {username}")
    email = patch.get("email")
    if email:
        q = db.session.query(User.id).filter(User.email == email)
        if exclude_id is not None:
            q = q.filter(User.id != exclude_id)
        if q.first() is not None:
            raise DuplicateValueError(f"Email already exists: {email}")


def exists_by_username(username: str) -> bool:
    return db.session.query(User.id).filter(User.username == username).first() is not None


def exists_by_email(email: str) -> bool:
    return db.session.query(User.id).filter(User.email == email).first() is not None


def create_user(patch: dict) -> User:
    """Create a user; role defaults to STAFF and the account starts active."""
    current_app.logger.info("Creating new user: %s", patch.get("username"))

    def _op():
        cleaned = {"role": "STAFF", "is_active": True, **patch}
        if not cleaned.get("username") or not cleaned.get("email"):
            raise InvalidOperationError("username and email are required")
        _check_patch(cleaned)

        u = User()
        apply_user_patch(u, cleaned)
        db.session.add(u)
        db.session.commit()
        return u

    user = run_with_retry(_op)
    current_app.logger.info("User created successfully with ID: %s", user.id)
    return user


def update_user(user_id: int, patch: dict) -> User:
    current_app.logger.info("Updating user with ID: %s", user_id)

    def _op():
        u = _require_user(user_id)
        _check_patch(patch, exclude_id=u.id)
        apply_user_patch(u, patch)
        db.session.commit()
        return u

    user = run_with_retry(_op)
    current_app.logger.info("User updated successfully with ID: %s", user_id)
    return user


def delete_user(user_id: int) -> None:
    """Remove a user. Users that created orders are kept; deactivate them instead."""
    current_app.logger.info("Deleting user with ID: %s", user_id)

    def _op():
        u = _require_user(user_id)
        if db.session.query(Order.id).filter(Order.created_by_user_id == user_id).first() is not None:
            raise InvalidOperationError("Cannot delete user referenced by orders")
        db.session.delete(u)
        db.session.commit()

    run_with_retry(_op)
    current_app.logger.info("User deleted successfully with ID: %s", user_id)


def toggle_user_status(user_id: int, active: bool) -> User:
    current_app.logger.info("Toggling user status for ID: %s to active: %s", user_id, active)

    def _op():
        u = _require_user(user_id)
        u.is_active = active
        db.session.commit()
        return u

    return run_with_retry(_op)


def get_user(user_id: int) -> User | None:
    return db.session.get(User, user_id)


def get_user_by_username(username: str) -> User | None:
    return db.session.query(User).filter(User.username == username).first()


def get_user_by_email(email: str) -> User | None:
    return db.session.query(User).filter(User.email == email).first()


def list_users() -> list[User]:
    return db.session.query(User).order_by(User.username.asc()).all()


def get_users_by_role(role: str) -> list[User]:
    validate_role(role)
    return db.session.query(User).filter(User.role == role).order_by(User.username.asc()).all()


def get_active_users() -> list[User]:
    return db.session.query(User).filter(User.is_active.is_(True)).order_by(User.username.asc()).all()


def search_users(keyword: str) -> list[User]:
    """Substring match on full name, email or username."""
    pattern = f"%{keyword}%"
    return (
        db.session.query(User)
        .filter(
            db.or_(
                User.full_name.ilike(pattern),
                User.email.ilike(pattern),
                User.username.ilike(pattern),
            )
        )
        .order_by(User.username.asc())
        .all()
    )


def get_active_user_count() -> int:
    return db.session.query(User).filter(User.is_active.is_(True)).count()


def get_user_count_by_role(role: str) -> int:
    validate_role(role)
    return db.session.query(User).filter(User.role == role).count()
