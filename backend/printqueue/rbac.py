from __future__ import annotations

from . import models
from .errors import PermissionDeniedError
from .models import UserRole

# purpose: centralize capability checks so services never compare role strings
# status: active


def _role(user: models.User) -> str:
    return (user.role or UserRole.USER).upper()


def is_staff(user: models.User) -> bool:
    return _role(user) in UserRole.STAFF


def is_superadmin(user: models.User) -> bool:
    return _role(user) == UserRole.SUPERADMIN


def can_mutate(user: models.User) -> bool:
    return _role(user) != UserRole.GUEST and not user.suspended


def can_view_order(user: models.User, order: models.Order) -> bool:
    return is_staff(user) or order.user_id == user.id


def can_transition(user: models.User, order: models.Order) -> bool:
    return can_mutate(user) and is_staff(user)


def can_manage_file(user: models.User, file: models.File) -> bool:
    return can_mutate(user) and (is_staff(user) or file.uploaded_by == user.id)


def ensure_can_mutate(user: models.User) -> None:
    if not can_mutate(user):
        raise PermissionDeniedError("read-only account")


def ensure_staff(user: models.User) -> None:
    ensure_can_mutate(user)
    if not is_staff(user):
        raise PermissionDeniedError("Insufficient permissions")


def ensure_superadmin(user: models.User) -> None:
    ensure_can_mutate(user)
    if not is_superadmin(user):
        raise PermissionDeniedError("Insufficient permissions")


def ensure_can_view_order(user: models.User, order: models.Order) -> None:
    if not can_view_order(user, order):
        raise PermissionDeniedError("Access denied")


def ensure_can_transition(user: models.User, order: models.Order) -> None:
    if not can_transition(user, order):
        raise PermissionDeniedError("Insufficient permissions")


def ensure_can_manage_file(user: models.User, file: models.File) -> None:
    if not can_manage_file(user, file):
        raise PermissionDeniedError("Access denied")
