from __future__ import annotations

from models import UserRole


QUEUE_ROLE_MAP: dict[str, set[UserRole]] = {
    "nurse": {UserRole.NURSE},
    "doctor": {UserRole.DOCTOR},
}

AUDIT_ROLES: set[UserRole] = {UserRole.ADMIN, UserRole.DOCTOR}


def _queue_key(name: str) -> str:
    return name.strip().casefold()


def allowed_roles_for_queue(queue: str) -> set[UserRole]:
    return set(QUEUE_ROLE_MAP.get(_queue_key(queue), set()))


def can_access_queue(role: UserRole, queue: str) -> bool:
    if role == UserRole.ADMIN:
        return True
    return role in allowed_roles_for_queue(queue)
