from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Protocol

from fastapi import Header

from labingest.errors import AccessDenied, AuthenticationRequired

ROLES = {"analyst", "admin"}
_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_.@-]{1,128}$")


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str = "analyst"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class ProjectAccess(Protocol):
    def can_access(self, principal: Principal, project_id: str) -> bool:
        ...


class OpenProjectAccess:
    """Every authenticated principal may attach uploads to any project."""

    def can_access(self, principal: Principal, project_id: str) -> bool:
        return True


@dataclass
class StaticProjectAccess:
    grants: dict[str, set[str]] = field(default_factory=dict)

    def can_access(self, principal: Principal, project_id: str) -> bool:
        return principal.is_admin or project_id in self.grants.get(principal.user_id, set())


def check_project_access(access: ProjectAccess, principal: Principal, project_id: str | None) -> str | None:
    if project_id is None or not project_id.strip():
        return None
    project_id = project_id.strip()
    if not _IDENTIFIER_PATTERN.fullmatch(project_id):
        raise AccessDenied("Project identifier is not valid.")
    if not access.can_access(principal, project_id):
        raise AccessDenied("You do not have access to this project.")
    return project_id


def get_principal(
    x_user_id: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Principal:
    """Read the authenticated principal set by the upstream session layer."""

    user_id = (x_user_id or "").strip()
    if not user_id:
        raise AuthenticationRequired("Authentication required.")
    if not _IDENTIFIER_PATTERN.fullmatch(user_id):
        raise AuthenticationRequired("Authenticated user identifier is malformed.")

    role = (x_user_role or "analyst").strip().lower()
    if role not in ROLES:
        role = "analyst"
    return Principal(user_id=user_id, role=role)
