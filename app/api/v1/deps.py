"""Shared endpoint dependencies.

The registry and installation service are built once in the application
lifespan and stored on ``app.state``; endpoints receive them through these
dependencies so tests can swap in their own instances.
"""

from fastapi import (
    Header,
    HTTPException,
    Request,
)

from app.core.skills.installer import SkillInstallationService
from app.core.skills.registry import SkillPackageRegistry
from app.core.skills.schema import User


def get_current_user(x_user_id: str = Header(default="", alias="X-User-Id")) -> User:
    """Resolve the requesting user from the ``X-User-Id`` header."""
    uid = x_user_id.strip()
    if not uid:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return User(uid=uid)


def get_registry(request: Request) -> SkillPackageRegistry:
    """Return the skill package registry built at startup."""
    return request.app.state.skill_registry


def get_installation_service(request: Request) -> SkillInstallationService:
    """Return the installation service built at startup."""
    return request.app.state.installation_service
