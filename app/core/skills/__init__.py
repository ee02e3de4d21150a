"""Skill package installation.

A skill package bundles workflow templates with dependencies between them.
Installing one materializes every template as a workflow owned by the
installing user, in dependency order, and tracks the outcome per workflow.
"""

from app.core.skills.errors import (
    AccessDeniedError,
    AlreadyInstalledError,
    CircularDependencyError,
    ErrorCode,
    InstallationNotFoundError,
    InvalidStateTransitionError,
    MalformedPackageError,
    MaterializationError,
    MissingDependencyError,
    PackageNotFoundError,
    SkillInstallationError,
)
from app.core.skills.installer import SkillInstallationService
from app.core.skills.registry import (
    SkillPackageRegistry,
    can_access,
)
from app.core.skills.resolver import resolve
from app.core.skills.schema import (
    Installation,
    InstallationStatus,
    MaterializationMode,
    SkillPackage,
    User,
    WorkflowDefinition,
)

__all__ = [
    "AccessDeniedError",
    "AlreadyInstalledError",
    "CircularDependencyError",
    "ErrorCode",
    "Installation",
    "InstallationNotFoundError",
    "InstallationStatus",
    "InvalidStateTransitionError",
    "MalformedPackageError",
    "MaterializationError",
    "MaterializationMode",
    "MissingDependencyError",
    "PackageNotFoundError",
    "SkillInstallationError",
    "SkillInstallationService",
    "SkillPackage",
    "SkillPackageRegistry",
    "User",
    "WorkflowDefinition",
    "can_access",
    "resolve",
]
