"""Error taxonomy for skill installation.

Validation and structural errors propagate to the caller unchanged.
``MaterializationError`` is per-workflow and never leaves the initialize
loop: it is recorded in the mapping entry instead.
"""

from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
)


class ErrorCode(str, Enum):
    """Stable error codes exposed to API clients."""

    PACKAGE_NOT_FOUND = "PACKAGE_NOT_FOUND"
    ACCESS_DENIED = "ACCESS_DENIED"
    ALREADY_INSTALLED = "ALREADY_INSTALLED"
    INSTALLATION_NOT_FOUND = "INSTALLATION_NOT_FOUND"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    CIRCULAR_DEPENDENCY = "CIRCULAR_DEPENDENCY"
    MISSING_DEPENDENCY = "MISSING_DEPENDENCY"
    MALFORMED_PACKAGE = "MALFORMED_PACKAGE"
    MATERIALIZATION_FAILED = "MATERIALIZATION_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class SkillInstallationError(Exception):
    """Base class for all skill installation errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """Initialize the error.

        Args:
            message: Human-readable description.
            details: Structured context for logs and API responses.
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


class PackageNotFoundError(SkillInstallationError):
    code = ErrorCode.PACKAGE_NOT_FOUND

    def __init__(self, skill_id: str):
        super().__init__(f"Skill package not found: {skill_id}", {"skill_id": skill_id})


class AccessDeniedError(SkillInstallationError):
    code = ErrorCode.ACCESS_DENIED

    def __init__(self, skill_id: str):
        super().__init__(f"Access denied to skill package: {skill_id}", {"skill_id": skill_id})


class AlreadyInstalledError(SkillInstallationError):
    code = ErrorCode.ALREADY_INSTALLED

    def __init__(self, skill_id: str, installation_id: str):
        super().__init__(
            f"Skill already installed: {skill_id}",
            {"skill_id": skill_id, "installation_id": installation_id},
        )


class InstallationNotFoundError(SkillInstallationError):
    code = ErrorCode.INSTALLATION_NOT_FOUND

    def __init__(self, installation_id: str):
        super().__init__(
            f"Installation not found or access denied: {installation_id}",
            {"installation_id": installation_id},
        )


class InvalidStateTransitionError(SkillInstallationError):
    code = ErrorCode.INVALID_STATE_TRANSITION

    def __init__(self, installation_id: str, status: str, operation: str):
        super().__init__(
            f"Cannot {operation} installation {installation_id} in status: {status}",
            {"installation_id": installation_id, "status": status, "operation": operation},
        )


class CircularDependencyError(SkillInstallationError):
    """The package's workflow dependencies contain a cycle."""

    code = ErrorCode.CIRCULAR_DEPENDENCY

    def __init__(self, skill_id: Optional[str], unresolved: List[str]):
        self.unresolved = unresolved
        super().__init__(
            f"Circular dependency detected in workflows of skill package {skill_id or '<unknown>'}: "
            f"{', '.join(unresolved)}",
            {"skill_id": skill_id, "unresolved": unresolved},
        )


class MissingDependencyError(SkillInstallationError):
    """A workflow depends on a workflow id the package does not define."""

    code = ErrorCode.MISSING_DEPENDENCY

    def __init__(self, skill_id: Optional[str], skill_workflow_id: str, dependency_workflow_id: str):
        super().__init__(
            f"Workflow {skill_workflow_id} depends on unknown workflow {dependency_workflow_id}",
            {
                "skill_id": skill_id,
                "skill_workflow_id": skill_workflow_id,
                "dependency_workflow_id": dependency_workflow_id,
            },
        )


class MalformedPackageError(SkillInstallationError):
    code = ErrorCode.MALFORMED_PACKAGE


class MaterializationError(SkillInstallationError):
    code = ErrorCode.MATERIALIZATION_FAILED
