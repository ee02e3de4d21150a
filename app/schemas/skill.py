"""Schemas for skill package and installation endpoints."""

from datetime import datetime
from typing import (
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    Field,
)

from app.core.skills.schema import (
    Installation,
    InstallationStatus,
    PackageStatus,
    SkillPackage,
    WorkflowMappingStatus,
)


class InstallRequest(BaseModel):
    """Request body for downloading or installing a skill package."""

    skill_id: str = Field(..., min_length=1, description="The skill package to install")
    share_id: Optional[str] = Field(default=None, description="Share id granting access to a private package")


class WorkflowSummary(BaseModel):
    """A workflow template as shown in package details."""

    skill_workflow_id: str
    name: str
    description: Optional[str] = None
    depends_on: List[str] = Field(default_factory=list)
    is_entry: bool = True


class PackageResponse(BaseModel):
    """Response model for a skill package."""

    skill_id: str
    name: str
    version: str
    description: Optional[str] = None
    uid: str
    is_public: bool
    status: PackageStatus
    tags: List[str] = Field(default_factory=list)
    download_count: int = 0
    workflows: List[WorkflowSummary] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_package(cls, package: SkillPackage) -> "PackageResponse":
        """Build the response from a package; the share id is never exposed."""
        return cls(
            skill_id=package.skill_id,
            name=package.name,
            version=package.version,
            description=package.description,
            uid=package.uid,
            is_public=package.is_public,
            status=package.status,
            tags=package.tags,
            download_count=package.download_count,
            workflows=[
                WorkflowSummary(
                    skill_workflow_id=workflow.skill_workflow_id,
                    name=workflow.name,
                    description=workflow.description,
                    depends_on=workflow.dependency_ids,
                    is_entry=workflow.is_entry,
                )
                for workflow in package.workflows
            ],
            created_at=package.created_at,
            updated_at=package.updated_at,
        )


class PackageListResponse(BaseModel):
    """Response model for listing skill packages."""

    packages: List[PackageResponse]
    total: int


class WorkflowMappingEntryResponse(BaseModel):
    """Materialization outcome of one package workflow."""

    workflow_id: Optional[str] = None
    status: WorkflowMappingStatus
    error: Optional[str] = None


class InstallationResponse(BaseModel):
    """Response model for a single installation."""

    installation_id: str
    skill_id: str
    status: InstallationStatus
    workflow_mapping: Dict[str, WorkflowMappingEntryResponse] = Field(default_factory=dict)
    installed_version: Optional[str] = None
    has_update: bool = False
    available_version: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    package: Optional[PackageResponse] = None

    @classmethod
    def from_installation(
        cls, installation: Installation, package: Optional[SkillPackage] = None
    ) -> "InstallationResponse":
        """Build the response from an installation and, optionally, its package."""
        return cls(
            installation_id=installation.installation_id,
            skill_id=installation.skill_id,
            status=installation.status,
            workflow_mapping={
                key: WorkflowMappingEntryResponse(
                    workflow_id=entry.workflow_id,
                    status=entry.status,
                    error=entry.error,
                )
                for key, entry in installation.workflow_mapping.items()
            },
            installed_version=installation.installed_version,
            has_update=installation.has_update,
            available_version=installation.available_version,
            error_message=installation.error_message,
            created_at=installation.created_at,
            updated_at=installation.updated_at,
            package=PackageResponse.from_package(package) if package else None,
        )


class InstallationListResponse(BaseModel):
    """Response model for one page of installations."""

    installations: List[InstallationResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


class InstalledResponse(BaseModel):
    """Response model for the installed check."""

    skill_id: str
    installed: bool
