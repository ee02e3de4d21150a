"""Domain models for skill packages and their per-user installations."""

import uuid
from datetime import datetime
from enum import Enum
from typing import (
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)


class PackageStatus(str, Enum):
    """Publication status of a skill package."""

    DRAFT = "draft"
    PUBLISHED = "published"


class InstallationStatus(str, Enum):
    """Aggregate status of an installation."""

    DOWNLOADED = "downloaded"
    INITIALIZING = "initializing"
    READY = "ready"
    PARTIAL_FAILED = "partial_failed"
    FAILED = "failed"


class WorkflowMappingStatus(str, Enum):
    """Materialization status of a single package workflow."""

    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class MaterializationMode(str, Enum):
    """How a package workflow becomes a user-owned workflow."""

    CLONE = "clone"
    GENERATE = "generate"


class User(BaseModel):
    """The user an operation is performed for."""

    uid: str


class WorkflowDependency(BaseModel):
    """An edge from a workflow to another workflow it depends on."""

    dependency_workflow_id: str
    dependency_type: str = "sequential"


class WorkflowDefinition(BaseModel):
    """One workflow template inside a skill package.

    Attributes:
        skill_workflow_id: Identifier scoped to the package.
        source_canvas_id: The template's source content, if any.
        name: Display name, also used as the materialized workflow title.
        description: Optional description, used as the generation query.
        dependencies: Workflows of the same package that must be materialized first.
        is_entry: True when the workflow has no dependencies.
    """

    skill_workflow_id: str
    source_canvas_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    dependencies: List[WorkflowDependency] = Field(default_factory=list)
    is_entry: bool = True

    @property
    def dependency_ids(self) -> List[str]:
        """Return the ids of the workflows this one depends on."""
        return [dep.dependency_workflow_id for dep in self.dependencies]


class SkillPackage(BaseModel):
    """A versioned bundle of workflow templates."""

    skill_id: str
    name: str
    version: str
    description: Optional[str] = None
    uid: str
    is_public: bool = False
    share_id: Optional[str] = None
    status: PackageStatus = PackageStatus.DRAFT
    tags: List[str] = Field(default_factory=list)
    download_count: int = 0
    workflows: List[WorkflowDefinition] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None


class WorkflowMappingEntry(BaseModel):
    """Materialization outcome for one package workflow.

    Serialized with camelCase keys (``workflowId``) so the persisted mapping
    stays compatible with records written by other services.
    """

    model_config = ConfigDict(populate_by_name=True)

    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    status: WorkflowMappingStatus = WorkflowMappingStatus.PENDING
    error: Optional[str] = None


WorkflowMapping = Dict[str, WorkflowMappingEntry]


class Installation(BaseModel):
    """A user's installation of a skill package.

    At most one non-deleted installation exists per (uid, skill_id). A
    soft-deleted installation is resurrected by the next download.
    """

    installation_id: str = Field(default_factory=lambda: f"skpi-{uuid.uuid4().hex}")
    skill_id: str
    uid: str
    status: InstallationStatus = InstallationStatus.DOWNLOADED
    workflow_mapping: WorkflowMapping = Field(default_factory=dict)
    installed_version: Optional[str] = None
    has_update: bool = False
    available_version: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        """Return True if the installation is soft-deleted."""
        return self.deleted_at is not None


class InstallationListItem(BaseModel):
    """An installation together with the package it installs."""

    installation: Installation
    package: Optional[SkillPackage] = None


class InstallationPage(BaseModel):
    """One page of a user's installations."""

    items: List[InstallationListItem] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    page_size: int = 20
    has_more: bool = False
