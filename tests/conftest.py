"""Shared test fixtures for the test suite."""

import asyncio
from typing import (
    Callable,
    List,
    Optional,
    Sequence,
    Set,
)

import pytest

from app.core.skills.installer import SkillInstallationService
from app.core.skills.materializer import (
    InMemoryWorkflowStore,
    WorkflowMaterializer,
)
from app.core.skills.registry import SkillPackageRegistry
from app.core.skills.repository import InMemoryInstallationRepository
from app.core.skills.schema import (
    PackageStatus,
    SkillPackage,
    User,
    WorkflowDefinition,
    WorkflowDependency,
)


class RecordingMaterializer(WorkflowMaterializer):
    """Materializer double that records calls and fails on demand."""

    def __init__(self):
        self.calls: List[str] = []
        self.fail_names: Set[str] = set()
        self.delay: float = 0
        self._counter = 0

    async def materialize(
        self,
        user: User,
        source_canvas_id: Optional[str],
        name: str,
        description: Optional[str] = None,
    ) -> str:
        self.calls.append(name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if name in self.fail_names:
            raise RuntimeError(f"materialize failed for {name}")
        self._counter += 1
        return f"w-{name}-{self._counter}"


def make_workflow(workflow_id: str, *depends_on: str, source: Optional[str] = "default") -> WorkflowDefinition:
    """Build a workflow definition named after its id."""
    return WorkflowDefinition(
        skill_workflow_id=workflow_id,
        source_canvas_id=f"c-{workflow_id}" if source == "default" else source,
        name=workflow_id,
        dependencies=[WorkflowDependency(dependency_workflow_id=dep) for dep in depends_on],
        is_entry=not depends_on,
    )


def make_package(
    skill_id: str = "pkg",
    workflows: Sequence[WorkflowDefinition] = (),
    version: str = "1.0.0",
    uid: str = "author",
    is_public: bool = True,
    share_id: Optional[str] = None,
) -> SkillPackage:
    """Build a published skill package."""
    return SkillPackage(
        skill_id=skill_id,
        name=skill_id.title(),
        version=version,
        uid=uid,
        is_public=is_public,
        share_id=share_id,
        status=PackageStatus.PUBLISHED,
        workflows=list(workflows),
    )


@pytest.fixture
def workflow_factory() -> Callable[..., WorkflowDefinition]:
    """Return the workflow definition builder."""
    return make_workflow


@pytest.fixture
def package_factory() -> Callable[..., SkillPackage]:
    """Return the skill package builder."""
    return make_package


@pytest.fixture
def user() -> User:
    """The installing user."""
    return User(uid="user-1")


@pytest.fixture
def registry() -> SkillPackageRegistry:
    """A registry with an A -> {B, C} package and a private package."""
    registry = SkillPackageRegistry()
    registry.register(
        make_package(
            "abc",
            [make_workflow("A"), make_workflow("B", "A"), make_workflow("C", "A")],
        )
    )
    registry.register(
        make_package(
            "private",
            [make_workflow("P")],
            uid="author",
            is_public=False,
            share_id="share-123",
        )
    )
    return registry


@pytest.fixture
def installations() -> InMemoryInstallationRepository:
    """An empty installation repository."""
    return InMemoryInstallationRepository()


@pytest.fixture
def workflow_store() -> InMemoryWorkflowStore:
    """An empty workflow store."""
    return InMemoryWorkflowStore()


@pytest.fixture
def materializer() -> RecordingMaterializer:
    """A materializer that succeeds unless told otherwise."""
    return RecordingMaterializer()


@pytest.fixture
def service(registry, installations, materializer, workflow_store) -> SkillInstallationService:
    """An installation service wired to in-memory collaborators."""
    return SkillInstallationService(
        packages=registry,
        installations=installations,
        materializer=materializer,
        workflow_store=workflow_store,
        materialize_timeout=5,
    )


@pytest.fixture
def tmp_packages_dir(tmp_path) -> str:
    """Create a temporary directory with sample skill package YAML files."""
    packages_dir = tmp_path / "packages"
    packages_dir.mkdir()

    (packages_dir / "digest.yaml").write_text(
        "skill_id: digest\n"
        "name: Digest\n"
        "version: 1.0.0\n"
        "description: Collect and digest\n"
        "uid: author\n"
        "is_public: true\n"
        "status: published\n"
        "tags: [research]\n"
        "workflows:\n"
        "  - id: collect\n"
        "    name: Collect\n"
        "    source_canvas_id: c-collect\n"
        "  - id: digest\n"
        "    name: Digest\n"
        "    source_canvas_id: c-digest\n"
        "    depends_on: [collect]\n",
        encoding="utf-8",
    )

    (packages_dir / "draft.yml").write_text(
        "skill_id: draft\n"
        "name: Draft\n"
        "version: 0.1.0\n"
        "uid: author\n"
        "is_public: true\n"
        "workflows: []\n",
        encoding="utf-8",
    )

    # Missing version and uid
    (packages_dir / "incomplete.yaml").write_text(
        "skill_id: incomplete\nname: Incomplete\n",
        encoding="utf-8",
    )

    (packages_dir / "broken.yaml").write_text("skill_id: [unclosed\n", encoding="utf-8")

    # Not a package file
    (packages_dir / "readme.txt").write_text("Not a package.\n", encoding="utf-8")

    return str(packages_dir)
