"""Skill package registry.

Loads skill package definitions from YAML files and serves them through the
``PackageRepository`` interface. One registry is built at application
startup and injected into every consumer; tests build their own with a fixed
set of packages.

Expected YAML format::

    skill_id: research-digest
    name: Research Digest
    version: 1.2.0
    description: Collects sources and writes a digest
    uid: author-1
    is_public: true
    status: published
    tags: [research, writing]
    workflows:
      - id: collect
        name: Collect sources
        source_canvas_id: c-collect
      - id: digest
        name: Write digest
        source_canvas_id: c-digest
        depends_on: [collect]
"""

import os
from datetime import datetime
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

import yaml

from app.core.logging import logger
from app.core.skills.repository import PackageRepository
from app.core.skills.schema import (
    PackageStatus,
    SkillPackage,
    WorkflowDefinition,
    WorkflowDependency,
)


def can_access(package: SkillPackage, user_id: Optional[str], share_id: Optional[str] = None) -> bool:
    """Return True if the user may see and install the package.

    Owners always have access, public packages are open to everyone, and a
    private package is reachable through its share id.
    """
    if user_id and package.uid == user_id:
        return True
    if package.is_public:
        return True
    return bool(share_id) and package.share_id == share_id


class SkillPackageRegistry(PackageRepository):
    """In-process catalog of skill packages keyed by ``skill_id``."""

    def __init__(self, packages_dir: Optional[str] = None):
        """Initialize the registry.

        Args:
            packages_dir: Directory of ``.yaml``/``.yml`` package files to load.
                Nothing is loaded when omitted.
        """
        self._packages: Dict[str, SkillPackage] = {}
        self._packages_dir = packages_dir
        if packages_dir:
            self._load_packages(packages_dir)

    def _load_packages(self, directory: str) -> None:
        """Parse every YAML file in a directory and register the packages found."""
        if not os.path.isdir(directory):
            logger.warning("skill_packages_dir_not_found", path=directory)
            return

        for filename in sorted(os.listdir(directory)):
            if not filename.endswith((".yaml", ".yml")):
                continue

            filepath = os.path.join(directory, filename)
            try:
                package = self._parse_package_file(filepath)
                if package:
                    self._packages[package.skill_id] = package
                    logger.info(
                        "skill_package_loaded",
                        skill_id=package.skill_id,
                        version=package.version,
                        workflow_count=len(package.workflows),
                    )
            except Exception as e:
                logger.exception("skill_package_parse_failed", file=filename, error=str(e))

    def _parse_package_file(self, filepath: str) -> Optional[SkillPackage]:
        """Parse a single YAML file into a SkillPackage.

        Args:
            filepath: Path to the YAML file.

        Returns:
            Optional[SkillPackage]: The package, or None if required fields are missing.
        """
        with open(filepath, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not data or not all(key in data for key in ("skill_id", "name", "version", "uid")):
            logger.warning("skill_package_missing_required_fields", filepath=filepath)
            return None

        return self.package_from_dict(data)

    @staticmethod
    def package_from_dict(data: Dict[str, Any]) -> SkillPackage:
        """Build a SkillPackage from its YAML/dict form."""
        workflows = []
        for workflow_data in data.get("workflows") or []:
            depends_on = [str(dep) for dep in workflow_data.get("depends_on") or []]
            workflows.append(
                WorkflowDefinition(
                    skill_workflow_id=str(workflow_data["id"]),
                    source_canvas_id=workflow_data.get("source_canvas_id"),
                    name=workflow_data.get("name", str(workflow_data["id"])),
                    description=workflow_data.get("description"),
                    dependencies=[WorkflowDependency(dependency_workflow_id=dep) for dep in depends_on],
                    is_entry=not depends_on,
                )
            )

        return SkillPackage(
            skill_id=str(data["skill_id"]),
            name=data["name"],
            version=str(data["version"]),
            description=data.get("description"),
            uid=str(data["uid"]),
            is_public=bool(data.get("is_public", False)),
            share_id=data.get("share_id"),
            status=PackageStatus(data.get("status", PackageStatus.DRAFT.value)),
            tags=list(data.get("tags") or []),
            workflows=workflows,
        )

    def register(self, package: SkillPackage) -> SkillPackage:
        """Register or replace a package.

        Replacing a package with a new version keeps its download count, so
        publishing a new version does not reset popularity.

        Args:
            package: The package to register.

        Returns:
            SkillPackage: The registered package.
        """
        existing = self._packages.get(package.skill_id)
        if existing:
            package.download_count = max(package.download_count, existing.download_count)
            package.created_at = existing.created_at
            package.updated_at = datetime.utcnow()
            logger.info(
                "skill_package_replaced",
                skill_id=package.skill_id,
                old_version=existing.version,
                new_version=package.version,
            )
        self._packages[package.skill_id] = package
        logger.info("skill_package_registered", skill_id=package.skill_id, version=package.version)
        return package

    def unregister(self, skill_id: str) -> bool:
        """Soft-delete a package.

        Args:
            skill_id: The package id.

        Returns:
            bool: True if the package was found.
        """
        package = self._packages.get(skill_id)
        if not package or package.deleted_at:
            logger.warning("skill_package_unregister_not_found", skill_id=skill_id)
            return False
        package.deleted_at = datetime.utcnow()
        logger.info("skill_package_unregistered", skill_id=skill_id)
        return True

    def list_packages(self, user_id: Optional[str] = None, tags: Optional[List[str]] = None) -> List[SkillPackage]:
        """List packages visible to a user: their own plus published public ones.

        Args:
            user_id: The requesting user.
            tags: Only return packages carrying at least one of these tags.

        Returns:
            List[SkillPackage]: Matching packages without workflow definitions,
            most downloaded first.
        """
        visible = []
        for package in self._packages.values():
            if package.deleted_at:
                continue
            is_owner = user_id is not None and package.uid == user_id
            if not is_owner and not (package.is_public and package.status == PackageStatus.PUBLISHED):
                continue
            if tags and not set(tags) & set(package.tags):
                continue
            visible.append(package.model_copy(update={"workflows": []}, deep=True))
        return sorted(visible, key=lambda p: p.download_count, reverse=True)

    async def get(self, skill_id: str, include_workflows: bool = False) -> Optional[SkillPackage]:
        package = self._packages.get(skill_id)
        if package is None or package.deleted_at:
            return None
        if include_workflows:
            return package.model_copy(deep=True)
        return package.model_copy(update={"workflows": []}, deep=True)

    async def increment_download_count(self, skill_id: str) -> None:
        package = self._packages.get(skill_id)
        if package is None:
            raise KeyError(f"Skill package '{skill_id}' not found")
        package.download_count += 1

    def source_canvas_ids(self) -> List[str]:
        """Return the source canvas ids referenced by live packages."""
        return [
            workflow.source_canvas_id
            for package in self._packages.values()
            if not package.deleted_at
            for workflow in package.workflows
            if workflow.source_canvas_id
        ]

    def __len__(self) -> int:
        """Return the number of registered packages, deleted ones included."""
        return len(self._packages)
