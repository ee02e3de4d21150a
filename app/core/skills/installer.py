"""Skill installation lifecycle.

``SkillInstallationService`` turns a skill package into a per-user set of
materialized workflows and keeps that set consistent across download,
initialize, upgrade and uninstall.

Mutating operations are serialized per installation (and per user/package for
download) with single-flight locks, so two concurrent initialize calls can
no longer overwrite each other's mapping.
"""

import asyncio
from datetime import datetime
from typing import (
    Optional,
    Tuple,
)

from packaging.version import (
    InvalidVersion,
    Version,
)

from app.core.logging import logger
from app.core.skills.errors import (
    AccessDeniedError,
    AlreadyInstalledError,
    InstallationNotFoundError,
    InvalidStateTransitionError,
    PackageNotFoundError,
)
from app.core.skills.locks import KeyedLock
from app.core.skills.mapping import (
    INITIALIZABLE_STATUSES,
    UPGRADABLE_STATUSES,
    aggregate_status,
    build_pending_mapping,
    copy_mapping,
    count_by_status,
    failed_entry,
    first_error,
    ready_entry,
    ready_workflow_ids,
    reconcile_mapping,
)
from app.core.skills.materializer import (
    WorkflowMaterializer,
    WorkflowStore,
)
from app.core.skills.registry import can_access
from app.core.skills.repository import (
    InstallationRepository,
    PackageRepository,
)
from app.core.skills.resolver import resolve
from app.core.skills.schema import (
    Installation,
    InstallationListItem,
    InstallationPage,
    InstallationStatus,
    SkillPackage,
    User,
    WorkflowDefinition,
    WorkflowMappingEntry,
    WorkflowMappingStatus,
)
from app.core.skills.side_effects import run_best_effort

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def normalize_pagination(
    page: Optional[int],
    page_size: Optional[int],
    default_page_size: int = DEFAULT_PAGE_SIZE,
    max_page_size: int = MAX_PAGE_SIZE,
) -> Tuple[int, int]:
    """Clamp pagination input to a positive page and a bounded page size."""
    safe_page = page if page and page > 0 else 1
    safe_page_size = page_size if page_size and page_size > 0 else default_page_size
    return safe_page, min(safe_page_size, max_page_size)


def is_newer_version(available: str, installed: Optional[str]) -> bool:
    """Return True if ``available`` is a later release than ``installed``.

    Versions are compared as PEP 440 versions. When either side does not
    parse, any difference counts as an update.
    """
    if not installed:
        return True
    try:
        return Version(available) > Version(installed)
    except InvalidVersion:
        return available != installed


class SkillInstallationService:
    """Orchestrates the installation lifecycle of skill packages.

    Callers must inspect the returned installation's ``status``: a call that
    does not raise may still leave some workflows ``failed``.
    """

    def __init__(
        self,
        packages: PackageRepository,
        installations: InstallationRepository,
        materializer: WorkflowMaterializer,
        workflow_store: WorkflowStore,
        materialize_timeout: Optional[float] = 300.0,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ):
        """Initialize the service.

        Args:
            packages: Source of skill packages.
            installations: Installation persistence.
            materializer: Produces user-owned workflows.
            workflow_store: Used to delete materialized workflows.
            materialize_timeout: Seconds allowed per workflow; None disables the limit.
            default_page_size: Page size when the caller gives none.
            max_page_size: Upper bound for the page size.
        """
        self._packages = packages
        self._installations = installations
        self._materializer = materializer
        self._workflow_store = workflow_store
        self._materialize_timeout = materialize_timeout
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size
        self._locks = KeyedLock()

    # ─── Lifecycle ───────────────────────────────────────────────

    async def download(self, user: User, skill_id: str, share_id: Optional[str] = None) -> Installation:
        """Create (or resurrect) an installation with every workflow pending.

        Args:
            user: The installing user.
            skill_id: The package to install.
            share_id: Share id granting access to a private package.

        Returns:
            Installation: The installation in ``downloaded`` status.

        Raises:
            PackageNotFoundError: If the package does not exist.
            AccessDeniedError: If the user may not install the package.
            AlreadyInstalledError: If a live installation already exists.
        """
        async with self._locks.hold(f"package:{user.uid}:{skill_id}"):
            return await self._download(user, skill_id, share_id)

    async def _download(self, user: User, skill_id: str, share_id: Optional[str]) -> Installation:
        package = await self._get_accessible_package(user, skill_id, share_id)
        mapping = build_pending_mapping(package.workflows)

        existing = await self._installations.find_by_package(skill_id, user.uid, include_deleted=True)
        if existing and not existing.is_deleted:
            raise AlreadyInstalledError(skill_id, existing.installation_id)

        if existing:
            # Resurrect in place so records referencing this id stay valid
            existing.deleted_at = None
            existing.status = InstallationStatus.DOWNLOADED
            existing.workflow_mapping = mapping
            existing.installed_version = package.version
            existing.has_update = False
            existing.available_version = None
            existing.error_message = None
            installation = await self._installations.update(existing)
            logger.info(
                "skill_installation_restored",
                installation_id=installation.installation_id,
                skill_id=skill_id,
                uid=user.uid,
            )
        else:
            installation = await self._installations.create(
                Installation(
                    skill_id=skill_id,
                    uid=user.uid,
                    status=InstallationStatus.DOWNLOADED,
                    workflow_mapping=mapping,
                    installed_version=package.version,
                )
            )

        await run_best_effort(
            "skill_package_download_count_increment",
            lambda: self._packages.increment_download_count(skill_id),
            skill_id=skill_id,
        )

        logger.info(
            "skill_downloaded",
            installation_id=installation.installation_id,
            skill_id=skill_id,
            uid=user.uid,
            workflow_count=len(mapping),
        )
        return installation

    async def install(self, user: User, skill_id: str, share_id: Optional[str] = None) -> Installation:
        """Download a package and initialize it in one call."""
        installation = await self.download(user, skill_id, share_id)
        return await self.initialize(user, installation.installation_id)

    async def initialize(self, user: User, installation_id: str) -> Installation:
        """Materialize every workflow that is not ready yet.

        Re-entrant: already-ready entries are skipped, so calling this again
        after a partial failure retries only what failed.

        Args:
            user: The owning user.
            installation_id: The installation to initialize.

        Returns:
            Installation: The installation with its aggregate status.

        Raises:
            InstallationNotFoundError: If the user has no such live installation.
            InvalidStateTransitionError: If the status does not allow initializing.
            CircularDependencyError: If the package's dependencies contain a cycle.
            MissingDependencyError: If a dependency is not part of the package.
        """
        async with self._locks.hold(f"installation:{installation_id}"):
            return await self._initialize(user, installation_id)

    async def _initialize(self, user: User, installation_id: str) -> Installation:
        installation = await self._get_installation_or_raise(installation_id, user.uid)

        if installation.status == InstallationStatus.READY:
            logger.info("skill_installation_already_ready", installation_id=installation_id)
            return installation
        if installation.status not in INITIALIZABLE_STATUSES:
            raise InvalidStateTransitionError(installation_id, installation.status.value, "initialize")

        installation.status = InstallationStatus.INITIALIZING
        installation = await self._installations.update(installation)

        package = await self._packages.get(installation.skill_id, include_workflows=True)
        if package is None:
            raise PackageNotFoundError(installation.skill_id)

        # Structural errors abort here, before any workflow is materialized
        ordered = resolve(package.workflows, skill_id=package.skill_id)

        mapping = reconcile_mapping(installation.workflow_mapping, package.workflows)
        attempted = 0
        for workflow in ordered:
            if mapping[workflow.skill_workflow_id].status == WorkflowMappingStatus.READY:
                continue
            attempted += 1
            mapping[workflow.skill_workflow_id] = await self._materialize(user, workflow, installation_id)

        installation.workflow_mapping = mapping
        installation.status = aggregate_status(mapping)
        installation.error_message = first_error(mapping)
        installation = await self._installations.update(installation)

        counts = count_by_status(mapping)
        logger.info(
            "skill_installation_initialized",
            installation_id=installation_id,
            skill_id=installation.skill_id,
            status=installation.status.value,
            attempted=attempted,
            ready=counts[WorkflowMappingStatus.READY],
            failed=counts[WorkflowMappingStatus.FAILED],
        )
        return installation

    async def _materialize(self, user: User, workflow: WorkflowDefinition, installation_id: str) -> WorkflowMappingEntry:
        """Materialize one workflow, converting any failure into a failed entry."""
        try:
            call = self._materializer.materialize(
                user,
                workflow.source_canvas_id,
                workflow.name,
                workflow.description,
            )
            if self._materialize_timeout is not None:
                workflow_id = await asyncio.wait_for(call, timeout=self._materialize_timeout)
            else:
                workflow_id = await call
        except asyncio.TimeoutError as e:
            if self._materialize_timeout is None:
                return self._failed_entry(workflow, installation_id, e)
            message = f'Timed out after {self._materialize_timeout}s materializing workflow "{workflow.name}"'
            logger.error(
                "skill_workflow_materialize_timeout",
                installation_id=installation_id,
                skill_workflow_id=workflow.skill_workflow_id,
                timeout=self._materialize_timeout,
            )
            return failed_entry(message)
        except Exception as e:
            return self._failed_entry(workflow, installation_id, e)

        logger.info(
            "skill_workflow_materialized",
            installation_id=installation_id,
            skill_workflow_id=workflow.skill_workflow_id,
            workflow_id=workflow_id,
        )
        return ready_entry(workflow_id)

    @staticmethod
    def _failed_entry(workflow: WorkflowDefinition, installation_id: str, error: Exception) -> WorkflowMappingEntry:
        # Materializers log the traceback themselves
        message = str(error) or error.__class__.__name__
        logger.error(
            "skill_workflow_materialize_failed",
            installation_id=installation_id,
            skill_workflow_id=workflow.skill_workflow_id,
            error=message,
        )
        return failed_entry(message)

    async def uninstall(self, user: User, installation_id: str, delete_workflows: bool = False) -> None:
        """Soft-delete an installation.

        Args:
            user: The owning user.
            installation_id: The installation to remove.
            delete_workflows: Also delete every materialized workflow (best-effort).

        Raises:
            InstallationNotFoundError: If the user has no such live installation.
        """
        async with self._locks.hold(f"installation:{installation_id}"):
            installation = await self._get_installation_or_raise(installation_id, user.uid)

            if delete_workflows:
                await self._delete_workflows(installation.workflow_mapping, installation_id)

            installation.deleted_at = datetime.utcnow()
            await self._installations.update(installation)

        logger.info(
            "skill_uninstalled",
            installation_id=installation_id,
            skill_id=installation.skill_id,
            delete_workflows=delete_workflows,
        )

    async def upgrade(self, user: User, installation_id: str) -> Installation:
        """Re-install an installation against the package's latest version.

        The current mapping is snapshotted first. If re-initialization raises,
        status and mapping are restored from the snapshot and the error is
        re-raised. A ``partial_failed`` or ``failed`` result is returned as is.

        Args:
            user: The owning user.
            installation_id: The installation to upgrade.

        Returns:
            Installation: The re-initialized installation.

        Raises:
            InstallationNotFoundError: If the user has no such live installation.
            InvalidStateTransitionError: If the installation is not ready or partial_failed.
            PackageNotFoundError: If the package no longer exists.
        """
        async with self._locks.hold(f"installation:{installation_id}"):
            installation = await self._get_installation_or_raise(installation_id, user.uid)
            if installation.status not in UPGRADABLE_STATUSES:
                raise InvalidStateTransitionError(installation_id, installation.status.value, "upgrade")

            package = await self._packages.get(installation.skill_id, include_workflows=True)
            if package is None:
                raise PackageNotFoundError(installation.skill_id)

            previous_status = installation.status
            previous_mapping = copy_mapping(installation.workflow_mapping)

            installation.status = InstallationStatus.INITIALIZING
            installation.workflow_mapping = build_pending_mapping(package.workflows)
            installation = await self._installations.update(installation)

            try:
                result = await self._initialize(user, installation_id)
            except (Exception, asyncio.CancelledError) as e:
                # A cancelled upgrade must restore the snapshot too
                logger.exception(
                    "skill_installation_upgrade_failed",
                    installation_id=installation_id,
                    restored_status=previous_status.value,
                    error=str(e) or e.__class__.__name__,
                )
                installation.status = previous_status
                installation.workflow_mapping = previous_mapping
                await self._installations.update(installation)
                raise

            if result.status == InstallationStatus.READY:
                await self._delete_workflows(previous_mapping, installation_id)
                result.installed_version = package.version
                result.has_update = False
                result.available_version = None
                result = await self._installations.update(result)

        logger.info(
            "skill_installation_upgraded",
            installation_id=installation_id,
            status=result.status.value,
            installed_version=result.installed_version,
        )
        return result

    async def check_for_update(self, user: User, installation_id: str) -> Installation:
        """Record whether the package has a newer version than the installed one."""
        async with self._locks.hold(f"installation:{installation_id}"):
            installation = await self._get_installation_or_raise(installation_id, user.uid)
            package = await self._packages.get(installation.skill_id)
            if package is None:
                raise PackageNotFoundError(installation.skill_id)

            has_update = is_newer_version(package.version, installation.installed_version)
            installation.has_update = has_update
            installation.available_version = package.version if has_update else None
            installation = await self._installations.update(installation)

        logger.info(
            "skill_installation_update_checked",
            installation_id=installation_id,
            installed_version=installation.installed_version,
            available_version=installation.available_version,
        )
        return installation

    # ─── Queries ─────────────────────────────────────────────────

    async def get_installation(self, user: User, installation_id: str) -> Optional[Installation]:
        """Get a live installation owned by the user, or None."""
        installation = await self._installations.find(installation_id)
        if installation is None or installation.uid != user.uid:
            return None
        return installation

    async def list_installations(
        self,
        user: User,
        status: Optional[InstallationStatus] = None,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
    ) -> InstallationPage:
        """List the user's live installations, newest first.

        Args:
            user: The owning user.
            status: Optional status filter.
            page: 1-based page number.
            page_size: Items per page, capped at the configured maximum.

        Returns:
            InstallationPage: The page, each item with its package summary.
        """
        page, page_size = normalize_pagination(page, page_size, self._default_page_size, self._max_page_size)
        offset = (page - 1) * page_size

        installations = await self._installations.list_by_user(user.uid, status=status, offset=offset, limit=page_size)
        total = await self._installations.count_by_user(user.uid, status=status)

        items = []
        for installation in installations:
            package = await self._packages.get(installation.skill_id)
            items.append(InstallationListItem(installation=installation, package=package))

        return InstallationPage(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            has_more=offset + len(items) < total,
        )

    async def is_installed(self, user: User, skill_id: str) -> bool:
        """Return True if the user has a live installation of the package."""
        installation = await self._installations.find_by_package(skill_id, user.uid)
        return installation is not None

    # ─── Helpers ─────────────────────────────────────────────────

    async def _get_accessible_package(self, user: User, skill_id: str, share_id: Optional[str]) -> SkillPackage:
        package = await self._packages.get(skill_id, include_workflows=True)
        if package is None:
            raise PackageNotFoundError(skill_id)
        if not can_access(package, user.uid, share_id):
            raise AccessDeniedError(skill_id)
        return package

    async def _get_installation_or_raise(self, installation_id: str, uid: str) -> Installation:
        installation = await self._installations.find(installation_id)
        if installation is None or installation.uid != uid:
            raise InstallationNotFoundError(installation_id)
        return installation

    async def _delete_workflows(self, mapping, installation_id: str) -> None:
        """Best-effort delete of every ready workflow in a mapping."""
        for workflow_id in ready_workflow_ids(mapping):
            await run_best_effort(
                "skill_workflow_delete",
                lambda workflow_id=workflow_id: self._workflow_store.delete(workflow_id),
                installation_id=installation_id,
                workflow_id=workflow_id,
            )
