"""Unit tests for the SkillInstallationService lifecycle."""

import asyncio
from unittest.mock import (
    AsyncMock,
    patch,
)

import pytest

from app.core.skills.errors import (
    AccessDeniedError,
    AlreadyInstalledError,
    CircularDependencyError,
    InstallationNotFoundError,
    InvalidStateTransitionError,
    PackageNotFoundError,
)
from app.core.skills.installer import (
    SkillInstallationService,
    is_newer_version,
    normalize_pagination,
)
from app.core.skills.mapping import copy_mapping
from app.core.skills.materializer import (
    CloneMaterializer,
    WorkflowMaterializer,
    WorkflowStore,
)
from app.core.skills.schema import (
    InstallationStatus,
    User,
    WorkflowMappingStatus,
)


def _service(registry, installations, materializer, store=None, timeout=5):
    return SkillInstallationService(
        packages=registry,
        installations=installations,
        materializer=materializer,
        workflow_store=store or AsyncMock(spec=WorkflowStore),
        materialize_timeout=timeout,
    )


class TestDownload:
    """Tests for creating installations."""

    @pytest.mark.asyncio
    async def test_download_creates_pending_installation(self, service, registry, user):
        """Test download creates a downloaded installation with all-pending mapping."""
        installation = await service.download(user, "abc")

        assert installation.status == InstallationStatus.DOWNLOADED
        assert installation.uid == user.uid
        assert installation.installed_version == "1.0.0"
        assert installation.installation_id.startswith("skpi-")
        assert set(installation.workflow_mapping) == {"A", "B", "C"}
        assert all(e.status == WorkflowMappingStatus.PENDING for e in installation.workflow_mapping.values())

        package = await registry.get("abc")
        assert package.download_count == 1

    @pytest.mark.asyncio
    async def test_download_twice_raises(self, service, user):
        """Test a second download of a live installation raises AlreadyInstalledError."""
        first = await service.download(user, "abc")

        with pytest.raises(AlreadyInstalledError) as exc_info:
            await service.download(user, "abc")
        assert exc_info.value.details["installation_id"] == first.installation_id

    @pytest.mark.asyncio
    async def test_download_unknown_package(self, service, user):
        """Test downloading a missing package raises PackageNotFoundError."""
        with pytest.raises(PackageNotFoundError):
            await service.download(user, "nope")

    @pytest.mark.asyncio
    async def test_private_package_requires_share_id(self, service, user):
        """Test a private package is only reachable with the right share id."""
        with pytest.raises(AccessDeniedError):
            await service.download(user, "private")
        with pytest.raises(AccessDeniedError):
            await service.download(user, "private", share_id="wrong")

        installation = await service.download(user, "private", share_id="share-123")
        assert installation.status == InstallationStatus.DOWNLOADED

    @pytest.mark.asyncio
    async def test_owner_can_download_private_package(self, service):
        """Test the package owner needs no share id."""
        installation = await service.download(User(uid="author"), "private")
        assert installation.skill_id == "private"

    @pytest.mark.asyncio
    async def test_download_count_failure_does_not_fail_download(self, service, registry, user):
        """Test a failing download counter is logged and ignored."""
        with patch.object(registry, "increment_download_count", AsyncMock(side_effect=RuntimeError("db down"))):
            installation = await service.download(user, "abc")

        assert installation.status == InstallationStatus.DOWNLOADED

    @pytest.mark.asyncio
    async def test_download_after_uninstall_resurrects(self, service, installations, user):
        """Test download after uninstall reuses the same installation record."""
        first = await service.install(user, "abc")
        await service.uninstall(user, first.installation_id)

        again = await service.download(user, "abc")

        assert again.installation_id == first.installation_id
        assert again.status == InstallationStatus.DOWNLOADED
        assert again.deleted_at is None
        assert all(e.status == WorkflowMappingStatus.PENDING for e in again.workflow_mapping.values())
        assert await installations.count_by_user(user.uid) == 1
        assert len(installations._rows) == 1


class TestInitialize:
    """Tests for materializing installations."""

    @pytest.mark.asyncio
    async def test_install_all_ready(self, service, materializer, user):
        """Test a successful install materializes every workflow in dependency order."""
        installation = await service.install(user, "abc")

        assert installation.status == InstallationStatus.READY
        assert installation.error_message is None
        assert materializer.calls[0] == "A"
        assert sorted(materializer.calls) == ["A", "B", "C"]
        for entry in installation.workflow_mapping.values():
            assert entry.status == WorkflowMappingStatus.READY
            assert entry.workflow_id is not None

    @pytest.mark.asyncio
    async def test_partial_failure(self, service, materializer, user):
        """Test B failing while A and C succeed yields partial_failed."""
        materializer.fail_names = {"B"}

        installation = await service.install(user, "abc")
        mapping = installation.workflow_mapping

        assert installation.status == InstallationStatus.PARTIAL_FAILED
        assert mapping["A"].status == WorkflowMappingStatus.READY
        assert mapping["C"].status == WorkflowMappingStatus.READY
        assert mapping["B"].status == WorkflowMappingStatus.FAILED
        assert mapping["B"].workflow_id is None
        assert "materialize failed for B" in mapping["B"].error
        assert installation.error_message == mapping["B"].error

    @pytest.mark.asyncio
    async def test_all_failed(self, service, materializer, user):
        """Test every workflow failing yields failed."""
        materializer.fail_names = {"A", "B", "C"}

        installation = await service.install(user, "abc")

        assert installation.status == InstallationStatus.FAILED
        assert len(materializer.calls) == 3

    @pytest.mark.asyncio
    async def test_retry_only_failed_entries(self, service, materializer, user):
        """Test re-initializing after a partial failure only retries failed entries."""
        materializer.fail_names = {"B"}
        installation = await service.install(user, "abc")
        a_workflow_id = installation.workflow_mapping["A"].workflow_id

        materializer.fail_names = set()
        materializer.calls.clear()
        retried = await service.initialize(user, installation.installation_id)

        assert materializer.calls == ["B"]
        assert retried.status == InstallationStatus.READY
        assert retried.workflow_mapping["A"].workflow_id == a_workflow_id

    @pytest.mark.asyncio
    async def test_initialize_ready_is_noop(self, service, materializer, user):
        """Test initialize on a ready installation makes no materializer calls."""
        installation = await service.install(user, "abc")
        materializer.calls.clear()

        again = await service.initialize(user, installation.installation_id)

        assert materializer.calls == []
        assert again.status == InstallationStatus.READY
        assert again.workflow_mapping == installation.workflow_mapping

    @pytest.mark.asyncio
    async def test_cycle_aborts_before_materialization(
        self, service, registry, materializer, installations, package_factory, workflow_factory, user
    ):
        """Test a cyclic package raises and leaves the mapping unchanged."""
        registry.register(package_factory("cyclic", [workflow_factory("A", "B"), workflow_factory("B", "A")]))
        installation = await service.download(user, "cyclic")
        before = copy_mapping(installation.workflow_mapping)

        with pytest.raises(CircularDependencyError):
            await service.initialize(user, installation.installation_id)

        stored = await installations.find(installation.installation_id)
        assert materializer.calls == []
        assert stored.workflow_mapping == before
        assert stored.status == InstallationStatus.INITIALIZING

    @pytest.mark.asyncio
    async def test_initialize_resumes_after_package_fix(
        self, service, registry, package_factory, workflow_factory, user
    ):
        """Test an installation stuck in initializing can be initialized again."""
        registry.register(package_factory("cyclic", [workflow_factory("A", "B"), workflow_factory("B", "A")]))
        installation = await service.download(user, "cyclic")
        with pytest.raises(CircularDependencyError):
            await service.initialize(user, installation.installation_id)

        registry.register(package_factory("cyclic", [workflow_factory("A"), workflow_factory("B", "A")]))
        fixed = await service.initialize(user, installation.installation_id)

        assert fixed.status == InstallationStatus.READY

    @pytest.mark.asyncio
    async def test_package_without_workflows_is_ready(self, service, registry, package_factory, user):
        """Test a package with no workflows installs as ready."""
        registry.register(package_factory("empty", []))

        installation = await service.install(user, "empty")

        assert installation.status == InstallationStatus.READY
        assert installation.workflow_mapping == {}

    @pytest.mark.asyncio
    async def test_timeout_is_a_per_workflow_failure(self, registry, installations, materializer, user):
        """Test a materializer that exceeds the timeout fails only its entry."""
        service = _service(registry, installations, materializer, timeout=0.01)
        materializer.delay = 0.2

        installation = await service.install(user, "abc")

        assert installation.status == InstallationStatus.FAILED
        for entry in installation.workflow_mapping.values():
            assert entry.status == WorkflowMappingStatus.FAILED
            assert entry.error.startswith("Timed out after")

    @pytest.mark.asyncio
    async def test_timeout_error_without_limit_is_an_ordinary_failure(self, registry, installations, user):
        """Test a TimeoutError raised by the materializer itself is not reported as our timeout."""
        materializer = AsyncMock(spec=WorkflowMaterializer)
        materializer.materialize.side_effect = asyncio.TimeoutError()
        service = _service(registry, installations, materializer, timeout=None)

        installation = await service.install(user, "abc")

        assert installation.status == InstallationStatus.FAILED
        for entry in installation.workflow_mapping.values():
            assert entry.error == "TimeoutError"
            assert "None" not in entry.error

    @pytest.mark.asyncio
    async def test_missing_source_canvas_fails_only_that_workflow(
        self, registry, installations, workflow_store, package_factory, workflow_factory, user
    ):
        """Test a workflow without a source canvas fails while the others clone."""
        workflow_store.seed("c-A", {"nodes": [{"id": "n1"}]})
        registry.register(
            package_factory("sourceless", [workflow_factory("A"), workflow_factory("B", "A", source=None)])
        )
        service = _service(registry, installations, CloneMaterializer(workflow_store), workflow_store)

        installation = await service.install(user, "sourceless")

        assert installation.status == InstallationStatus.PARTIAL_FAILED
        assert workflow_store.get(installation.workflow_mapping["A"].workflow_id)["uid"] == user.uid
        assert installation.workflow_mapping["B"].error == 'Workflow "B" has no source canvas ID'

    @pytest.mark.asyncio
    async def test_package_removed_before_initialize(self, service, registry, user):
        """Test initializing after the package is deleted raises PackageNotFoundError."""
        installation = await service.download(user, "abc")
        registry.unregister("abc")

        with pytest.raises(PackageNotFoundError):
            await service.initialize(user, installation.installation_id)

    @pytest.mark.asyncio
    async def test_other_user_cannot_initialize(self, service, user):
        """Test initializing someone else's installation raises InstallationNotFoundError."""
        installation = await service.download(user, "abc")

        with pytest.raises(InstallationNotFoundError):
            await service.initialize(User(uid="intruder"), installation.installation_id)

    @pytest.mark.asyncio
    async def test_concurrent_initialize_materializes_once(self, service, materializer, user):
        """Test two concurrent initialize calls do not materialize a workflow twice."""
        materializer.delay = 0.02
        installation = await service.download(user, "abc")

        first, second = await asyncio.gather(
            service.initialize(user, installation.installation_id),
            service.initialize(user, installation.installation_id),
        )

        assert sorted(materializer.calls) == ["A", "B", "C"]
        assert first.status == InstallationStatus.READY
        assert second.workflow_mapping == first.workflow_mapping


class TestUninstall:
    """Tests for removing installations."""

    @pytest.mark.asyncio
    async def test_uninstall_deletes_only_ready_workflows(self, registry, installations, materializer, user):
        """Test delete_workflows issues exactly one delete per ready entry."""
        store = AsyncMock(spec=WorkflowStore)
        service = _service(registry, installations, materializer, store)
        registry.register(
            registry.package_from_dict(
                {
                    "skill_id": "ab",
                    "name": "AB",
                    "version": "1.0.0",
                    "uid": "author",
                    "is_public": True,
                    "workflows": [
                        {"id": "A", "name": "A", "source_canvas_id": "c-A"},
                        {"id": "B", "name": "B", "source_canvas_id": "c-B"},
                    ],
                }
            )
        )
        materializer.fail_names = {"B"}
        installation = await service.install(user, "ab")
        w1 = installation.workflow_mapping["A"].workflow_id

        await service.uninstall(user, installation.installation_id, delete_workflows=True)

        store.delete.assert_awaited_once_with(w1)
        assert await installations.find(installation.installation_id) is None
        assert await installations.find(installation.installation_id, include_deleted=True) is not None

    @pytest.mark.asyncio
    async def test_uninstall_keeps_workflows_by_default(self, registry, installations, materializer, user):
        """Test uninstall without delete_workflows leaves workflows alone."""
        store = AsyncMock(spec=WorkflowStore)
        service = _service(registry, installations, materializer, store)
        installation = await service.install(user, "abc")

        await service.uninstall(user, installation.installation_id)

        store.delete.assert_not_awaited()
        assert not await service.is_installed(user, "abc")

    @pytest.mark.asyncio
    async def test_delete_failures_are_ignored(self, registry, installations, materializer, user):
        """Test a failing workflow delete does not fail the uninstall."""
        store = AsyncMock(spec=WorkflowStore)
        store.delete.side_effect = RuntimeError("store unavailable")
        service = _service(registry, installations, materializer, store)
        installation = await service.install(user, "abc")

        await service.uninstall(user, installation.installation_id, delete_workflows=True)

        assert store.delete.await_count == 3
        assert await installations.find(installation.installation_id) is None

    @pytest.mark.asyncio
    async def test_uninstall_unknown_installation(self, service, user):
        """Test uninstalling a missing installation raises InstallationNotFoundError."""
        with pytest.raises(InstallationNotFoundError):
            await service.uninstall(user, "skpi-missing")


class TestUpgrade:
    """Tests for upgrading installations to a new package version."""

    @pytest.mark.asyncio
    async def test_upgrade_success_replaces_workflows(
        self, registry, installations, materializer, package_factory, workflow_factory, user
    ):
        """Test a ready upgrade deletes old workflows and records the new version."""
        store = AsyncMock(spec=WorkflowStore)
        service = _service(registry, installations, materializer, store)
        installation = await service.install(user, "abc")
        old_ids = sorted(e.workflow_id for e in installation.workflow_mapping.values())

        registry.register(
            package_factory(
                "abc",
                [workflow_factory("A"), workflow_factory("C", "A"), workflow_factory("D", "C")],
                version="2.0.0",
            )
        )
        await service.check_for_update(user, installation.installation_id)
        upgraded = await service.upgrade(user, installation.installation_id)

        assert upgraded.status == InstallationStatus.READY
        assert set(upgraded.workflow_mapping) == {"A", "C", "D"}
        assert upgraded.installed_version == "2.0.0"
        assert upgraded.has_update is False
        assert upgraded.available_version is None
        assert sorted(call.args[0] for call in store.delete.await_args_list) == old_ids

    @pytest.mark.asyncio
    async def test_upgrade_rolls_back_on_error(
        self, service, registry, installations, package_factory, workflow_factory, user
    ):
        """Test a raising re-initialize restores status and mapping verbatim."""
        installation = await service.install(user, "abc")
        snapshot = copy_mapping(installation.workflow_mapping)

        registry.register(
            package_factory("abc", [workflow_factory("A", "B"), workflow_factory("B", "A")], version="2.0.0")
        )
        with pytest.raises(CircularDependencyError):
            await service.upgrade(user, installation.installation_id)

        stored = await installations.find(installation.installation_id)
        assert stored.status == InstallationStatus.READY
        assert stored.workflow_mapping == snapshot
        assert stored.installed_version == "1.0.0"

    @pytest.mark.asyncio
    async def test_upgrade_partial_failure_is_not_rolled_back(
        self, registry, installations, materializer, package_factory, workflow_factory, user
    ):
        """Test a partial_failed upgrade keeps the new mapping and the old workflows."""
        store = AsyncMock(spec=WorkflowStore)
        service = _service(registry, installations, materializer, store)
        installation = await service.install(user, "abc")

        registry.register(
            package_factory(
                "abc",
                [workflow_factory("A"), workflow_factory("B", "A"), workflow_factory("C", "A")],
                version="2.0.0",
            )
        )
        materializer.fail_names = {"B"}
        upgraded = await service.upgrade(user, installation.installation_id)

        assert upgraded.status == InstallationStatus.PARTIAL_FAILED
        assert upgraded.workflow_mapping["A"].workflow_id != installation.workflow_mapping["A"].workflow_id
        assert upgraded.installed_version == "1.0.0"
        store.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_upgrade_requires_ready_or_partial(self, service, user):
        """Test upgrading a downloaded installation raises InvalidStateTransitionError."""
        installation = await service.download(user, "abc")

        with pytest.raises(InvalidStateTransitionError):
            await service.upgrade(user, installation.installation_id)

    @pytest.mark.asyncio
    async def test_cancelled_upgrade_rolls_back(
        self, service, registry, installations, materializer, package_factory, workflow_factory, user
    ):
        """Test cancelling an upgrade mid-materialization restores status and mapping."""
        installation = await service.install(user, "abc")
        snapshot = copy_mapping(installation.workflow_mapping)

        registry.register(package_factory("abc", [workflow_factory("A"), workflow_factory("B", "A")], version="2.0.0"))
        materializer.delay = 0.5
        task = asyncio.create_task(service.upgrade(user, installation.installation_id))
        await asyncio.sleep(0.1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        stored = await installations.find(installation.installation_id)
        assert stored.status == InstallationStatus.READY
        assert stored.workflow_mapping == snapshot
        assert stored.installed_version == "1.0.0"


class TestQueries:
    """Tests for update detection, lookups and listing."""

    @pytest.mark.asyncio
    async def test_check_for_update(self, service, registry, package_factory, workflow_factory, user):
        """Test a newer package version is recorded on the installation."""
        installation = await service.install(user, "abc")

        unchanged = await service.check_for_update(user, installation.installation_id)
        assert unchanged.has_update is False

        registry.register(package_factory("abc", [workflow_factory("A")], version="1.1.0"))
        checked = await service.check_for_update(user, installation.installation_id)

        assert checked.has_update is True
        assert checked.available_version == "1.1.0"

    @pytest.mark.asyncio
    async def test_older_package_version_is_not_an_update(
        self, service, registry, package_factory, workflow_factory, user
    ):
        """Test a package rolled back to an older version reports no update."""
        installation = await service.install(user, "abc")

        registry.register(package_factory("abc", [workflow_factory("A")], version="0.9.0"))
        checked = await service.check_for_update(user, installation.installation_id)

        assert checked.has_update is False
        assert checked.available_version is None

    @pytest.mark.asyncio
    async def test_get_installation_scoped_to_owner(self, service, user):
        """Test another user's installation is invisible."""
        installation = await service.download(user, "abc")

        assert (await service.get_installation(user, installation.installation_id)) is not None
        assert (await service.get_installation(User(uid="other"), installation.installation_id)) is None

    @pytest.mark.asyncio
    async def test_is_installed(self, service, user):
        """Test is_installed reflects live installations only."""
        assert not await service.is_installed(user, "abc")
        installation = await service.download(user, "abc")
        assert await service.is_installed(user, "abc")
        await service.uninstall(user, installation.installation_id)
        assert not await service.is_installed(user, "abc")

    @pytest.mark.asyncio
    async def test_list_installations_paginates_newest_first(
        self, service, registry, package_factory, workflow_factory, user
    ):
        """Test listing returns pages newest first with package summaries."""
        for i in range(3):
            registry.register(package_factory(f"pkg-{i}", [workflow_factory("A")]))
            await service.download(user, f"pkg-{i}")
            await asyncio.sleep(0.001)

        first = await service.list_installations(user, page=1, page_size=2)
        second = await service.list_installations(user, page=2, page_size=2)

        assert first.total == 3
        assert first.has_more is True
        assert [item.installation.skill_id for item in first.items] == ["pkg-2", "pkg-1"]
        assert first.items[0].package.skill_id == "pkg-2"
        assert second.has_more is False
        assert [item.installation.skill_id for item in second.items] == ["pkg-0"]

    @pytest.mark.asyncio
    async def test_list_installations_filters_by_status(self, service, user):
        """Test the status filter."""
        await service.install(user, "abc")
        await service.download(user, "private", share_id="share-123")

        ready = await service.list_installations(user, status=InstallationStatus.READY)
        downloaded = await service.list_installations(user, status=InstallationStatus.DOWNLOADED)

        assert [item.installation.skill_id for item in ready.items] == ["abc"]
        assert [item.installation.skill_id for item in downloaded.items] == ["private"]


class TestNormalizePagination:
    """Tests for pagination clamping."""

    def test_defaults(self):
        """Test missing values fall back to page 1 and the default size."""
        assert normalize_pagination(None, None) == (1, 20)

    def test_clamps(self):
        """Test out-of-range values are clamped."""
        assert normalize_pagination(0, 0) == (1, 20)
        assert normalize_pagination(-3, 500) == (1, 100)
        assert normalize_pagination(4, 10) == (4, 10)


class TestIsNewerVersion:
    """Tests for version comparison in update detection."""

    def test_semantic_ordering(self):
        """Test versions compare numerically, not as strings."""
        assert is_newer_version("1.10.0", "1.9.0")
        assert not is_newer_version("1.9.0", "1.10.0")
        assert not is_newer_version("1.0.0", "1.0.0")

    def test_unparseable_versions_fall_back_to_difference(self):
        """Test non-PEP 440 versions count any change as an update."""
        assert is_newer_version("release-b", "release-a")
        assert not is_newer_version("release-a", "release-a")

    def test_no_installed_version(self):
        """Test an installation without a recorded version always has an update."""
        assert is_newer_version("1.0.0", None)
