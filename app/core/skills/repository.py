"""Persistence interfaces for skill packages and installations."""

from abc import (
    ABC,
    abstractmethod,
)
from datetime import datetime
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from app.core.logging import logger
from app.core.skills.mapping import (
    mapping_from_json,
    mapping_to_json,
)
from app.core.skills.schema import (
    Installation,
    InstallationStatus,
    SkillPackage,
)


class PackageRepository(ABC):
    """Read access to skill packages."""

    @abstractmethod
    async def get(self, skill_id: str, include_workflows: bool = False) -> Optional[SkillPackage]:
        """Get a non-deleted package.

        Args:
            skill_id: The package id.
            include_workflows: Whether to include workflow definitions in order.

        Returns:
            Optional[SkillPackage]: The package, or None if it does not exist.
        """

    @abstractmethod
    async def increment_download_count(self, skill_id: str) -> None:
        """Increment the package's download counter."""


class InstallationRepository(ABC):
    """CRUD on installation records.

    ``update`` replaces the whole record, including the embedded workflow
    mapping, in one atomic write.
    """

    @abstractmethod
    async def find(self, installation_id: str, include_deleted: bool = False) -> Optional[Installation]:
        """Find an installation by id."""

    @abstractmethod
    async def find_by_package(
        self, skill_id: str, uid: str, include_deleted: bool = False
    ) -> Optional[Installation]:
        """Find the installation of a package for a user."""

    @abstractmethod
    async def create(self, installation: Installation) -> Installation:
        """Insert a new installation."""

    @abstractmethod
    async def update(self, installation: Installation) -> Installation:
        """Replace an existing installation record."""

    @abstractmethod
    async def list_by_user(
        self,
        uid: str,
        status: Optional[InstallationStatus] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> List[Installation]:
        """List a user's live installations, newest first."""

    @abstractmethod
    async def count_by_user(self, uid: str, status: Optional[InstallationStatus] = None) -> int:
        """Count a user's live installations."""


class InMemoryInstallationRepository(InstallationRepository):
    """Installation repository backed by a dict of serialized rows.

    Rows keep the workflow mapping as a JSON string, the same layout as the
    relational table, so callers always get detached copies.
    """

    def __init__(self):
        """Initialize an empty repository."""
        self._rows: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def _to_row(installation: Installation) -> Dict[str, Any]:
        row = installation.model_dump(exclude={"workflow_mapping"})
        row["workflow_mapping"] = mapping_to_json(installation.workflow_mapping)
        return row

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> Installation:
        data = dict(row)
        data["workflow_mapping"] = mapping_from_json(data.get("workflow_mapping"))
        return Installation.model_validate(data)

    async def find(self, installation_id: str, include_deleted: bool = False) -> Optional[Installation]:
        row = self._rows.get(installation_id)
        if row is None or (row["deleted_at"] is not None and not include_deleted):
            return None
        return self._from_row(row)

    async def find_by_package(
        self, skill_id: str, uid: str, include_deleted: bool = False
    ) -> Optional[Installation]:
        for row in self._rows.values():
            if row["skill_id"] != skill_id or row["uid"] != uid:
                continue
            if row["deleted_at"] is not None and not include_deleted:
                continue
            return self._from_row(row)
        return None

    async def create(self, installation: Installation) -> Installation:
        if installation.installation_id in self._rows:
            raise ValueError(f"Installation '{installation.installation_id}' already exists")
        self._rows[installation.installation_id] = self._to_row(installation)
        logger.debug("installation_row_created", installation_id=installation.installation_id)
        return self._from_row(self._rows[installation.installation_id])

    async def update(self, installation: Installation) -> Installation:
        if installation.installation_id not in self._rows:
            raise KeyError(f"Installation '{installation.installation_id}' not found")
        installation.updated_at = datetime.utcnow()
        self._rows[installation.installation_id] = self._to_row(installation)
        logger.debug(
            "installation_row_updated",
            installation_id=installation.installation_id,
            status=installation.status.value,
        )
        return self._from_row(self._rows[installation.installation_id])

    def _live_rows(self, uid: str, status: Optional[InstallationStatus]) -> List[Dict[str, Any]]:
        return [
            row
            for row in self._rows.values()
            if row["uid"] == uid
            and row["deleted_at"] is None
            and (status is None or row["status"] == status)
        ]

    async def list_by_user(
        self,
        uid: str,
        status: Optional[InstallationStatus] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> List[Installation]:
        rows = sorted(self._live_rows(uid, status), key=lambda r: r["created_at"], reverse=True)
        return [self._from_row(row) for row in rows[offset : offset + limit]]

    async def count_by_user(self, uid: str, status: Optional[InstallationStatus] = None) -> int:
        return len(self._live_rows(uid, status))
