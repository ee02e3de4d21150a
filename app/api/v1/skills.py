"""Skill package endpoints.

Provides endpoints for browsing skill packages and for managing the
requesting user's installations: download, initialize, upgrade, uninstall,
and paginated listing.

Domain errors (``SkillInstallationError``) propagate to the application's
exception handler, which maps their codes to HTTP statuses.
"""

from typing import (
    List,
    Optional,
)

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    Request,
)

from app.api.v1.deps import (
    get_current_user,
    get_installation_service,
    get_registry,
)
from app.core.config import settings
from app.core.limiter import limiter
from app.core.logging import logger
from app.core.skills.errors import (
    InstallationNotFoundError,
    SkillInstallationError,
)
from app.core.skills.installer import SkillInstallationService
from app.core.skills.registry import (
    SkillPackageRegistry,
    can_access,
)
from app.core.skills.schema import (
    InstallationStatus,
    User,
)
from app.schemas.skill import (
    InstallationListResponse,
    InstallationResponse,
    InstalledResponse,
    InstallRequest,
    PackageListResponse,
    PackageResponse,
)

router = APIRouter()


# ─── Packages ────────────────────────────────────────────────────


@router.get("/packages", response_model=PackageListResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["query"][0])
async def list_packages(
    request: Request,
    tags: Optional[List[str]] = Query(default=None),
    user: User = Depends(get_current_user),
    registry: SkillPackageRegistry = Depends(get_registry),
):
    """List skill packages visible to the current user.

    Args:
        request: The FastAPI request object for rate limiting.
        tags: Only return packages carrying at least one of these tags.
        user: The requesting user.
        registry: The skill package registry.

    Returns:
        PackageListResponse: Visible packages, most downloaded first.
    """
    try:
        packages = registry.list_packages(user_id=user.uid, tags=tags)
        return PackageListResponse(
            packages=[PackageResponse.from_package(p) for p in packages],
            total=len(packages),
        )
    except Exception as e:
        logger.exception("list_skill_packages_failed", uid=user.uid, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/packages/{skill_id}", response_model=PackageResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["query"][0])
async def get_package(
    request: Request,
    skill_id: str,
    share_id: Optional[str] = Query(default=None),
    user: User = Depends(get_current_user),
    registry: SkillPackageRegistry = Depends(get_registry),
):
    """Get a skill package with its workflow templates.

    Args:
        request: The FastAPI request object for rate limiting.
        skill_id: The package id.
        share_id: Share id granting access to a private package.
        user: The requesting user.
        registry: The skill package registry.

    Returns:
        PackageResponse: The package details.
    """
    try:
        package = await registry.get(skill_id, include_workflows=True)
        if not package:
            raise HTTPException(status_code=404, detail="Skill package not found")

        if not can_access(package, user.uid, share_id):
            raise HTTPException(status_code=403, detail="Access denied")

        return PackageResponse.from_package(package)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("get_skill_package_failed", skill_id=skill_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


# ─── Installations ───────────────────────────────────────────────


@router.post("/installations/download", response_model=InstallationResponse, status_code=201)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["install"][0])
async def download_package(
    request: Request,
    body: InstallRequest,
    user: User = Depends(get_current_user),
    service: SkillInstallationService = Depends(get_installation_service),
):
    """Create an installation with every workflow pending.

    Args:
        request: The FastAPI request object for rate limiting.
        body: The package to download.
        user: The requesting user.
        service: The installation service.

    Returns:
        InstallationResponse: The installation in ``downloaded`` status.
    """
    try:
        installation = await service.download(user, body.skill_id, share_id=body.share_id)
        return InstallationResponse.from_installation(installation)
    except SkillInstallationError:
        raise
    except Exception as e:
        logger.exception("download_skill_package_failed", skill_id=body.skill_id, uid=user.uid, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/installations/install", response_model=InstallationResponse, status_code=201)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["install"][0])
async def install_package(
    request: Request,
    body: InstallRequest,
    user: User = Depends(get_current_user),
    service: SkillInstallationService = Depends(get_installation_service),
):
    """Download and initialize a package in one call.

    The response status may be ``partial_failed`` or ``failed``; inspect
    ``status`` and the mapping entries for per-workflow errors.
    """
    try:
        installation = await service.install(user, body.skill_id, share_id=body.share_id)
        return InstallationResponse.from_installation(installation)
    except SkillInstallationError:
        raise
    except Exception as e:
        logger.exception("install_skill_package_failed", skill_id=body.skill_id, uid=user.uid, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/installations/{installation_id}/initialize", response_model=InstallationResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["install"][0])
async def initialize_installation(
    request: Request,
    installation_id: str,
    user: User = Depends(get_current_user),
    service: SkillInstallationService = Depends(get_installation_service),
):
    """Materialize the workflows of an installation that are not ready yet."""
    try:
        installation = await service.initialize(user, installation_id)
        return InstallationResponse.from_installation(installation)
    except SkillInstallationError:
        raise
    except Exception as e:
        logger.exception("initialize_installation_failed", installation_id=installation_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/installations/{installation_id}/upgrade", response_model=InstallationResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["install"][0])
async def upgrade_installation(
    request: Request,
    installation_id: str,
    user: User = Depends(get_current_user),
    service: SkillInstallationService = Depends(get_installation_service),
):
    """Re-install an installation against the package's latest version."""
    try:
        installation = await service.upgrade(user, installation_id)
        return InstallationResponse.from_installation(installation)
    except SkillInstallationError:
        raise
    except Exception as e:
        logger.exception("upgrade_installation_failed", installation_id=installation_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/installations/{installation_id}/check-update", response_model=InstallationResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["query"][0])
async def check_installation_update(
    request: Request,
    installation_id: str,
    user: User = Depends(get_current_user),
    service: SkillInstallationService = Depends(get_installation_service),
):
    """Record whether a newer package version is available."""
    try:
        installation = await service.check_for_update(user, installation_id)
        return InstallationResponse.from_installation(installation)
    except SkillInstallationError:
        raise
    except Exception as e:
        logger.exception("check_installation_update_failed", installation_id=installation_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.delete("/installations/{installation_id}")
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["install"][0])
async def uninstall(
    request: Request,
    installation_id: str,
    delete_workflows: bool = Query(default=False),
    user: User = Depends(get_current_user),
    service: SkillInstallationService = Depends(get_installation_service),
):
    """Uninstall a skill package.

    Args:
        request: The FastAPI request object for rate limiting.
        installation_id: The installation to remove.
        delete_workflows: Also delete the workflows it materialized.
        user: The requesting user.
        service: The installation service.

    Returns:
        dict: Confirmation message.
    """
    try:
        await service.uninstall(user, installation_id, delete_workflows=delete_workflows)
        return {"message": f"Installation {installation_id} uninstalled"}
    except SkillInstallationError:
        raise
    except Exception as e:
        logger.exception("uninstall_failed", installation_id=installation_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/installations", response_model=InstallationListResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["query"][0])
async def list_installations(
    request: Request,
    page: int = Query(default=1),
    page_size: int = Query(default=settings.INSTALLATION_PAGE_SIZE_DEFAULT),
    status: Optional[InstallationStatus] = Query(default=None),
    user: User = Depends(get_current_user),
    service: SkillInstallationService = Depends(get_installation_service),
):
    """List the current user's installations, newest first.

    Out-of-range ``page`` and ``page_size`` values are clamped rather than
    rejected.
    """
    try:
        result = await service.list_installations(user, status=status, page=page, page_size=page_size)
        return InstallationListResponse(
            installations=[
                InstallationResponse.from_installation(item.installation, item.package) for item in result.items
            ],
            total=result.total,
            page=result.page,
            page_size=result.page_size,
            has_more=result.has_more,
        )
    except Exception as e:
        logger.exception("list_installations_failed", uid=user.uid, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/installations/{installation_id}", response_model=InstallationResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["query"][0])
async def get_installation(
    request: Request,
    installation_id: str,
    user: User = Depends(get_current_user),
    service: SkillInstallationService = Depends(get_installation_service),
):
    """Get one of the current user's installations."""
    try:
        installation = await service.get_installation(user, installation_id)
        if installation is None:
            raise InstallationNotFoundError(installation_id)
        return InstallationResponse.from_installation(installation)
    except SkillInstallationError:
        raise
    except Exception as e:
        logger.exception("get_installation_failed", installation_id=installation_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/installed/{skill_id}", response_model=InstalledResponse)
@limiter.limit(settings.RATE_LIMIT_ENDPOINTS["query"][0])
async def is_installed(
    request: Request,
    skill_id: str,
    user: User = Depends(get_current_user),
    service: SkillInstallationService = Depends(get_installation_service),
):
    """Check whether the current user has installed a package."""
    try:
        installed = await service.is_installed(user, skill_id)
        return InstalledResponse(skill_id=skill_id, installed=installed)
    except Exception as e:
        logger.exception("is_installed_check_failed", skill_id=skill_id, uid=user.uid, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))
