"""This file contains the schemas for the application."""

from app.schemas.skill import (
    InstallationListResponse,
    InstallationResponse,
    InstalledResponse,
    InstallRequest,
    PackageListResponse,
    PackageResponse,
)

__all__ = [
    "InstallRequest",
    "InstallationResponse",
    "InstallationListResponse",
    "InstalledResponse",
    "PackageResponse",
    "PackageListResponse",
]
