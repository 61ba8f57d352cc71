"""Project/asset authorization checks backed by the ownership tables."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Optional

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.project import Project, ProjectAccess
from models.project_asset import ProjectAsset
from models.user import User
from services.errors import AuthorizationError, NotFoundError
from services.storage import output_directory
from services.token_verifier import VerifiedIdentity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceRef:
    kind: Literal["project", "asset"]
    id: str


def _accessible_project_ids(user_id: str):
    """Select project ids the user owns or holds an unexpired grant for."""
    now = datetime.now(timezone.utc)
    granted = select(ProjectAccess.project_id).where(
        ProjectAccess.user_id == user_id,
        or_(ProjectAccess.expires_at.is_(None), ProjectAccess.expires_at > now),
    )
    return select(Project.id).where(
        or_(Project.owner_id == user_id, Project.id.in_(granted))
    )


def _note_unverified(identity: VerifiedIdentity, resource: ResourceRef) -> None:
    if not identity.verified_by_signature:
        logger.warning(
            "Access check for %s %s uses a claims-only identity (subject=%s)",
            resource.kind,
            resource.id,
            identity.subject,
        )


async def check_access(db: AsyncSession, identity: VerifiedIdentity, resource: ResourceRef) -> bool:
    """Return whether ``identity`` may read/write ``resource``."""
    _note_unverified(identity, resource)
    if resource.kind == "project":
        result = await db.execute(
            select(Project.id).where(
                Project.id == resource.id,
                Project.id.in_(_accessible_project_ids(identity.subject)),
            )
        )
    elif resource.kind == "asset":
        result = await db.execute(
            select(ProjectAsset.id).where(
                ProjectAsset.id == resource.id,
                ProjectAsset.project_id.in_(_accessible_project_ids(identity.subject)),
            )
        )
    else:
        return False
    return result.scalar_one_or_none() is not None


async def require_project_access(db: AsyncSession, identity: VerifiedIdentity, project_id: str) -> None:
    """Raise NotFoundError unless the caller may use the project.

    Inaccessible and missing projects are reported identically.
    """
    if not await check_access(db, identity, ResourceRef("project", project_id)):
        raise NotFoundError("Project not found")


async def get_accessible_asset(
    db: AsyncSession,
    identity: VerifiedIdentity,
    asset_id: str,
    project_id: Optional[str] = None,
) -> ProjectAsset:
    """Load an asset the caller may access; missing and forbidden both 404."""
    resource = ResourceRef("asset", asset_id)
    _note_unverified(identity, resource)
    query = select(ProjectAsset).where(
        ProjectAsset.id == asset_id,
        ProjectAsset.project_id.in_(_accessible_project_ids(identity.subject)),
    )
    if project_id is not None:
        query = query.where(ProjectAsset.project_id == project_id)
    result = await db.execute(query)
    asset = result.scalar_one_or_none()
    if asset is None:
        raise NotFoundError("Asset not found")
    return asset


async def find_servable_asset(
    db: AsyncSession,
    identity: VerifiedIdentity,
    project_id: str,
    object_key: str,
) -> ProjectAsset:
    """Find the completed asset in an accessible project that owns ``object_key``.

    Matches the raw key, the final key, or any key under a multi-file output's
    directory (tileset children).
    """
    _note_unverified(identity, ResourceRef("project", project_id))
    result = await db.execute(
        select(ProjectAsset).where(
            ProjectAsset.project_id == project_id,
            ProjectAsset.project_id.in_(_accessible_project_ids(identity.subject)),
            ProjectAsset.processing_status == "completed",
            or_(ProjectAsset.asset_key == object_key, ProjectAsset.final_key == object_key),
        )
    )
    asset = result.scalars().first()
    if asset is not None:
        return asset

    if "/" in object_key:
        candidates = await db.execute(
            select(ProjectAsset).where(
                ProjectAsset.project_id == project_id,
                ProjectAsset.project_id.in_(_accessible_project_ids(identity.subject)),
                ProjectAsset.processing_status == "completed",
                ProjectAsset.final_key.is_not(None),
            )
        )
        for candidate in candidates.scalars().all():
            directory = output_directory(candidate.final_key, candidate.asset_type)
            if directory and object_key.startswith(directory):
                return candidate

    raise NotFoundError("Asset not found")


async def is_owner(db: AsyncSession, user_id: str) -> bool:
    result = await db.execute(select(User.role).where(User.id == user_id))
    return result.scalar_one_or_none() == "owner"


async def require_owner(db: AsyncSession, identity: VerifiedIdentity) -> None:
    if not await is_owner(db, identity.subject):
        raise AuthorizationError("Only the platform owner may perform this operation.")
