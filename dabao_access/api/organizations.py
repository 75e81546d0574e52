"""Organization and project provisioning endpoints."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dabao_access.auth.gate import RequirePermission
from dabao_access.auth.middleware import ConsoleContextDep, RequestContext
from dabao_access.database import get_db
from dabao_access.engine.permissions import Action, ResourceType, Role
from dabao_access.errors import NotFound, Unauthenticated, ValidationError
from dabao_access.schemas.access import (
    CreateOrganizationRequest,
    CreateProjectRequest,
    OrganizationResponse,
    ProjectResponse,
)
from dabao_access.services import ServicesDep
from dabao_access.storage import repositories

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/organizations",
    response_model=OrganizationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_organization(
    body: CreateOrganizationRequest,
    ctx: ConsoleContextDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Create an organization; the caller becomes its owner."""
    if ctx.subject is None:
        # API tokens live inside a project and cannot create organizations
        raise Unauthenticated()
    org = await repositories.create_organization(db, body.name, body.slug, ctx.subject.user_id)
    await db.commit()
    logger.info("User %s created organization %s", ctx.subject.user_id, org.id)
    return OrganizationResponse(id=org.id, name=org.name, slug=org.slug, role=Role.OWNER)


@router.get("/organizations", response_model=list[OrganizationResponse])
async def list_organizations(
    ctx: ConsoleContextDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Organizations the caller belongs to."""
    if ctx.subject is None:
        raise Unauthenticated()
    rows = await repositories.list_user_organizations(db, ctx.subject.user_id)
    return [
        OrganizationResponse(id=org.id, name=org.name, slug=org.slug, role=role)
        for org, role in rows
    ]


@router.post(
    "/organizations/{organization_id}/projects",
    response_model=ProjectResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_project(
    organization_id: str,
    body: CreateProjectRequest,
    ctx: Annotated[
        RequestContext,
        Depends(RequirePermission(ResourceType.PROJECT, Action.CREATE, "organization_id")),
    ],
    services: ServicesDep,
    db: Annotated[AsyncSession, Depends(get_db)],
):
    """Create a project with its platform subdomain in one transaction."""
    org = await repositories.get_organization(db, organization_id)
    if org is None:
        raise NotFound("Organization not found")
    project = await repositories.create_project(
        db, organization_id, body.name, body.slug, body.theme
    )
    binding = await services.directory.provision_platform_domain(db, project)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ValidationError("Project slug or domain is already taken") from None
    logger.info("Created project %s in organization %s", project.id, organization_id)
    return ProjectResponse(
        id=project.id,
        organization_id=project.organization_id,
        name=project.name,
        slug=project.slug,
        is_active=project.is_active,
        domain=binding.domain,
        theme=project.theme,
    )
