"""Project settings endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends

from dabao_access.auth.gate import RequirePermission
from dabao_access.auth.middleware import RequestContext
from dabao_access.engine.permissions import Action, ResourceType
from dabao_access.errors import NotFound
from dabao_access.models import Project
from dabao_access.schemas.access import ProjectResponse, UpdateProjectRequest
from dabao_access.services import Services, ServicesDep

router = APIRouter()


async def _project_response(services: Services, project: Project) -> ProjectResponse:
    return ProjectResponse(
        id=project.id,
        organization_id=project.organization_id,
        name=project.name,
        slug=project.slug,
        is_active=project.is_active,
        domain=await services.directory.primary_domain(project.id),
        theme=project.theme,
    )


@router.get("/projects/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: str,
    ctx: Annotated[
        RequestContext,
        Depends(RequirePermission(ResourceType.PROJECT, Action.READ, "project_id")),
    ],
    services: ServicesDep,
):
    """Project details, deactivated projects included."""
    project = await services.directory.resolve_by_id(project_id, include_inactive=True)
    if project is None:
        raise NotFound("Project not found")
    return await _project_response(services, project)


@router.patch("/projects/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: str,
    body: UpdateProjectRequest,
    ctx: Annotated[
        RequestContext,
        Depends(RequirePermission(ResourceType.PROJECT_SETTINGS, Action.UPDATE, "project_id")),
    ],
    services: ServicesDep,
):
    """Rename, re-theme, or (de)activate a project."""
    project = await services.directory.update_project(
        project_id, name=body.name, is_active=body.is_active, theme=body.theme
    )
    return await _project_response(services, project)
