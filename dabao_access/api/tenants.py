"""Public tenant resolution endpoints."""

from fastapi import APIRouter, Query, Request

from dabao_access.auth.middleware import TenantContextDep
from dabao_access.errors import TenantNotFound
from dabao_access.models import Project
from dabao_access.schemas.access import TenantResponse
from dabao_access.services import Services, ServicesDep
from dabao_access.storage.directory import normalize_hostname

router = APIRouter()


async def _tenant_response(services: Services, project: Project, domain: str) -> TenantResponse:
    primary = await services.directory.primary_domain(project.id)
    return TenantResponse(
        project_id=project.id,
        project_name=project.name,
        project_slug=project.slug,
        domain=domain,
        primary_domain=primary or domain,
        theme=project.theme,
    )


@router.get("/domains/resolve", response_model=TenantResponse)
async def resolve_domain(
    services: ServicesDep,
    domain: str = Query(min_length=1),
):
    """Resolve a hostname to its project. Used by edge middleware."""
    project = await services.directory.resolve_by_domain(domain)
    if project is None:
        raise TenantNotFound()
    return await _tenant_response(services, project, normalize_hostname(domain))


@router.get("/tenant", response_model=TenantResponse)
async def current_tenant(request: Request, ctx: TenantContextDep, services: ServicesDep):
    """Tenant of the calling host."""
    return await _tenant_response(
        services, ctx.tenant, normalize_hostname(request.headers.get("host"))
    )
