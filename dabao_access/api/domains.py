"""Project domain binding endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, Response, status

from dabao_access.auth.gate import RequirePermission
from dabao_access.auth.middleware import RequestContext
from dabao_access.engine.permissions import Action, ResourceType
from dabao_access.models import ProjectDomain
from dabao_access.schemas.access import CreateDomainRequest, DomainResponse
from dabao_access.services import ServicesDep
from dabao_access.storage.verification import verification_record_name

router = APIRouter()


def _require(action: Action):
    return Depends(
        RequirePermission(ResourceType.PROJECT_SETTINGS, action, scope_param="project_id")
    )


def _domain_response(binding: ProjectDomain) -> DomainResponse:
    return DomainResponse(
        id=binding.id,
        domain=binding.domain,
        type=binding.type,
        is_primary=binding.is_primary,
        is_verified=binding.is_verified,
        verification_token=binding.verification_token,
        verification_record=(
            verification_record_name(binding.domain) if binding.verification_token else None
        ),
        verified_at=binding.verified_at,
    )


@router.get("/projects/{project_id}/domains", response_model=list[DomainResponse])
async def list_domains(
    project_id: str,
    ctx: Annotated[RequestContext, _require(Action.READ)],
    services: ServicesDep,
):
    return [_domain_response(d) for d in await services.directory.list_domains(project_id)]


@router.post(
    "/projects/{project_id}/domains",
    response_model=DomainResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_domain(
    project_id: str,
    body: CreateDomainRequest,
    ctx: Annotated[RequestContext, _require(Action.CREATE)],
    services: ServicesDep,
):
    """
    Bind a custom domain or alias. It stays unresolvable until the TXT
    record named in ``verification_record`` carries the token.
    """
    binding = await services.directory.add_domain(
        project_id, body.domain, type=body.type, is_primary=body.is_primary
    )
    return _domain_response(binding)


@router.post(
    "/projects/{project_id}/domains/{domain_id}/verify",
    response_model=DomainResponse,
)
async def verify_domain(
    project_id: str,
    domain_id: str,
    ctx: Annotated[RequestContext, _require(Action.UPDATE)],
    services: ServicesDep,
):
    binding = await services.directory.verify_domain(project_id, domain_id)
    return _domain_response(binding)


@router.delete(
    "/projects/{project_id}/domains/{domain_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def remove_domain(
    project_id: str,
    domain_id: str,
    ctx: Annotated[RequestContext, _require(Action.DELETE)],
    services: ServicesDep,
):
    await services.directory.remove_domain(project_id, domain_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
