"""Access-control API schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from dabao_access.engine.permissions import Role


class TenantResponse(BaseModel):
    """Public view of a resolved tenant."""

    project_id: str
    project_name: str
    project_slug: str
    domain: str
    primary_domain: str
    theme: dict[str, Any] | None = None


class CreateOrganizationRequest(BaseModel):
    """POST /v1/organizations request."""

    name: str = Field(min_length=1, max_length=200)
    slug: str = Field(min_length=1, max_length=100)


class OrganizationResponse(BaseModel):
    id: str
    name: str
    slug: str
    role: Role


class CreateProjectRequest(BaseModel):
    """POST /v1/organizations/{id}/projects request."""

    name: str = Field(min_length=1, max_length=200)
    slug: str = Field(min_length=1, max_length=100)
    theme: dict[str, Any] | None = None


class ProjectResponse(BaseModel):
    id: str
    organization_id: str
    name: str
    slug: str
    is_active: bool
    domain: str | None = None
    theme: dict[str, Any] | None = None


class UpdateProjectRequest(BaseModel):
    """PATCH /v1/projects/{id} request. Omitted fields are left unchanged."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    is_active: bool | None = None
    theme: dict[str, Any] | None = None


class MemberResponse(BaseModel):
    user_id: str
    email: str | None = None
    role: Role


class UpdateRoleRequest(BaseModel):
    """PUT /v1/projects/{id}/members/{user_id} request. Role is validated by the store."""

    role: str


class AuthCheckResponse(BaseModel):
    allowed: bool
    resource: str
    action: str


class RoleResponse(BaseModel):
    role: Role | None


class CreateDomainRequest(BaseModel):
    domain: str
    type: str = "CUSTOM_DOMAIN"
    is_primary: bool = False


class DomainResponse(BaseModel):
    id: str
    domain: str
    type: str
    is_primary: bool
    is_verified: bool
    verification_token: str | None = None
    verification_record: str | None = None
    verified_at: datetime | None = None


class CreateTokenRequest(BaseModel):
    role: str = "VIEWER"
    expires_in_days: int | None = Field(default=None, ge=1, le=3650)


class TokenResponse(BaseModel):
    id: str
    token: str  # masked except on creation
    role: Role
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime | None = None


class CreateInviteRequest(BaseModel):
    """POST /v1/projects/{id}/invites request."""

    email: str = Field(min_length=3, max_length=320)
    role: str = "MEMBER"


class InviteResponse(BaseModel):
    id: str
    email: str
    role: Role
    expires_at: datetime
    token: str | None = None  # only on creation and resend


class AcceptInviteRequest(BaseModel):
    token: str = Field(min_length=1)


class AcceptInviteResponse(BaseModel):
    project_id: str
    role: Role
