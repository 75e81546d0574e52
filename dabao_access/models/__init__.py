"""Database models."""

from dabao_access.models.auth_token import AuthToken
from dabao_access.models.invite import ProjectInvite
from dabao_access.models.tenant import Organization, Project, ProjectDomain
from dabao_access.models.user import RoleAssignment, User

__all__ = [
    "AuthToken",
    "Organization",
    "Project",
    "ProjectDomain",
    "ProjectInvite",
    "RoleAssignment",
    "User",
]
