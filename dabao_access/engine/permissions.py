"""Roles, resource types, actions and the default permission table."""

from enum import Enum

from dabao_access.errors import ValidationError


class Role(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"

    @property
    def rank(self) -> int:
        return ROLE_RANK[self]

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        """Parse untrusted input, raising ValidationError on unknown roles."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            allowed = ", ".join(r.value for r in cls)
            raise ValidationError(f"Role must be one of: {allowed}") from None


# Higher rank means more privilege
ROLE_RANK = {Role.VIEWER: 0, Role.MEMBER: 1, Role.ADMIN: 2, Role.OWNER: 3}

# Roles able to administer a scope's membership
ADMINISTRATIVE_ROLES = frozenset({Role.OWNER, Role.ADMIN})


class ResourceType(str, Enum):
    PROJECT = "project"
    ORGANIZATION = "organization"
    USER = "user"
    BILLING = "billing"
    API_TOKEN = "api_token"
    API_KEY = "api_key"
    AUDIT_LOG = "audit_log"
    AUTH_TOKEN = "auth_token"
    CUSTOMER = "customer"
    REWARD = "reward"
    CAMPAIGN = "campaign"
    MEMBERSHIP = "membership"
    INTEGRATION = "integration"
    PROJECT_SETTINGS = "project_settings"
    POLICY = "policy"
    ALL = "*"

    @classmethod
    def parse(cls, value: "str | ResourceType") -> "ResourceType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(f"Unknown resource type: {value}") from None


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"
    ALL = "*"

    @classmethod
    def parse(cls, value: "str | Action") -> "Action":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValidationError(f"Unknown action: {value}") from None


Grant = tuple[ResourceType, Action]


def _grants(*pairs: Grant) -> frozenset[Grant]:
    return frozenset(pairs)


def _manage(*resources: ResourceType) -> list[Grant]:
    return [(r, Action.MANAGE) for r in resources]


def _read(*resources: ResourceType) -> list[Grant]:
    return [(r, Action.READ) for r in resources]


# Anything absent from this table is denied.
DEFAULT_POLICY: dict[Role, frozenset[Grant]] = {
    Role.OWNER: _grants((ResourceType.ALL, Action.ALL)),
    Role.ADMIN: _grants(
        *_manage(
            ResourceType.PROJECT_SETTINGS,
            ResourceType.USER,
            ResourceType.POLICY,
            ResourceType.CUSTOMER,
            ResourceType.CAMPAIGN,
            ResourceType.REWARD,
            ResourceType.MEMBERSHIP,
            ResourceType.INTEGRATION,
            ResourceType.API_TOKEN,
            ResourceType.AUTH_TOKEN,
            ResourceType.API_KEY,
        ),
        *_read(ResourceType.PROJECT, ResourceType.ORGANIZATION, ResourceType.AUDIT_LOG),
    ),
    Role.MEMBER: _grants(
        (ResourceType.CUSTOMER, Action.CREATE),
        (ResourceType.CUSTOMER, Action.UPDATE),
        *_read(
            ResourceType.CUSTOMER,
            ResourceType.REWARD,
            ResourceType.CAMPAIGN,
            ResourceType.MEMBERSHIP,
            ResourceType.AUDIT_LOG,
            ResourceType.PROJECT,
        ),
    ),
    Role.VIEWER: _grants(
        *_read(
            ResourceType.CUSTOMER,
            ResourceType.REWARD,
            ResourceType.CAMPAIGN,
            ResourceType.MEMBERSHIP,
            ResourceType.PROJECT,
        ),
    ),
}
