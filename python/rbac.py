"""
Role-Based Access Control

Permission table for the three staff roles:
- DIRECTOR: everything
- COMPLIANCE: entity and case management, reports, audit, automation settings
- AGENT: entity screening and read access; may add case notes
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Union

from database.models import UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Permission:
    """An action on a resource"""
    action: str
    resource: str
    description: str = ""

    @property
    def key(self) -> str:
        return f"{self.action}:{self.resource}"


# Entity permissions
ENTITY_CREATE = Permission("create", "entity", "Create new entities")
ENTITY_READ = Permission("read", "entity", "View entity details")
ENTITY_UPDATE = Permission("update", "entity", "Edit entity information")
ENTITY_DELETE = Permission("delete", "entity", "Delete entities")
ENTITY_SCREEN = Permission("screen", "entity", "Run entity screening")

# Case permissions
CASE_CREATE = Permission("create", "case", "Create compliance cases")
CASE_READ = Permission("read", "case", "View case details")
CASE_UPDATE = Permission("update", "case", "Edit case information")
CASE_ASSIGN = Permission("assign", "case", "Assign cases to users")
CASE_CLOSE = Permission("close", "case", "Close compliance cases")
CASE_DELETE = Permission("delete", "case", "Delete cases")

# Deal permissions
DEAL_CREATE = Permission("create", "deal", "Create new deals")
DEAL_READ = Permission("read", "deal", "View deal details")
DEAL_UPDATE = Permission("update", "deal", "Edit deal information")
DEAL_DELETE = Permission("delete", "deal", "Delete deals")

# Report permissions
REPORT_CREATE = Permission("create", "report", "Generate reports")
REPORT_READ = Permission("read", "report", "View reports")
REPORT_SUBMIT = Permission("submit", "report", "Submit reports to authorities")
REPORT_DELETE = Permission("delete", "report", "Delete reports")

# Admin permissions
ADMIN_SETTINGS = Permission("manage", "admin", "Access admin settings")
ADMIN_USERS = Permission("manage", "users", "Manage user accounts")
ADMIN_AUTOMATION = Permission("manage", "automation", "Configure automation settings")

# Audit permissions
AUDIT_READ = Permission("read", "audit", "View audit trails")
AUDIT_EXPORT = Permission("export", "audit", "Export audit data")

# Training permissions
TRAINING_READ = Permission("read", "training", "Access training materials")
TRAINING_ASSIGN = Permission("assign", "training", "Assign training to users")

ALL_PERMISSIONS: FrozenSet[Permission] = frozenset({
    ENTITY_CREATE, ENTITY_READ, ENTITY_UPDATE, ENTITY_DELETE, ENTITY_SCREEN,
    CASE_CREATE, CASE_READ, CASE_UPDATE, CASE_ASSIGN, CASE_CLOSE, CASE_DELETE,
    DEAL_CREATE, DEAL_READ, DEAL_UPDATE, DEAL_DELETE,
    REPORT_CREATE, REPORT_READ, REPORT_SUBMIT, REPORT_DELETE,
    ADMIN_SETTINGS, ADMIN_USERS, ADMIN_AUTOMATION,
    AUDIT_READ, AUDIT_EXPORT,
    TRAINING_READ, TRAINING_ASSIGN,
})

ROLE_PERMISSIONS: Dict[UserRole, FrozenSet[Permission]] = {
    UserRole.AGENT: frozenset({
        ENTITY_READ,
        ENTITY_SCREEN,
        CASE_READ,
        CASE_UPDATE,  # notes only; status changes need case:close
        DEAL_READ,
        REPORT_READ,
        AUDIT_READ,
        TRAINING_READ,
    }),
    UserRole.COMPLIANCE: frozenset({
        ENTITY_CREATE,
        ENTITY_READ,
        ENTITY_UPDATE,
        ENTITY_SCREEN,
        CASE_CREATE,
        CASE_READ,
        CASE_UPDATE,
        CASE_ASSIGN,
        CASE_CLOSE,
        DEAL_READ,
        DEAL_UPDATE,
        REPORT_CREATE,
        REPORT_READ,
        REPORT_SUBMIT,
        AUDIT_READ,
        AUDIT_EXPORT,
        TRAINING_READ,
        TRAINING_ASSIGN,
        ADMIN_AUTOMATION,
    }),
    UserRole.DIRECTOR: ALL_PERMISSIONS,
}

ROLE_HIERARCHY: List[UserRole] = [UserRole.DIRECTOR, UserRole.COMPLIANCE, UserRole.AGENT]

ROLE_DESCRIPTIONS = {
    UserRole.DIRECTOR: "Full system access with all administrative privileges",
    UserRole.COMPLIANCE: "Case management, reporting, and compliance oversight",
    UserRole.AGENT: "Entity screening and basic case viewing",
}


def is_valid_role(role: str) -> bool:
    return role in {r.value for r in UserRole}


def _as_role(role: Union[UserRole, str]):
    if isinstance(role, UserRole):
        return role
    return UserRole(role) if is_valid_role(role) else None


def role_permissions(role: Union[UserRole, str]) -> FrozenSet[Permission]:
    """All permissions granted to a role; empty for unknown roles."""
    role = _as_role(role)
    return ROLE_PERMISSIONS.get(role, frozenset()) if role else frozenset()


def has_permission(role: Union[UserRole, str], action: str, resource: str) -> bool:
    return any(
        p.action == action and p.resource == resource for p in role_permissions(role)
    )


def can_perform(role: Union[UserRole, str], permission: Permission) -> bool:
    return has_permission(role, permission.action, permission.resource)


def has_admin_access(role: Union[UserRole, str]) -> bool:
    return can_perform(role, ADMIN_SETTINGS)


def can_manage_cases(role: Union[UserRole, str]) -> bool:
    return (
        can_perform(role, CASE_CREATE)
        or can_perform(role, CASE_ASSIGN)
        or can_perform(role, CASE_CLOSE)
    )


def can_submit_reports(role: Union[UserRole, str]) -> bool:
    return can_perform(role, REPORT_SUBMIT)


def can_configure_automation(role: Union[UserRole, str]) -> bool:
    return can_perform(role, ADMIN_AUTOMATION)


def accessible_resources(role: Union[UserRole, str]) -> List[str]:
    """Sorted resource names the role has at least one permission on."""
    return sorted({p.resource for p in role_permissions(role)})


def role_description(role: Union[UserRole, str]) -> str:
    role = _as_role(role)
    return ROLE_DESCRIPTIONS.get(role, "Unknown role")
