"""
Default permission matrix for Proxa People.

Declares the protectable resources, the actions each supports, and the
default grants per role. Higher roles inherit the grants of lower ones
through ROLE_HIERARCHY. The seed script writes this matrix to the database;
at runtime the database is the only source of truth.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from app.features.users.models import UserRole
from app.features.permissions.models import PermissionAction


@dataclass(frozen=True)
class ResourceDefinition:
    name: str
    display_name: str
    description: str
    actions: Tuple[PermissionAction, ...] = field(default_factory=tuple)


V = PermissionAction.VIEW
C = PermissionAction.CREATE
U = PermissionAction.UPDATE
D = PermissionAction.DELETE
AP = PermissionAction.APPROVE
AS = PermissionAction.ASSIGN
AD = PermissionAction.ADMIN


RESOURCES: List[ResourceDefinition] = [
    ResourceDefinition("users", "User Management", "Manage user accounts, profiles, and access", (V, C, U, D, AD)),
    ResourceDefinition("departments", "Department Management", "Manage organizational departments", (V, C, U, D)),
    ResourceDefinition("teams", "Team Management", "Manage teams within departments", (V, C, U, D, AS)),
    ResourceDefinition(
        "performance_reviews", "Performance Reviews",
        "Manage performance review cycles and evaluations", (V, C, U, D, AP, AS),
    ),
    ResourceDefinition("goals", "Goal Management", "Manage individual and team goals", (V, C, U, D, AS)),
    ResourceDefinition("meetings", "1:1 Meetings", "Schedule and manage one-on-one meetings", (V, C, U, D)),
    ResourceDefinition("surveys", "Survey Management", "Create and manage employee surveys", (V, C, U, D, AS)),
    ResourceDefinition("analytics", "Analytics & Reporting", "Access analytics dashboards and reports", (V, C, U, D)),
    ResourceDefinition("feedback", "Feedback System", "Give and receive feedback", (V, C, U, D)),
    ResourceDefinition("settings", "System Settings", "Configure system settings and permissions", (V, U, AD)),
    # Authorization data itself; mutating these is gated by the evaluator
    ResourceDefinition("resources", "Resources", "Protectable resources of the application", (V, C, D, AD)),
    ResourceDefinition("permissions", "Permissions", "Actions cataloged per resource", (V, C, D, AD)),
    ResourceDefinition("role_permissions", "Role Permissions", "Default grants per role", (V, C, D, AD)),
    ResourceDefinition("user_permissions", "User Permissions", "Per-user grants and denials", (V, C, D, AD)),
    ResourceDefinition("audit_logs", "Audit Logs", "History of permission changes", (V,)),
]


# Direct grants per role; inherited grants come from ROLE_HIERARCHY
ROLE_PERMISSIONS: Dict[UserRole, Dict[str, Tuple[PermissionAction, ...]]] = {
    UserRole.EMPLOYEE: {
        "users": (V,),
        "departments": (V,),
        "teams": (V,),
        "performance_reviews": (V, U),
        "goals": (V, C, U),
        "meetings": (V, C, U),
        "surveys": (V, U),
        "feedback": (V, C, U),
    },
    UserRole.MANAGER: {
        "users": (V, U),
        "teams": (V, U),
        "performance_reviews": (V, C, U, AP, AS),
        "goals": (V, C, U, AS),
        "meetings": (V, C, U, D),
        "analytics": (V,),
        "feedback": (V, C, U, D),
    },
    UserRole.HR: {
        "users": (V, C, U, D),
        "departments": (V, C, U, D),
        "teams": (V, C, U, D, AS),
        "performance_reviews": (V, C, U, D, AP, AS),
        "goals": (V, C, U, D, AS),
        "surveys": (V, C, U, D, AS),
        "analytics": (V, C, U),
        "settings": (V, U),
        "user_permissions": (V,),
    },
    UserRole.ADMIN: {
        "users": (V, C, U, D, AD),
        "departments": (V, C, U, D),
        "teams": (V, C, U, D, AS),
        "performance_reviews": (V, C, U, D, AP, AS),
        "goals": (V, C, U, D, AS),
        "meetings": (V, C, U, D),
        "surveys": (V, C, U, D, AS),
        "analytics": (V, C, U, D),
        "feedback": (V, C, U, D),
        "settings": (V, U, AD),
        "resources": (V, C, D, AD),
        "permissions": (V, C, D, AD),
        "role_permissions": (V, C, D, AD),
        "user_permissions": (V, C, D, AD),
        "audit_logs": (V,),
    },
}


ROLE_HIERARCHY: Dict[UserRole, Tuple[UserRole, ...]] = {
    UserRole.EMPLOYEE: (),
    UserRole.MANAGER: (UserRole.EMPLOYEE,),
    UserRole.HR: (UserRole.EMPLOYEE, UserRole.MANAGER),
    UserRole.ADMIN: (UserRole.EMPLOYEE, UserRole.MANAGER, UserRole.HR),
}


def expand_role_permissions(role: UserRole) -> Dict[str, List[PermissionAction]]:
    """
    All default grants for a role, including inherited ones.

    Actions keep the order in which the resource declares them.
    """
    granted: Dict[str, set] = {}
    for source in (*ROLE_HIERARCHY[role], role):
        for resource, actions in ROLE_PERMISSIONS[source].items():
            granted.setdefault(resource, set()).update(actions)

    declared = {definition.name: definition.actions for definition in RESOURCES}
    return {
        resource: [action for action in declared[resource] if action in actions]
        for resource, actions in granted.items()
    }


def role_allows(role: UserRole, resource: str, action: PermissionAction) -> bool:
    """Whether the default matrix grants `action` on `resource` to `role`."""
    return action in expand_role_permissions(role).get(resource, [])
