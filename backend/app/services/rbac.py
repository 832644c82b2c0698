"""Role-based access control policy and evaluator.

The policy table is the single source of truth for authorization. The
evaluator is a pure function of (policy, role, resource, action): no I/O, no
side effects. ``manage`` on a resource implies every other action on that
resource, and anything not granted is denied.
"""

from collections.abc import Mapping
from enum import Enum
from typing import Any, Protocol


class Role(str, Enum):
    """User roles, from most to least privileged."""

    SUPER_ADMIN = "super-admin"
    SYSTEM_ADMIN = "system-admin"
    CONTENT_ADMIN = "content-admin"
    EDITOR = "editor"
    VIEWER = "viewer"


class Resource(str, Enum):
    DASHBOARD = "dashboard"
    NEWS = "news"
    DOCUMENTS = "documents"
    COMMUNICATIONS = "communications"
    ESTABLISHMENTS = "establishments"
    SERVICES = "services"
    DIRECTORS = "directors"
    USERS = "users"
    SETTINGS = "settings"
    SECURITY = "security"
    LOGS = "logs"
    STATS = "stats"
    NOTIFICATIONS = "notifications"
    NEWSLETTER = "newsletter"
    FAQ = "faq"


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    PUBLISH = "publish"
    ARCHIVE = "archive"
    EXPORT = "export"
    MANAGE = "manage"
    SEND = "send"
    CONFIGURE = "configure"


ROLE_LEVELS: dict[Role, int] = {
    Role.SUPER_ADMIN: 100,
    Role.SYSTEM_ADMIN: 80,
    Role.CONTENT_ADMIN: 60,
    Role.EDITOR: 40,
    Role.VIEWER: 10,
}

# Roles allowed on ADMIN routes, on top of the route's own permission.
ADMIN_ROLES: frozenset[Role] = frozenset({Role.SUPER_ADMIN, Role.SYSTEM_ADMIN})

R, A = Resource, Action

_CRUD = frozenset({A.CREATE, A.READ, A.UPDATE, A.DELETE})
_CONTENT = _CRUD | {A.PUBLISH, A.ARCHIVE}
_COMMUNICATIONS = _CRUD | {A.PUBLISH, A.SEND}
_NOTIFICATIONS = _CRUD | {A.SEND}
_NEWSLETTER = _CRUD | {A.SEND, A.CONFIGURE}

ROLE_PERMISSIONS: dict[Role, dict[Resource, frozenset[Action]]] = {
    # Every resource is managed outright.
    Role.SUPER_ADMIN: {resource: frozenset({A.MANAGE}) for resource in Resource},
    Role.SYSTEM_ADMIN: {
        R.DASHBOARD: frozenset({A.READ}),
        R.NEWS: _CONTENT,
        R.DOCUMENTS: _CONTENT,
        R.COMMUNICATIONS: _COMMUNICATIONS,
        R.ESTABLISHMENTS: _CRUD,
        R.SERVICES: _CRUD,
        R.DIRECTORS: _CRUD,
        R.USERS: _CRUD,
        R.SETTINGS: frozenset({A.READ, A.UPDATE}),
        R.SECURITY: frozenset({A.READ, A.UPDATE, A.MANAGE}),
        R.LOGS: frozenset({A.READ, A.EXPORT}),
        R.STATS: frozenset({A.READ, A.EXPORT}),
        R.NOTIFICATIONS: _NOTIFICATIONS,
        R.NEWSLETTER: _NEWSLETTER,
        R.FAQ: _CRUD,
    },
    Role.CONTENT_ADMIN: {
        R.DASHBOARD: frozenset({A.READ}),
        R.NEWS: _CONTENT,
        R.DOCUMENTS: _CONTENT,
        R.COMMUNICATIONS: _COMMUNICATIONS,
        R.ESTABLISHMENTS: frozenset({A.CREATE, A.READ, A.UPDATE}),
        R.SERVICES: frozenset({A.CREATE, A.READ, A.UPDATE}),
        R.DIRECTORS: frozenset({A.CREATE, A.READ, A.UPDATE}),
        R.STATS: frozenset({A.READ}),
        R.NOTIFICATIONS: _NOTIFICATIONS,
        R.NEWSLETTER: _NEWSLETTER,
        R.FAQ: _CRUD,
    },
    Role.EDITOR: {
        R.DASHBOARD: frozenset({A.READ}),
        R.NEWS: frozenset({A.CREATE, A.READ, A.UPDATE, A.PUBLISH}),
        R.DOCUMENTS: frozenset({A.CREATE, A.READ, A.UPDATE, A.PUBLISH}),
        R.COMMUNICATIONS: frozenset({A.READ}),
        R.ESTABLISHMENTS: frozenset({A.READ}),
        R.SERVICES: frozenset({A.READ}),
        R.DIRECTORS: frozenset({A.READ}),
        R.STATS: frozenset({A.READ}),
        R.FAQ: frozenset({A.READ}),
    },
    Role.VIEWER: {
        R.DASHBOARD: frozenset({A.READ}),
        R.NEWS: frozenset({A.READ}),
        R.DOCUMENTS: frozenset({A.READ}),
        R.ESTABLISHMENTS: frozenset({A.READ}),
        R.SERVICES: frozenset({A.READ}),
        R.FAQ: frozenset({A.READ}),
    },
}

del R, A


class HasRole(Protocol):
    role: Any


def _coerce_role(value: Any) -> Role | None:
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        return None


def is_granted(
    role: Role | str | None,
    resource: Resource | str,
    action: Action | str,
    policy: Mapping[Role, Mapping[Resource, frozenset[Action]]] = ROLE_PERMISSIONS,
) -> bool:
    """Evaluate a single (role, resource, action) triple against ``policy``."""
    role = _coerce_role(role)
    if role is None:
        return False
    try:
        resource = Resource(resource)
        action = Action(action)
    except ValueError:
        return False

    granted = policy.get(role, {}).get(resource, frozenset())
    return action in granted or Action.MANAGE in granted


def has_permission(user: HasRole | None, resource: Resource | str, action: Action | str) -> bool:
    """Return True when ``user``'s role may perform ``action`` on ``resource``."""
    if user is None:
        return False
    return is_granted(getattr(user, "role", None), resource, action)


def is_admin(user: HasRole | None) -> bool:
    """Return True when the user's role is in the administrative set."""
    if user is None:
        return False
    return _coerce_role(getattr(user, "role", None)) in ADMIN_ROLES


def role_level(role: Role | str | None) -> int:
    coerced = _coerce_role(role)
    return ROLE_LEVELS.get(coerced, 0) if coerced else 0


def permissions_for(role: Role | str) -> dict[str, list[str]]:
    """Expand a role's grants into a serializable map, ``manage`` expanded."""
    coerced = _coerce_role(role)
    if coerced is None:
        return {}
    expanded: dict[str, list[str]] = {}
    for resource, actions in ROLE_PERMISSIONS.get(coerced, {}).items():
        if Action.MANAGE in actions:
            actions = frozenset(Action)
        if actions:
            expanded[resource.value] = sorted(a.value for a in actions)
    return expanded
