"""
Built-in platform roles.

These are the roles every marketplace tenant starts with. Tenants may define
their own roles on top; those live in the role/permission store.
"""

from typing import Dict, List

from .models import Role, parse_permissions


_BUILTIN_ROLE_GRANTS: Dict[str, Dict[str, object]] = {
    "super_admin": {
        "name": "Super Administrator",
        "permissions": ["*.*.global"],
    },
    "tenant_admin": {
        "name": "Tenant Administrator",
        "permissions": ["*.*.tenant"],
    },
    "content_moderator": {
        "name": "Content Moderator",
        "permissions": [
            "users.read.tenant",
            "media.moderate.tenant",
            "profiles.moderate.tenant",
        ],
    },
    "account_owner": {
        "name": "Account Owner",
        "permissions": [
            "users.manage.account",
            "profiles.manage.account",
            "billing.read.account",
        ],
        "inherits_from": ["account_manager"],
    },
    "account_manager": {
        "name": "Account Manager",
        "permissions": [
            "users.read.account",
            "profiles.manage.account",
        ],
    },
    "talent": {
        "name": "Talent/Model",
        "permissions": [
            "profiles.create.own",
            "profiles.update.own",
            "media.upload.own",
            "jobs.apply.tenant",
        ],
    },
    "client": {
        "name": "Client/Booker",
        "permissions": [
            "jobs.create.tenant",
            "jobs.manage.own",
        ],
    },
}


def builtin_roles() -> List[Role]:
    """Fresh platform-scoped Role objects for the built-in catalog."""
    return [
        Role(
            role_id=role_id,
            name=str(grant["name"]),
            permissions=parse_permissions(list(grant["permissions"])),  # type: ignore[arg-type]
            inherits_from=list(grant.get("inherits_from", [])),  # type: ignore[arg-type]
        )
        for role_id, grant in _BUILTIN_ROLE_GRANTS.items()
    ]
