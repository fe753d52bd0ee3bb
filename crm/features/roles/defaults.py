"""
Built-in roles created at bootstrap.
"""
from crm.core import config


DEFAULT_ROLES = {
    config.SUPERADMIN_ROLE: {
        "level": 1,
        "description": "Full system access",
        "permissions": [
            "system:manage", "users:manage", "roles:manage", "projects:manage",
            "leads:manage", "leadssource:manage", "leadsstatus:manage",
            "channel-partner:manage", "cp-sourcing:manage",
            "notifications:manage", "reporting:manage",
        ],
    },
    "admin": {
        "level": 2,
        "description": "Manages users, leads and projects",
        "permissions": [
            "users:read", "users:create", "users:update",
            "leads:manage", "leadssource:manage", "leadsstatus:manage",
            "projects:read", "projects:create", "projects:update",
            "notifications:manage", "reporting:read",
        ],
    },
    "manager": {
        "level": 3,
        "description": "Runs a sales team",
        "permissions": [
            "leads:read", "leads:create", "leads:update",
            "leadssource:read", "leadssource:create",
            "leadsstatus:read", "leadsstatus:create",
            "projects:read", "projects:create",
            "notifications:read", "notifications:update",
            "reporting:read",
        ],
    },
    "hr": {
        "level": 4,
        "description": "People operations",
        "permissions": [
            "users:read", "users:create", "users:update",
            "leads:read", "leads:update",
            "projects:read",
            "notifications:read",
        ],
    },
    "sales": {
        "level": 5,
        "description": "Works leads",
        "permissions": [
            "leads:read", "leads:create", "leads:update",
            "leadssource:read", "leadsstatus:read",
            "notifications:read",
        ],
    },
    "user": {
        "level": 6,
        "description": "Read-only access",
        "permissions": ["leads:read", "notifications:read"],
    },
}
