"""
Default permission catalog and system roles.

The catalog is seeded once (see scripts/seed_permissions.py) and is
read-only at runtime except through create_permission.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.permissions.models import Permission, Role
from app.utils import get_logger


log = get_logger(__name__)


# Fixed identifier of the Super-Admin role; holders bypass every check
SUPER_ADMIN_ROLE_ID = "00000000000000000000001000"
SUPER_ADMIN_ROLE_NAME = "Super Admin"

SYSTEM_ADMIN_ROLE_ID = "00000000000000000000001001"
COMPANY_ADMIN_ROLE_ID = "00000000000000000000001002"
TEAM_MANAGER_ROLE_ID = "00000000000000000000001003"
EMPLOYEE_ROLE_ID = "00000000000000000000001004"
CLIENT_ROLE_ID = "00000000000000000000001005"

SUPER_ADMIN_CATEGORY = "super_admin"


DEFAULT_PERMISSIONS = [
    # User management
    ("user.create", "user", "Create new users"),
    ("user.read", "user", "View user information"),
    ("user.update", "user", "Update user information"),
    ("user.delete", "user", "Delete users"),
    ("user.manage_roles", "user", "Assign/remove roles from users"),

    # Company management
    ("company.create", "company", "Create new companies"),
    ("company.read", "company", "View company information"),
    ("company.update", "company", "Update company information"),
    ("company.delete", "company", "Delete companies"),
    ("company.manage_users", "company", "Add/remove users from company"),

    # Team management
    ("team.create", "team", "Create new teams"),
    ("team.read", "team", "View team information"),
    ("team.update", "team", "Update team information"),
    ("team.delete", "team", "Delete teams"),
    ("team.manage_members", "team", "Add/remove team members"),

    # Role management
    ("role.create", "role", "Create new roles"),
    ("role.read", "role", "View role information"),
    ("role.update", "role", "Update role information"),
    ("role.delete", "role", "Delete roles"),
    ("role.manage_permissions", "role", "Assign/remove permissions from roles"),

    # System
    ("system.admin", "system", "Full system administration access"),
    ("system.config", "system", "Manage system configuration"),
    ("system.logs", "system", "View system logs"),

    # Super admin only
    ("super_admin.bypass_company_restrictions", SUPER_ADMIN_CATEGORY, "Bypass company boundary checks"),
    ("super_admin.manage_system_roles", SUPER_ADMIN_CATEGORY, "Manage system-wide roles and permissions"),
    ("super_admin.access_all_companies", SUPER_ADMIN_CATEGORY, "Access data of every company"),
    ("super_admin.manage_super_admins", SUPER_ADMIN_CATEGORY, "Grant and revoke the Super Admin role"),
]


# "ALL" = every permission; "ALL_EXCEPT_SUPER_ADMIN" = every non super_admin.* permission
DEFAULT_ROLES = {
    SUPER_ADMIN_ROLE_ID: {
        "name": SUPER_ADMIN_ROLE_NAME,
        "description": "Ultimate system administrator with all permissions",
        "permissions": "ALL",
    },
    SYSTEM_ADMIN_ROLE_ID: {
        "name": "System Administrator",
        "description": "Full system access",
        "permissions": "ALL_EXCEPT_SUPER_ADMIN",
    },
    COMPANY_ADMIN_ROLE_ID: {
        "name": "Company Admin",
        "description": "Company administration access",
        "permissions": [
            "user.read", "user.update", "user.manage_roles",
            "company.read", "company.update", "company.manage_users",
            "team.create", "team.read", "team.update", "team.delete", "team.manage_members",
            "role.read",
        ],
    },
    TEAM_MANAGER_ROLE_ID: {
        "name": "Team Manager",
        "description": "Team management access",
        "permissions": ["user.read", "team.read", "team.update", "team.manage_members"],
    },
    EMPLOYEE_ROLE_ID: {
        "name": "Employee",
        "description": "Basic employee access",
        "permissions": ["user.read", "team.read"],
    },
    CLIENT_ROLE_ID: {
        "name": "Client",
        "description": "Client access",
        "permissions": ["user.read"],
    },
}


async def seed_permissions(db: AsyncSession) -> dict[str, Permission]:
    """
    Create default permissions.

    Returns:
        Dictionary mapping permission names to Permission objects
    """
    log.info("Creating default permissions...")
    result = await db.execute(select(Permission))
    permissions_map = {p.name: p for p in result.scalars().all()}

    created = 0
    for name, category, description in DEFAULT_PERMISSIONS:
        if name in permissions_map:
            log.debug(f"Permission '{name}' already exists, skipping")
            continue

        permission = Permission(name=name, category=category, description=description)
        db.add(permission)
        permissions_map[name] = permission
        created += 1

    await db.flush()
    log.info(f"Created {created} permissions ({len(permissions_map)} in catalog)")
    return permissions_map


async def seed_roles(db: AsyncSession, permissions_map: dict[str, Permission]) -> dict[str, Role]:
    """
    Create default system roles and assign permissions.

    Existing roles are left untouched, so a tenant-visible edit made through
    the platform scope survives re-seeding.
    """
    log.info("Creating default roles...")
    roles_map: dict[str, Role] = {}

    for role_id, role_config in DEFAULT_ROLES.items():
        existing = await db.get(Role, role_id)
        if existing:
            log.debug(f"Role '{role_config['name']}' already exists, skipping")
            roles_map[role_id] = existing
            continue

        role = Role(
            id=role_id,
            name=role_config["name"],
            description=role_config["description"],
            company_id=None,
            is_system_role=True,
        )

        if role_config["permissions"] == "ALL":
            role.permissions = list(permissions_map.values())
        elif role_config["permissions"] == "ALL_EXCEPT_SUPER_ADMIN":
            role.permissions = [
                p for p in permissions_map.values() if p.category != SUPER_ADMIN_CATEGORY
            ]
        else:
            role_permissions = []
            for perm_name in role_config["permissions"]:
                if perm_name in permissions_map:
                    role_permissions.append(permissions_map[perm_name])
                else:
                    log.warning(f"Permission '{perm_name}' not found for role '{role_config['name']}'")
            role.permissions = role_permissions

        db.add(role)
        roles_map[role_id] = role
        log.info(f"Created role '{role.name}' with {len(role.permissions)} permissions")

    await db.flush()
    return roles_map


async def seed_catalog(db: AsyncSession) -> tuple[dict[str, Permission], dict[str, Role]]:
    """Seed permissions then system roles, and commit. Safe to run repeatedly."""
    permissions_map = await seed_permissions(db)
    roles_map = await seed_roles(db, permissions_map)
    await db.commit()
    return permissions_map, roles_map
