"""
Seed script to populate the default permission matrix.

Run this script after database initialization to create:
- Default resources
- One permission per (resource, action) the matrix declares
- Role-permission bindings, including inherited grants
- Optionally, the first administrator (the evaluator gates every RBAC
  mutation, so the first admin must come from here)

Usage:
    python -m scripts.seed_permissions seed [--admin-email EMAIL]
    python -m scripts.seed_permissions audit
"""
import argparse
import asyncio
import sys
from typing import Dict, Tuple
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import AsyncSessionLocal, init_db
from app.core.exceptions import NotFound
from app.features.users.models import User, UserRole
from app.features.permissions.matrix import RESOURCES, expand_role_permissions
from app.features.permissions.models import Permission, PermissionAction, RolePermission
from app.features.permissions import service
from app.utils import get_logger


log = get_logger(__name__)


async def seed_resources(db: AsyncSession) -> Dict[Tuple[str, PermissionAction], Permission]:
    """
    Create default resources and their permissions.

    Returns:
        Dictionary mapping (resource name, action) to Permission objects
    """
    log.info("Creating resources and permissions...")
    permissions_map = {}

    for definition in RESOURCES:
        resource = await service.get_resource_by_name(db, definition.name)
        if resource is None:
            resource = await service.create_resource(
                db, definition.name, definition.display_name, definition.description
            )
        else:
            log.debug(f"Resource '{definition.name}' already exists, skipping")

        for action in definition.actions:
            permission = await service.find_permission(db, resource.id, action)
            if permission is None:
                permission = await service.create_permission(db, resource.id, action)
            permissions_map[(definition.name, action)] = permission

    log.info(f"Catalog holds {len(permissions_map)} default permissions")
    return permissions_map


async def seed_role_permissions(
    db: AsyncSession,
    permissions_map: Dict[Tuple[str, PermissionAction], Permission]
) -> int:
    """
    Bind every role to its default permissions, skipping existing bindings.

    Returns:
        Number of bindings created
    """
    log.info("Assigning permissions to roles...")
    created = 0

    for role in UserRole:
        result = await db.execute(
            select(RolePermission.permission_id).where(RolePermission.role == role)
        )
        existing = set(result.scalars().all())

        for resource_name, actions in expand_role_permissions(role).items():
            for action in actions:
                permission = permissions_map[(resource_name, action)]
                if permission.id in existing:
                    continue
                await service.assign_permission_to_role(db, role, permission.id)
                created += 1

    log.info(f"Created {created} role bindings")
    return created


async def promote_admin(db: AsyncSession, email: str) -> User:
    """Give an existing user the admin role."""
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFound(f"No user with email {email!r}; log in once to provision the account")

    user.role = UserRole.ADMIN
    await db.flush()
    log.info(f"Promoted user {user.id} ({email}) to admin")
    return user


async def seed(db: AsyncSession, admin_email: str | None = None) -> None:
    """Write the default matrix, and optionally the first admin, in one transaction."""
    permissions_map = await seed_resources(db)
    await seed_role_permissions(db, permissions_map)
    if admin_email:
        await promote_admin(db, admin_email)
    await db.commit()


async def audit(db: AsyncSession) -> Dict[str, int]:
    """
    Log the current RBAC setup.

    Returns:
        Binding counts per role
    """
    log.info("Resources:")
    for resource in await service.list_resources(db):
        permissions = await service.list_resource_permissions(db, resource.id)
        log.info(f"  - {resource.name}: {len(permissions)} permissions")

    counts = {}
    log.info("Role permissions:")
    for role in UserRole:
        counts[role.value] = len(await service.list_role_permissions(db, role))
        log.info(f"  - {role.value}: {counts[role.value]} permissions")
    return counts


async def main(argv: list[str] | None = None) -> int:
    """Main function to seed or audit permissions."""
    parser = argparse.ArgumentParser(description="Seed or audit the RBAC tables")
    subcommands = parser.add_subparsers(dest="command", required=True)
    seed_parser = subcommands.add_parser("seed", help="create the default permission matrix")
    seed_parser.add_argument("--admin-email", help="promote this existing user to admin")
    subcommands.add_parser("audit", help="report resources and role bindings")
    args = parser.parse_args(argv)

    log.info("Initializing database tables...")
    await init_db()

    async with AsyncSessionLocal() as db:
        try:
            if args.command == "seed":
                await seed(db, args.admin_email)
                log.info("Permission seeding completed successfully!")
            else:
                await audit(db)
        except NotFound as e:
            log.error(e.detail)
            await db.rollback()
            return 1
        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
