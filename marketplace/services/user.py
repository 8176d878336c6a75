from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.core.rbac import Role
from marketplace.models.user import User, UserRole


async def get_user_by_id(db: AsyncSession, user_id: int) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(select(User).where(User.email == email.lower()))
    return result.scalar_one_or_none()


async def get_user_roles(db: AsyncSession, user_id: int) -> frozenset[Role]:
    """Role lookup for authorization; unknown role strings are ignored."""
    result = await db.execute(select(UserRole.role).where(UserRole.user_id == user_id))
    roles: set[Role] = set()
    for value in result.scalars().all():
        try:
            roles.add(Role(value))
        except ValueError:
            continue
    return frozenset(roles)


async def create_user(
    db: AsyncSession,
    *,
    email: str,
    display_name: str | None = None,
    roles: tuple[Role, ...] = (),
) -> User:
    user = User(email=email.lower(), display_name=display_name)
    db.add(user)
    await db.flush()
    for role in roles:
        db.add(UserRole(user_id=user.id, role=role.value))
    await db.commit()
    await db.refresh(user)
    return user


async def grant_role(db: AsyncSession, user: User, role: Role) -> None:
    if role in await get_user_roles(db, user.id):
        return
    db.add(UserRole(user_id=user.id, role=role.value))
    await db.commit()
