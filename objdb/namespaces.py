"""Namespace creation and the system rows every namespace starts with."""
from typing import List, Tuple
import logging

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from .accounts import AccountRepository
from .arena import ArenaRepository
from .base_types import (
    BaseType,
    EMAIL,
    PASSWORD,
    ROLE,
    ROLE_ADMIN,
    ROLE_USER,
    ROOT_ID,
    SECRET,
    TOKEN,
    USER,
    USER_ROLE,
    XSRF,
)
from .db_models import Namespace
from .errors import Conflict, NotFound
from .modifiers import encode_modifiers
from .validation import validate_namespace

logger = logging.getLogger(__name__)

# (id, up, ord, t, val) of the fixed rows; ids are shared with legacy clients
SYSTEM_TYPES: List[Tuple[int, int, int, int, str]] = [
    (USER, 0, 1, int(BaseType.SHORT), "User"),
    (ROLE, 0, 1, int(BaseType.SHORT), "Role"),
]

USER_REQUISITES: List[Tuple[int, int, str]] = [
    (PASSWORD, int(BaseType.PWD), encode_modifiers("Password", required=True)),
    (EMAIL, int(BaseType.SHORT), "Email"),
    (USER_ROLE, ROLE, "Role"),
    (XSRF, int(BaseType.SHORT), "XSRF"),
    (TOKEN, int(BaseType.SHORT), "Token"),
    (SECRET, int(BaseType.SHORT), "Secret"),
]


async def namespace_exists(db: AsyncSession, name: str) -> bool:
    return await ArenaRepository(db, name).namespace_exists()


async def require_namespace(db: AsyncSession, name: str) -> str:
    """
    Validate a namespace name and check that it exists.

    Raises:
        InvalidArgument: If the name does not match the namespace mask
        NotFound: If no such namespace was created
    """
    validate_namespace(name)
    if not await namespace_exists(db, name):
        raise NotFound(f"{name} does not exist", {"namespace": name})
    return name


async def seed_system_rows(repo: ArenaRepository) -> None:
    """Insert the root row, the base type rows and the user/role schema."""
    for base in BaseType:
        # Root row 1 doubles as the CONTAINER base
        val = "Object" if base == BaseType.CONTAINER else base.name
        await repo.insert(up=0, t=int(base), val=val, ord=0, row_id=int(base))

    for row_id, up, ord_, t, val in SYSTEM_TYPES:
        await repo.insert(up=up, t=t, val=val, ord=ord_, row_id=row_id)

    for position, (row_id, t, val) in enumerate(USER_REQUISITES, start=1):
        await repo.insert(up=USER, t=t, val=val, ord=position, row_id=row_id)

    for role in (ROLE_ADMIN, ROLE_USER):
        await repo.insert(up=ROOT_ID, t=ROLE, val=role, ord_per_type=True)


async def create_namespace(
    db: AsyncSession,
    name: str,
    admin_login: str,
    admin_password: str,
) -> int:
    """
    Create a namespace with its system rows and first administrator.

    Args:
        db: Store session (the caller owns the transaction)
        name: Namespace name
        admin_login: Login of the first user (stored lower-cased)
        admin_password: Raw password of the first user

    Returns:
        Id of the administrator's user object

    Raises:
        InvalidArgument: If the name does not match the namespace mask
        Conflict: If the namespace already exists
    """
    validate_namespace(name)
    if await namespace_exists(db, name):
        raise Conflict(f'Database "{name}" already exists', {"namespace": name})

    await db.execute(insert(Namespace).values(name=name))
    repo = ArenaRepository(db, name)
    await seed_system_rows(repo)

    accounts = AccountRepository(db, name)
    user_id = await accounts.create_user(admin_login, admin_password, role=ROLE_ADMIN)

    logger.info(f"Namespace created: {name} (admin user {user_id})")
    return user_id
