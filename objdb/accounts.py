"""User objects, password checks and session tokens stored in the arena."""
from typing import Optional, Tuple
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from .arena import ArenaRepository, Entity
from .auth import Identity, identity_from_claims, is_structured_token
from .base_types import PASSWORD, ROLE, ROLE_USER, ROOT_ID, TOKEN, USER, USER_ROLE, XSRF
from .config import settings
from .db_models import ArenaRow
from .errors import Conflict, InvalidArgument
from .hashing import derive_opaque_token, derive_password_digest, derive_xsrf

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


class AccountRepository:
    """Repository for user objects and their session rows."""

    def __init__(self, db: AsyncSession, namespace: str):
        self.db = db
        self.namespace = namespace
        self.arena = ArenaRepository(db, namespace)

    async def find_user(self, login: str) -> Optional[Entity]:
        """Get a user object by login."""
        return await self.arena.find_one(ArenaRow.t == USER, ArenaRow.val == login)

    async def attribute(self, user_id: int, requisite_id: int) -> Optional[Entity]:
        return await self.arena.find_one(ArenaRow.up == user_id, ArenaRow.t == requisite_id)

    async def _put_attribute(self, user_id: int, requisite_id: int, value: str) -> Entity:
        existing = await self.attribute(user_id, requisite_id)
        if existing:
            await self.arena.set_value(existing.id, value)
            return existing
        return await self.arena.insert(up=user_id, t=requisite_id, val=value)

    async def role_of(self, user_id: int) -> str:
        """Lower-cased role name of a user, empty when none is assigned."""
        link = await self.attribute(user_id, USER_ROLE)
        if link is None or not link.val:
            return ""
        if link.val.isdigit():
            role = await self.arena.get(int(link.val))
            if role is None or role.t != ROLE:
                return ""
            return role.val.lower()
        return link.val.lower()

    async def find_role(self, name: str) -> Optional[Entity]:
        return await self.arena.find_one(ArenaRow.t == ROLE, ArenaRow.val == name)

    async def create_user(self, login: str, password: str, role: str = ROLE_USER) -> int:
        """
        Create a user object with its password digest and role link.

        Returns:
            Id of the new user object

        Raises:
            Conflict: If the login is taken
        """
        login = (login or "").lower()
        if not login or not password:
            raise InvalidArgument("Login and password required")
        if await self.find_user(login):
            raise Conflict(f"User {login} already exists", {"login": login})

        user = await self.arena.insert(up=ROOT_ID, t=USER, val=login)
        digest = derive_password_digest(login, password, self.namespace)
        await self.arena.insert(up=user.id, t=PASSWORD, val=digest)

        role_obj = await self.find_role(role)
        if role_obj is not None:
            await self.arena.insert(up=user.id, t=USER_ROLE, val=str(role_obj.id))

        logger.info(f"User created in {self.namespace}: id={user.id} role={role}")
        return user.id

    async def verify_password(self, user: Entity, password: str) -> bool:
        stored = await self.attribute(user.id, PASSWORD)
        if stored is None:
            return False
        return stored.val == derive_password_digest(user.val, password, self.namespace)

    async def set_password(self, user: Entity, password: str) -> None:
        digest = derive_password_digest(user.val, password, self.namespace)
        await self._put_attribute(user.id, PASSWORD, digest)

    async def change_password(self, user: Entity, old_password: str, new1: str, new2: str) -> str:
        """
        Apply a password change and return the legacy message.

        Messages carrying ``[err...]`` mean nothing was changed.
        """
        if len(new1 or "") < MIN_PASSWORD_LENGTH:
            return "Password must be at least 6 characters long [errShort]. "
        if new1 == old_password:
            return "The new password must differ from the old one [errOld]. "
        if new1 != new2:
            return "Please input the same password twice [errDiffer]. "
        await self.set_password(user, new1)
        logger.info(f"Password changed in {self.namespace}: user={user.id}")
        return "The password has been changed"

    # ========================================================================
    # Sessions
    # ========================================================================

    async def _fresh_token(self) -> str:
        for _ in range(1 + max(settings.id_conflict_retries, 0)):
            token = derive_opaque_token()
            taken = await self.arena.count(ArenaRow.t == TOKEN, ArenaRow.val == token)
            if not taken:
                return token
        raise Conflict("Could not allocate a unique session token")

    async def open_session(self, user: Entity, rotate: bool = False) -> Tuple[str, str]:
        """
        Reuse (or, with ``rotate``, replace) the user's opaque token and
        store the XSRF value derived from it.

        Returns:
            (token, xsrf)
        """
        current = await self.attribute(user.id, TOKEN)
        if current is not None and current.val and not rotate:
            token = current.val
        else:
            token = await self._fresh_token()
            await self._put_attribute(user.id, TOKEN, token)

        xsrf = derive_xsrf(token, self.namespace)
        await self._put_attribute(user.id, XSRF, xsrf)
        return token, xsrf

    async def revoke_token(self, token: str) -> int:
        """Delete the stored opaque token. Structured tokens simply expire."""
        if not token or is_structured_token(token):
            return 0
        return await self.arena.delete_where(ArenaRow.t == TOKEN, ArenaRow.val == token)

    async def identity_for_user(self, user: Entity, token: str = "") -> Identity:
        xsrf_row = await self.attribute(user.id, XSRF)
        xsrf = xsrf_row.val if xsrf_row and xsrf_row.val else (derive_xsrf(token, self.namespace) if token else "")
        return Identity(
            namespace=self.namespace,
            user_id=user.id,
            username=user.val,
            role=await self.role_of(user.id),
            token=token,
            xsrf=xsrf,
        )

    async def resolve_token(self, token: Optional[str]) -> Optional[Identity]:
        """
        Resolve either token encoding to an identity.

        A token with two dots is verified as a structured token; anything
        else is looked up against the stored ``TOKEN`` rows.
        """
        if not token:
            return None

        if is_structured_token(token):
            identity = identity_from_claims(token, self.namespace)
            if identity is None:
                return None
            user = await self.arena.get(identity.user_id)
            if user is None or user.t != USER:
                return None
            return identity.model_copy(update={
                "username": user.val,
                "role": await self.role_of(user.id),
                "xsrf": derive_xsrf(token, self.namespace),
            })

        row = await self.arena.find_one(ArenaRow.t == TOKEN, ArenaRow.val == token)
        if row is None:
            return None
        user = await self.arena.get(row.up)
        if user is None or user.t != USER:
            return None
        return await self.identity_for_user(user, token)
