"""Low-level access to the entity arena of one namespace.

Every higher layer (schema registry, entity store, projections) goes through
``ArenaRepository``. Rows come back as plain ``Entity`` values so that
callers never hold live ORM state across the bulk updates used for ordering.
"""
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence
import logging

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from .base_types import ROOT_ID
from .config import settings
from .db_models import ArenaRow, Namespace
from .errors import Conflict, DuplicateOrder, NotFound

logger = logging.getLogger(__name__)

_COLUMNS = (ArenaRow.id, ArenaRow.up, ArenaRow.ord, ArenaRow.t, ArenaRow.val)


@dataclass(frozen=True)
class Entity:
    """Snapshot of one arena row."""

    id: int
    up: int
    ord: int
    t: int
    val: str

    @property
    def is_type(self) -> bool:
        return self.up == 0

    def to_dict(self) -> dict:
        return {"id": self.id, "up": self.up, "ord": self.ord, "t": self.t, "val": self.val}


def _entity(row) -> Entity:
    # Row.t is the tuple accessor, so columns are read through the mapping
    m = row._mapping
    return Entity(id=m["id"], up=m["up"], ord=m["ord"], t=m["t"], val=m["val"] if m["val"] is not None else "")


class ArenaRepository:
    """Repository for arena rows scoped to one namespace."""

    def __init__(self, db: AsyncSession, namespace: str):
        self.db = db
        self.namespace = namespace

    def _select(self):
        return select(*_COLUMNS).where(ArenaRow.namespace == self.namespace)

    def type_ids(self):
        """Subquery selecting the id of every type row (the root object excluded)."""
        types = aliased(ArenaRow)
        return select(types.id).where(types.namespace == self.namespace, types.up == 0, types.id != ROOT_ID)

    # ========================================================================
    # Reads
    # ========================================================================

    async def namespace_exists(self) -> bool:
        stmt = select(Namespace.name).where(Namespace.name == self.namespace)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def get(self, row_id: int) -> Optional[Entity]:
        """Get a row by id."""
        result = await self.db.execute(self._select().where(ArenaRow.id == row_id))
        row = result.first()
        return _entity(row) if row else None

    async def require(self, row_id: int, what: str = "Object") -> Entity:
        """Get a row by id or raise ``NotFound``."""
        entity = await self.get(row_id)
        if entity is None:
            raise NotFound(f"{what} not found", {"id": row_id, "namespace": self.namespace})
        return entity

    async def get_many(self, ids: Iterable[int]) -> List[Entity]:
        ids = list(ids)
        if not ids:
            return []
        result = await self.db.execute(self._select().where(ArenaRow.id.in_(ids)))
        return [_entity(r) for r in result.all()]

    async def children(self, up: int, t: Optional[int] = None) -> List[Entity]:
        """Rows under ``up`` (optionally of one ``t``) by ord, then id."""
        stmt = self._select().where(ArenaRow.up == up)
        if t is not None:
            stmt = stmt.where(ArenaRow.t == t)
        result = await self.db.execute(stmt.order_by(ArenaRow.ord, ArenaRow.id))
        return [_entity(r) for r in result.all()]

    async def children_of_many(self, ups: Sequence[int]) -> List[Entity]:
        """Rows under any of ``ups`` grouped by parent and ordered by ord, then id."""
        if not ups:
            return []
        stmt = (
            self._select()
            .where(ArenaRow.up.in_(list(ups)))
            .order_by(ArenaRow.up, ArenaRow.ord, ArenaRow.id)
        )
        result = await self.db.execute(stmt)
        return [_entity(r) for r in result.all()]

    async def count(self, *criteria) -> int:
        stmt = select(func.count()).select_from(ArenaRow).where(ArenaRow.namespace == self.namespace, *criteria)
        result = await self.db.execute(stmt)
        return int(result.scalar_one())

    async def find_one(self, *criteria) -> Optional[Entity]:
        stmt = self._select().where(*criteria).order_by(ArenaRow.ord, ArenaRow.id).limit(1)
        result = await self.db.execute(stmt)
        row = result.first()
        return _entity(row) if row else None

    async def find(self, *criteria, order_by=None, offset: int = 0, limit: Optional[int] = None) -> List[Entity]:
        stmt = self._select().where(*criteria)
        stmt = stmt.order_by(*(order_by or (ArenaRow.ord, ArenaRow.id)))
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return [_entity(r) for r in result.all()]

    async def next_ord(self, up: int, t: Optional[int] = None) -> int:
        """Next free order index under ``up``, per ``t`` when given."""
        stmt = select(func.coalesce(func.max(ArenaRow.ord), 0)).where(
            ArenaRow.namespace == self.namespace,
            ArenaRow.up == up,
        )
        if t is not None:
            stmt = stmt.where(ArenaRow.t == t)
        result = await self.db.execute(stmt)
        return max(int(result.scalar_one()), 0) + 1

    async def _next_id(self) -> int:
        stmt = select(func.coalesce(func.max(ArenaRow.id), 0)).where(ArenaRow.namespace == self.namespace)
        result = await self.db.execute(stmt)
        return int(result.scalar_one()) + 1

    # ========================================================================
    # Writes
    # ========================================================================

    async def insert(
        self,
        up: int,
        t: int,
        val: str,
        ord: Optional[int] = None,
        row_id: Optional[int] = None,
        ord_per_type: bool = True,
    ) -> Entity:
        """
        Insert a row, allocating its id as ``max(id) + 1``.

        A concurrent writer taking the same id or order index surfaces as an
        integrity error; the insert is retried ``id_conflict_retries`` times
        inside a savepoint so the surrounding transaction survives.

        Args:
            up: Parent id (0 for types)
            t: Type, base or requisite id
            val: Value
            ord: Order index (default: next free index under ``up``)
            row_id: Fixed id (used when seeding system rows)
            ord_per_type: Count the next index per ``(up, t)`` instead of per ``up``
        """
        attempts = 1 + max(settings.id_conflict_retries, 0)
        last_error = None
        for attempt in range(attempts):
            new_id = row_id if row_id is not None else await self._next_id()
            new_ord = ord
            if new_ord is None:
                new_ord = 0 if up == 0 else await self.next_ord(up, t if ord_per_type else None)
            try:
                async with self.db.begin_nested():
                    await self.db.execute(
                        insert(ArenaRow).values(
                            namespace=self.namespace,
                            id=new_id,
                            up=up,
                            ord=new_ord,
                            t=t,
                            val=val if val is not None else "",
                        )
                    )
                return Entity(id=new_id, up=up, ord=new_ord, t=t, val=val if val is not None else "")
            except IntegrityError as e:
                last_error = e
                logger.warning(f"Arena insert collided (attempt {attempt + 1}/{attempts}) in {self.namespace}")
                if row_id is not None:
                    break
        raise Conflict(
            "Could not allocate a free id",
            {"namespace": self.namespace, "id": row_id},
        ) from last_error

    async def update_row(self, row_id: int, **values) -> bool:
        stmt = (
            update(ArenaRow)
            .where(ArenaRow.namespace == self.namespace, ArenaRow.id == row_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount > 0

    async def update_where(self, criteria, **values) -> int:
        stmt = (
            update(ArenaRow)
            .where(ArenaRow.namespace == self.namespace, *criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount

    async def set_value(self, row_id: int, val: str) -> bool:
        return await self.update_row(row_id, val=val if val is not None else "")

    async def delete_ids(self, ids: Iterable[int]) -> int:
        ids = list(ids)
        if not ids:
            return 0
        stmt = (
            delete(ArenaRow)
            .where(ArenaRow.namespace == self.namespace, ArenaRow.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount

    async def delete_where(self, *criteria) -> int:
        stmt = (
            delete(ArenaRow)
            .where(ArenaRow.namespace == self.namespace, *criteria)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount

    async def descendants(self, root_ids: Iterable[int]) -> List[int]:
        """Ids of every row below the given roots (breadth first, roots excluded)."""
        found: List[int] = []
        seen = set(root_ids)
        frontier = list(seen)
        while frontier:
            stmt = select(ArenaRow.id).where(
                ArenaRow.namespace == self.namespace,
                ArenaRow.up.in_(frontier),
            )
            result = await self.db.execute(stmt)
            frontier = [i for i in result.scalars().all() if i not in seen]
            seen.update(frontier)
            found.extend(frontier)
        return found

    # ========================================================================
    # Ordering
    # ========================================================================

    async def _group(self, entity: Entity, per_type: bool, lock: bool = False) -> List[Entity]:
        stmt = self._select().where(ArenaRow.up == entity.up)
        if per_type:
            stmt = stmt.where(ArenaRow.t == entity.t)
        stmt = stmt.order_by(ArenaRow.ord, ArenaRow.id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return [_entity(r) for r in result.all()]

    async def swap_with_previous(self, row_id: int, per_type: bool = True) -> Optional[Entity]:
        """
        Swap a row's order with the immediately preceding sibling.

        Returns the sibling that moved down, or None at the first position.
        The exchange goes through a negative temporary index so the unique
        ``(up, t, ord)`` index never sees two equal values.
        """
        entity = await self.require(row_id)
        for attempt in range(1 + max(settings.order_conflict_retries, 0)):
            group = await self._group(entity, per_type, lock=True)
            previous = None
            for sibling in group:
                if sibling.id == entity.id:
                    break
                previous = sibling
            if previous is None:
                return None
            current = next(s for s in group if s.id == entity.id)
            try:
                async with self.db.begin_nested():
                    await self.update_row(current.id, ord=-current.id)
                    await self.update_row(previous.id, ord=current.ord)
                    await self.update_row(current.id, ord=previous.ord)
                return previous
            except IntegrityError:
                logger.warning(f"Order swap collided (attempt {attempt + 1}) for {self.namespace}:{row_id}")
        raise DuplicateOrder("Order changed concurrently", {"id": row_id})

    async def move_to_position(self, row_id: int, position: int, per_type: bool = True) -> List[Entity]:
        """
        Put a row at 1-based ``position`` in its group and renumber the group 1..n.

        Positions past the end move the row last; positions below 1 move it first.
        """
        entity = await self.require(row_id)
        for attempt in range(1 + max(settings.order_conflict_retries, 0)):
            group = await self._group(entity, per_type, lock=True)
            others = [s for s in group if s.id != entity.id]
            index = min(max(position, 1), len(others) + 1) - 1
            target = next(s for s in group if s.id == entity.id)
            ordered = others[:index] + [target] + others[index:]
            changes = [(s, n) for n, s in enumerate(ordered, start=1) if s.ord != n]
            try:
                async with self.db.begin_nested():
                    for sibling, _ in changes:
                        await self.update_row(sibling.id, ord=-sibling.id)
                    for sibling, number in changes:
                        await self.update_row(sibling.id, ord=number)
                return [
                    Entity(id=s.id, up=s.up, ord=n, t=s.t, val=s.val)
                    for n, s in enumerate(ordered, start=1)
                ]
            except IntegrityError:
                logger.warning(f"Order rewrite collided (attempt {attempt + 1}) for {self.namespace}:{row_id}")
        raise DuplicateOrder("Order changed concurrently", {"id": row_id})
