"""Data rows (objects) and their attribute values.

An attribute value is a child row of the object whose ``t`` is the
requisite id. Single-valued requisites keep at most one such row per
object; multi-valued requisites get one row per write, in write order.
"""
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence
import logging

from sqlalchemy import exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from .arena import Entity
from .base_types import BaseType, ROOT_ID, USER
from .config import settings
from .db_models import ArenaRow
from .errors import Conflict, HasChildren, InvalidArgument, InvalidReference, NotFound
from .hashing import derive_password_digest
from .schema_registry import RequisiteDescriptor, SchemaRegistry, TypeDescriptor

logger = logging.getLogger(__name__)

# "42" or "42:Display value"
REFERENCE_VALUE = re.compile(r"^\s*(\d+)(?::.*)?$", re.DOTALL)

SORT_COLUMNS = {
    "id": ArenaRow.id,
    "val": ArenaRow.val,
    "ord": ArenaRow.ord,
    "up": ArenaRow.up,
}


def reference_target(value: Any) -> Optional[int]:
    """Target id of a stored reference value, None when it names no id."""
    match = REFERENCE_VALUE.match(str(value)) if value is not None else None
    return int(match.group(1)) if match else None


class EntityStore:
    """Object (DML) operations for one namespace."""

    def __init__(self, db: AsyncSession, namespace: str, registry: Optional[SchemaRegistry] = None):
        self.db = db
        self.namespace = namespace
        self.registry = registry or SchemaRegistry(db, namespace)
        self.arena = self.registry.arena

    # ========================================================================
    # Lookups
    # ========================================================================

    async def get(self, obj_id: int) -> Entity:
        return await self.arena.require(obj_id)

    async def require_data(self, obj_id: int) -> Entity:
        """
        Get a data row, rejecting type and requisite rows.

        Raises:
            NotFound: If the id does not exist
            InvalidArgument: If the id belongs to schema metadata
        """
        entity = await self.arena.require(obj_id)
        if entity.is_type:
            raise InvalidArgument("You can't change metadata with object actions", {"id": obj_id})
        parent = await self.arena.get(entity.up) if entity.up != ROOT_ID else None
        if parent is not None and parent.is_type:
            raise InvalidArgument("You can't change metadata with object actions", {"id": obj_id})
        return entity

    async def type_of(self, entity: Entity) -> TypeDescriptor:
        return await self.registry.get_type(entity.t)

    async def attributes(self, obj_id: int) -> List[Entity]:
        """Child rows of an object in order."""
        return await self.arena.children(obj_id)

    async def attribute_map(self, obj_ids: Sequence[int]) -> Dict[int, List[Entity]]:
        """Child rows of many objects grouped by parent id."""
        grouped: Dict[int, List[Entity]] = {obj_id: [] for obj_id in obj_ids}
        for row in await self.arena.children_of_many(obj_ids):
            grouped.setdefault(row.up, []).append(row)
        return grouped

    async def list_children(self, parent_id: int, t: Optional[int] = None) -> List[Entity]:
        """Rows under ``parent_id`` ordered by ord, then id."""
        return await self.arena.children(parent_id, t)

    # ========================================================================
    # Listing
    # ========================================================================

    def _type_criteria(
        self,
        type_id: int,
        parent_id: Optional[int] = None,
        value: Optional[str] = None,
        value_like: Optional[str] = None,
        search: Optional[str] = None,
        attribute_filters: Optional[Mapping[int, str]] = None,
        ids: Optional[Iterable[int]] = None,
    ) -> list:
        criteria = [
            ArenaRow.t == type_id,
            ArenaRow.up != 0,
            ArenaRow.up.not_in(self.arena.type_ids()),
        ]
        if parent_id is not None:
            criteria.append(ArenaRow.up == parent_id)
        if value is not None:
            criteria.append(ArenaRow.val == value)
        if value_like:
            criteria.append(ArenaRow.val.like(value_like))
        if ids is not None:
            criteria.append(ArenaRow.id.in_(list(ids)))
        if search:
            pattern = f"%{search}%"
            child = aliased(ArenaRow)
            criteria.append(or_(
                ArenaRow.val.like(pattern),
                exists().where(
                    child.namespace == ArenaRow.namespace,
                    child.up == ArenaRow.id,
                    child.val.like(pattern),
                ),
            ))
        for req_id, filter_value in (attribute_filters or {}).items():
            child = aliased(ArenaRow)
            condition = child.val.like(filter_value) if "%" in filter_value else child.val == filter_value
            criteria.append(exists().where(
                child.namespace == ArenaRow.namespace,
                child.up == ArenaRow.id,
                child.t == req_id,
                condition,
            ))
        return criteria

    def _sort_column(self, sort: Any):
        """A row column by name, or the value of requisite ``sort`` when it is an id."""
        if isinstance(sort, int) or str(sort).isdigit():
            child = aliased(ArenaRow)
            return (
                select(child.val)
                .where(child.namespace == ArenaRow.namespace, child.up == ArenaRow.id, child.t == int(sort))
                .order_by(child.ord)
                .limit(1)
                .scalar_subquery()
            )
        column = SORT_COLUMNS.get(sort)
        if column is None:
            raise InvalidArgument(f"Unknown sort column {sort}", {"sort": str(sort)[:32]})
        return column

    async def list_by_type(
        self,
        type_id: int,
        offset: int = 0,
        limit: Optional[int] = None,
        sort: str = "ord",
        descending: bool = False,
        **filters,
    ) -> List[Entity]:
        """
        Objects of a type, one page at a time.

        Rows come ordered by ``sort`` (ord by default) with id as the tie
        break. A missing limit means the largest page, never all rows.

        Args:
            type_id: Type of the objects
            offset: Rows to skip
            limit: Page size, capped at ``settings.max_limit``
            sort: One of ``id``, ``val``, ``ord``, ``up`` or a requisite id
            descending: Reverse the order
            **filters: ``parent_id``, ``value``, ``value_like``, ``search``,
                ``attribute_filters`` or ``ids``
        """
        column = self._sort_column(sort)
        if limit is None or limit > settings.max_limit:
            limit = settings.max_limit
        order = (column.desc(), ArenaRow.id.desc()) if descending else (column, ArenaRow.id)
        return await self.arena.find(
            *self._type_criteria(type_id, **filters),
            order_by=order,
            offset=max(offset, 0),
            limit=max(limit, 0),
        )

    async def count_by_type(self, type_id: int, **filters) -> int:
        return await self.arena.count(*self._type_criteria(type_id, **filters))

    # ========================================================================
    # Writes
    # ========================================================================

    async def _check_parent(self, parent_id: int) -> None:
        if parent_id == ROOT_ID:
            return
        parent = await self.arena.get(parent_id)
        if parent is None or parent.is_type:
            raise NotFound("Parent not found", {"up": parent_id})

    async def _check_unique(self, descriptor: TypeDescriptor, value: str, exclude: Optional[int] = None) -> None:
        if not descriptor.unique or value == "":
            return
        criteria = [ArenaRow.t == descriptor.id, ArenaRow.val == value, ArenaRow.up != 0]
        if exclude is not None:
            criteria.append(ArenaRow.id != exclude)
        if await self.arena.count(*criteria):
            raise Conflict(f"{descriptor.name} {value} already exists", {"type": descriptor.id, "val": value})

    async def _stored_value(
        self,
        obj: Entity,
        req: RequisiteDescriptor,
        value: Any,
        username: Optional[str] = None,
    ) -> str:
        text = "" if value is None else str(value)
        if req.t == BaseType.PWD:
            # Digest keyed by the owner login
            return derive_password_digest(username or obj.val, text, self.namespace) if text else ""
        if req.is_reference and text != "":
            target_id = reference_target(text)
            if target_id is None:
                raise InvalidReference(f"Invalid reference value {text[:32]}", {"requisite": req.id})
            target = await self.arena.get(target_id)
            if target is None or target.t != req.t:
                raise InvalidReference(
                    f"Object {target_id} is not a {req.name}",
                    {"requisite": req.id, "target": target_id},
                )
            return str(target_id)
        return text

    async def _write_attribute(
        self,
        obj: Entity,
        req: RequisiteDescriptor,
        value: Any,
        username: Optional[str] = None,
    ) -> List[Entity]:
        values = list(value) if isinstance(value, (list, tuple)) else [value]
        written: List[Entity] = []
        if req.multi:
            for item in values:
                stored = await self._stored_value(obj, req, item, username)
                if stored == "":
                    continue
                written.append(await self.arena.insert(up=obj.id, t=req.id, val=stored))
            return written

        stored = await self._stored_value(obj, req, values[-1] if values else "", username)
        existing = await self.arena.find_one(ArenaRow.up == obj.id, ArenaRow.t == req.id)
        if existing is not None:
            await self.arena.set_value(existing.id, stored)
            written.append(Entity(id=existing.id, up=existing.up, ord=existing.ord, t=existing.t, val=stored))
        elif stored != "":
            written.append(await self.arena.insert(up=obj.id, t=req.id, val=stored))
        return written

    async def _write_attributes(self, obj: Entity, descriptor: TypeDescriptor, attributes: Mapping[int, Any]) -> int:
        """Write ``{requisiteId: value}`` pairs; returns the last requisite id written."""
        username = None
        if descriptor.id == USER and USER in attributes:
            username = str(attributes[USER])
        last = 0
        for req_id, value in attributes.items():
            if req_id == descriptor.id:
                continue
            req = descriptor.requisite(req_id)
            if req is None:
                raise InvalidArgument(
                    f"Requisite {req_id} does not belong to type {descriptor.id}",
                    {"requisite": req_id, "type": descriptor.id},
                )
            await self._write_attribute(obj, req, value, username)
            last = req_id
        return last

    async def create(
        self,
        type_id: int,
        value: str,
        parent_id: int = ROOT_ID,
        order: Optional[int] = None,
        attributes: Optional[Mapping[int, Any]] = None,
    ) -> Entity:
        """
        Create an object and, optionally, its attribute values.

        Args:
            type_id: Type of the object
            value: Display value
            parent_id: Parent object (1 for an independent object)
            order: Fixed order index (default: next free one)
            attributes: ``{requisiteId: value}`` to write after the insert

        Raises:
            NotFound: If the type or parent does not exist
            Conflict: If the type is unique and the value is taken
        """
        descriptor = await self.registry.get_type(type_id)
        if descriptor.is_basic:
            raise InvalidArgument(f"Invalid type {type_id}", {"type": type_id})
        await self._check_parent(parent_id)
        value = "" if value is None else str(value)
        await self._check_unique(descriptor, value)

        obj = await self.arena.insert(up=parent_id, t=type_id, val=value, ord=order)
        if attributes:
            await self._write_attributes(obj, descriptor, attributes)
        logger.info(f"Object created in {self.namespace}: id={obj.id} type={type_id} up={parent_id}")
        return obj

    async def save(
        self,
        obj_id: int,
        value: Optional[str] = None,
        attributes: Optional[Mapping[int, Any]] = None,
    ) -> Entity:
        """
        Update an object's value and write attribute values.

        ``None`` leaves the value alone. Multi-valued requisites get a new
        row per value; single-valued ones are updated in place.
        """
        obj = await self.require_data(obj_id)
        descriptor = await self.type_of(obj)
        if value is not None and str(value) != obj.val:
            await self._check_unique(descriptor, str(value), exclude=obj.id)
            await self.arena.set_value(obj.id, str(value))
            obj = Entity(id=obj.id, up=obj.up, ord=obj.ord, t=obj.t, val=str(value))
        if attributes:
            await self._write_attributes(obj, descriptor, attributes)
        return obj

    async def set_attributes(self, obj_id: int, attributes: Mapping[int, Any]) -> int:
        """
        Write attribute values only.

        Returns:
            Id of the last requisite written
        """
        if not attributes:
            raise InvalidArgument("No attributes provided")
        obj = await self.require_data(obj_id)
        descriptor = await self.type_of(obj)
        return await self._write_attributes(obj, descriptor, attributes)

    async def delete(self, obj_id: int, cascade: bool = False) -> Entity:
        """
        Delete an object.

        Raises:
            HasChildren: If attribute or child rows exist and cascade is off
        """
        obj = await self.require_data(obj_id)
        doomed = await self.arena.descendants([obj.id])
        if doomed and not cascade:
            raise HasChildren(
                f"Object {obj_id} has {len(doomed)} child row(s)",
                {"id": obj_id, "children": len(doomed)},
            )
        await self.arena.delete_ids(doomed + [obj.id])
        logger.info(f"Object deleted in {self.namespace}: id={obj_id} rows={len(doomed) + 1}")
        return obj

    async def move_up(self, obj_id: int) -> Entity:
        """Swap with the preceding sibling of the same type; no-op when first."""
        obj = await self.require_data(obj_id)
        await self.arena.swap_with_previous(obj.id, per_type=True)
        return obj

    async def set_order(self, obj_id: int, order: int) -> Entity:
        """Move an object to 1-based ``order`` among its same-type siblings."""
        if order < 1:
            raise InvalidArgument("order must be a positive integer", {"order": order})
        obj = await self.require_data(obj_id)
        await self.arena.move_to_position(obj.id, order, per_type=True)
        return obj

    async def move_to_parent(self, obj_id: int, parent_id: int) -> Entity:
        """Re-parent an object, placing it last among its new siblings."""
        obj = await self.require_data(obj_id)
        await self._check_parent(parent_id)
        if parent_id == obj.id or parent_id in await self.arena.descendants([obj.id]):
            raise InvalidArgument("An object can't be moved under itself", {"id": obj_id, "up": parent_id})
        if parent_id == obj.up:
            return obj
        new_ord = await self.arena.next_ord(parent_id, obj.t)
        await self.arena.update_row(obj.id, up=parent_id, ord=new_ord)
        return Entity(id=obj.id, up=parent_id, ord=new_ord, t=obj.t, val=obj.val)

    async def copy(self, obj_id: int) -> Entity:
        """Copy an object with its attribute values under the same parent."""
        obj = await self.require_data(obj_id)
        descriptor = await self.type_of(obj)
        requisite_ids = {r.id for r in descriptor.requisites}
        new_obj = await self.arena.insert(up=obj.up, t=obj.t, val=obj.val)
        for row in await self.arena.children(obj.id):
            if row.t in requisite_ids:
                await self.arena.insert(up=new_obj.id, t=row.t, val=row.val, ord=row.ord)
        logger.info(f"Object copied in {self.namespace}: {obj_id} -> {new_obj.id}")
        return new_obj

    async def set_id(self, obj_id: int, new_id: int) -> Entity:
        """
        Give an object a new id.

        Parent links, type links and stored reference values pointing at the
        old id are rewritten in the same transaction.

        Raises:
            Conflict: If ``new_id`` is taken
        """
        if new_id < 1:
            raise InvalidArgument("new_id must be a positive integer", {"new_id": new_id})
        if new_id == obj_id:
            raise InvalidArgument("new_id must differ from current id", {"new_id": new_id})
        obj = await self.arena.require(obj_id)
        if obj.is_type:
            raise InvalidArgument("Cannot change ID of metadata object", {"id": obj_id})
        if await self.arena.get(new_id) is not None:
            raise Conflict(f"ID {new_id} is already in use", {"new_id": new_id})

        references = await self.arena.find(ArenaRow.t == obj.t, ArenaRow.up.in_(self.arena.type_ids()))
        await self.arena.update_row(obj_id, id=new_id)
        await self.arena.update_where([ArenaRow.up == obj_id], up=new_id)
        await self.arena.update_where([ArenaRow.t == obj_id], t=new_id)
        if references:
            await self.arena.update_where(
                [ArenaRow.t.in_([r.id for r in references]), ArenaRow.val == str(obj_id)],
                val=str(new_id),
            )
        logger.info(f"Object id changed in {self.namespace}: {obj_id} -> {new_id}")
        return Entity(id=new_id, up=obj.up, ord=obj.ord, t=obj.t, val=obj.val)
