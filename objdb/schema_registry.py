"""Catalog of types and requisites stored in the entity arena.

A type is an arena row with ``up == 0``; its ``t`` is the base type id and
its ``ord`` the unique flag. A requisite is a row whose ``up`` is the owning
type; its ``t`` is a base type id or, for references, the target type id,
and its ``val`` holds the encoded modifier string.
"""
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from .arena import ArenaRepository, Entity
from .base_types import BaseKind, BaseType, ROLE, USER, base_name, is_basic, kind_of, resolve_base
from .cache import Cache, get_cache, has_schema_changes, mark_schema_changed, schema_key
from .db_models import ArenaRow
from .errors import HasDependents, HasValues, InvalidArgument, InvalidReference, NotFound
from .modifiers import RequisiteModifiers, check_modifiers, decode_modifiers

logger = logging.getLogger(__name__)

DEFAULT_BASE = int(BaseType.CHARS)
SYSTEM_TYPES = frozenset([USER, ROLE])


@dataclass(frozen=True)
class RequisiteDescriptor:
    """Decoded requisite definition."""

    id: int
    type_id: int
    t: int
    ord: int
    raw: str
    target_base: Optional[int] = None

    @property
    def modifiers(self) -> RequisiteModifiers:
        return decode_modifiers(self.raw)

    @property
    def name(self) -> str:
        return self.modifiers.name

    @property
    def alias(self) -> Optional[str]:
        return self.modifiers.alias

    @property
    def required(self) -> bool:
        return self.modifiers.required

    @property
    def multi(self) -> bool:
        return self.modifiers.multi

    @property
    def label(self) -> str:
        return self.modifiers.label

    @property
    def is_reference(self) -> bool:
        return not is_basic(self.t)

    @property
    def reference_type(self) -> Optional[int]:
        return self.t if self.is_reference else None

    @property
    def base_id(self) -> int:
        """Base type id the stored values behave as (the target's base for references)."""
        if self.is_reference:
            return self.target_base if self.target_base is not None else int(BaseType.SHORT)
        return self.t

    @property
    def kind(self) -> BaseKind:
        return kind_of(self.t)

    @property
    def base_name(self) -> str:
        return base_name(self.base_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type_id": self.type_id,
            "t": self.t,
            "ord": self.ord,
            "raw": self.raw,
            "target_base": self.target_base,
        }


@dataclass(frozen=True)
class TypeDescriptor:
    """A type with its requisites in order."""

    id: int
    name: str
    base_id: int
    unique: bool
    requisites: List[RequisiteDescriptor] = field(default_factory=list)

    @property
    def kind(self) -> BaseKind:
        return kind_of(self.base_id)

    @property
    def base_name(self) -> str:
        return base_name(self.base_id)

    @property
    def is_basic(self) -> bool:
        return self.id == self.base_id

    def requisite(self, req_id: int) -> Optional[RequisiteDescriptor]:
        for req in self.requisites:
            if req.id == req_id:
                return req
        return None

    def find_requisite(self, key: str) -> Optional[RequisiteDescriptor]:
        """Look a requisite up by alias, then by name (case-insensitive)."""
        lowered = key.lower()
        for req in self.requisites:
            if req.alias and req.alias.lower() == lowered:
                return req
        for req in self.requisites:
            if req.name.lower() == lowered:
                return req
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "base_id": self.base_id,
            "unique": self.unique,
            "requisites": [r.to_dict() for r in self.requisites],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TypeDescriptor":
        return cls(
            id=data["id"],
            name=data["name"],
            base_id=data["base_id"],
            unique=data["unique"],
            requisites=[RequisiteDescriptor(**r) for r in data.get("requisites", [])],
        )


class SchemaRegistry:
    """Schema (DDL) operations for one namespace."""

    def __init__(self, db: AsyncSession, namespace: str, cache: Optional[Cache] = None):
        self.db = db
        self.namespace = namespace
        self.arena = ArenaRepository(db, namespace)
        self.cache = cache if cache is not None else get_cache()

    # ========================================================================
    # Lookups
    # ========================================================================

    async def _load_type(self, row: Entity) -> TypeDescriptor:
        rows = await self.arena.children(row.id)
        targets = {r.t for r in rows if not is_basic(r.t)}
        target_bases = {e.id: e.t for e in await self.arena.get_many(targets)}
        requisites = [
            RequisiteDescriptor(
                id=r.id,
                type_id=row.id,
                t=r.t,
                ord=r.ord,
                raw=r.val,
                target_base=target_bases.get(r.t),
            )
            for r in rows
        ]
        return TypeDescriptor(
            id=row.id,
            name=row.val,
            base_id=row.t,
            unique=bool(row.ord),
            requisites=requisites,
        )

    async def find_type(self, type_id: int) -> Optional[TypeDescriptor]:
        """
        Get a type descriptor, or None when the id is not a type row.

        The cache is bypassed while this session holds uncommitted schema
        changes, in both directions.
        """
        shared = not has_schema_changes(self.db, self.namespace)
        if shared:
            cached = await self.cache.get(schema_key(self.namespace, type_id))
            if cached:
                return TypeDescriptor.from_dict(cached)

        row = await self.arena.get(type_id)
        if row is None or not row.is_type:
            return None
        descriptor = await self._load_type(row)
        if shared:
            await self.cache.set(schema_key(self.namespace, type_id), descriptor.to_dict())
        return descriptor

    async def get_type(self, type_id: int) -> TypeDescriptor:
        """
        Get a type descriptor.

        Raises:
            NotFound: If the id is not a type
        """
        descriptor = await self.find_type(type_id)
        if descriptor is None:
            raise NotFound("Type not found", {"id": type_id})
        return descriptor

    async def _require_user_type(self, type_id: int) -> Entity:
        row = await self.arena.get(type_id)
        if row is None or not row.is_type or row.id == row.t:
            raise NotFound("Type not found", {"id": type_id})
        return row

    async def list_types(self) -> List[Entity]:
        """User-defined type rows ordered by name."""
        return await self.arena.find(
            ArenaRow.up == 0,
            ArenaRow.id != ArenaRow.t,
            ArenaRow.val != "",
            ArenaRow.t != 0,
            order_by=(ArenaRow.val, ArenaRow.id),
        )

    async def get_requisite(self, req_id: int) -> RequisiteDescriptor:
        """
        Get a requisite definition.

        Raises:
            NotFound: If the id is not a requisite of a type
        """
        row = await self.arena.get(req_id)
        if row is None or row.up == 0:
            raise NotFound("Requisite not found", {"id": req_id})
        owner = await self.arena.get(row.up)
        if owner is None or not owner.is_type:
            raise NotFound("Requisite not found", {"id": req_id})
        target_base = None
        if not is_basic(row.t):
            target = await self.arena.get(row.t)
            target_base = target.t if target else None
        return RequisiteDescriptor(
            id=row.id, type_id=row.up, t=row.t, ord=row.ord, raw=row.val, target_base=target_base,
        )

    def _encode(self, modifiers: RequisiteModifiers) -> str:
        try:
            check_modifiers(modifiers.name, modifiers.alias)
        except ValueError as e:
            raise InvalidArgument(str(e), {"name": modifiers.name[:64], "alias": (modifiers.alias or "")[:64]}) from e
        return modifiers.encode()

    async def _invalidate(self) -> None:
        # Invalidated again by flush_schema_changes when the transaction ends
        mark_schema_changed(self.db, self.namespace)
        await self.cache.invalidate_schema(self.namespace)

    async def _check_base(self, base: Any) -> int:
        try:
            base_id = resolve_base(base if base not in (None, "") else DEFAULT_BASE)
        except ValueError as e:
            raise InvalidArgument(str(e), {"base": str(base)}) from e
        if is_basic(base_id):
            return base_id
        target = await self.arena.get(base_id)
        if target is None or not target.is_type or target.id == target.t:
            raise InvalidReference(
                f"Referenced type {base_id} does not exist in {self.namespace}",
                {"target": base_id, "namespace": self.namespace},
            )
        return base_id

    # ========================================================================
    # Types
    # ========================================================================

    async def create_type(self, name: str, base: Any = DEFAULT_BASE, unique: bool = False) -> int:
        """
        Create a type.

        Args:
            name: Display name
            base: Base type (id, legacy name or kind name)
            unique: Values of the type must be unique

        Returns:
            Id of the new type
        """
        if not name:
            raise InvalidArgument("Type name (val) is required")
        base_id = await self._check_base(base)
        if not is_basic(base_id):
            raise InvalidArgument("A type must have a base kind; use a requisite to reference a type",
                                  {"base": base_id})
        row = await self.arena.insert(up=0, t=base_id, val=name, ord=1 if unique else 0)
        await self._invalidate()
        logger.info(f"Type created in {self.namespace}: id={row.id} base={base_name(base_id)}")
        return row.id

    async def rename_type(
        self,
        type_id: int,
        name: Optional[str] = None,
        base: Any = None,
        unique: Optional[bool] = None,
    ) -> TypeDescriptor:
        """Rename a type, and optionally change its base kind or unique flag."""
        row = await self._require_user_type(type_id)
        values: Dict[str, Any] = {}
        if name is not None:
            if not name:
                raise InvalidArgument("Type name (val) is required")
            values["val"] = name
        if base is not None and base != "":
            base_id = await self._check_base(base)
            if not is_basic(base_id):
                raise InvalidArgument("A type must have a base kind", {"base": base_id})
            values["t"] = base_id
        if unique is not None:
            values["ord"] = 1 if unique else 0
        if values:
            await self.arena.update_row(row.id, **values)
            await self._invalidate()
        return await self.get_type(type_id)

    async def _instance_ids(self, type_id: int) -> List[int]:
        type_ids = self.arena.type_ids()
        rows = await self.arena.find(
            ArenaRow.t == type_id,
            ArenaRow.up != 0,
            ArenaRow.up.not_in(type_ids),
        )
        return [r.id for r in rows]

    async def _referencing_requisites(self, type_id: int) -> List[Entity]:
        type_ids = self.arena.type_ids()
        return await self.arena.find(
            ArenaRow.t == type_id,
            ArenaRow.up != 0,
            ArenaRow.up.in_(type_ids),
        )

    async def delete_type(self, type_id: int, cascade: bool = False) -> int:
        """
        Delete a type with its requisites.

        Without ``cascade`` the type must have no instances and no requisite
        of another type may reference it. With ``cascade`` the instances,
        their attribute rows and the referencing requisites with their
        stored values go too.

        Returns:
            Number of rows removed

        Raises:
            HasDependents: If dependents exist and cascade is off
        """
        row = await self._require_user_type(type_id)
        if row.id in SYSTEM_TYPES:
            raise InvalidArgument(f"You can't delete system type {type_id}", {"id": type_id})

        instances = await self._instance_ids(type_id)
        references = await self._referencing_requisites(type_id)
        if (instances or references) and not cascade:
            raise HasDependents(
                f"Type {type_id} has {len(instances)} instance(s) and {len(references)} reference(s)",
                {"id": type_id, "instances": len(instances), "references": len(references)},
            )

        doomed = set(instances)
        doomed.update(r.id for r in references)
        requisites = await self.arena.children(type_id)
        doomed.update(r.id for r in requisites)
        # Stored values of the referencing requisites
        if references:
            values = await self.arena.find(ArenaRow.t.in_([r.id for r in references]), ArenaRow.up != 0)
            doomed.update(v.id for v in values)
        doomed.update(await self.arena.descendants(instances))
        doomed.add(type_id)

        removed = await self.arena.delete_ids(doomed)
        await self._invalidate()
        logger.info(f"Type deleted in {self.namespace}: id={type_id} rows={removed} cascade={cascade}")
        return removed

    async def clone_type(self, source_id: int, name: Optional[str] = None) -> int:
        """Copy a type and its requisite definitions (not its data)."""
        source = await self._require_user_type(source_id)
        new_row = await self.arena.insert(up=0, t=source.t, val=name or f"{source.val} copy", ord=source.ord)
        for req in await self.arena.children(source_id):
            await self.arena.insert(up=new_row.id, t=req.t, val=req.val, ord=req.ord)
        await self._invalidate()
        logger.info(f"Type cloned in {self.namespace}: {source_id} -> {new_row.id}")
        return new_row.id

    # ========================================================================
    # Requisites
    # ========================================================================

    async def add_requisite(
        self,
        type_id: int,
        base: Any = DEFAULT_BASE,
        name: str = "",
        alias: Optional[str] = None,
        required: bool = False,
        multi: bool = False,
    ) -> int:
        """
        Add a requisite to a type.

        ``base`` may be a basic kind or the id of another type in this
        namespace, which makes the requisite a reference to that type.

        Raises:
            NotFound: If the owning type does not exist
            InvalidReference: If the referenced type does not exist
            InvalidArgument: If the name or alias collides with the modifier markers
        """
        await self._require_user_type(type_id)
        base_id = await self._check_base(base)
        if not name:
            if is_basic(base_id):
                raise InvalidArgument("Requisite name (val) is required")
            target = await self.arena.get(base_id)
            name = target.val
        modifiers = RequisiteModifiers(name=name, alias=alias or None, required=required, multi=multi)
        row = await self.arena.insert(up=type_id, t=base_id, val=self._encode(modifiers), ord_per_type=False)
        await self._invalidate()
        logger.info(f"Requisite added in {self.namespace}: id={row.id} type={type_id} t={base_id}")
        return row.id

    async def create_reference(self, owner_type_id: int, target_type_id: int, name: Optional[str] = None) -> int:
        """Add a requisite to ``owner_type_id`` whose values point at ``target_type_id`` objects."""
        if is_basic(target_type_id):
            raise InvalidReference(f"Invalid {target_type_id} type", {"target": target_type_id})
        return await self.add_requisite(owner_type_id, target_type_id, name or "")

    async def _rewrite(self, req_id: int, **changes) -> RequisiteDescriptor:
        req = await self.get_requisite(req_id)
        encoded = self._encode(req.modifiers.replace(**changes))
        await self.arena.set_value(req_id, encoded)
        await self._invalidate()
        return replace(req, raw=encoded)

    async def set_alias(self, req_id: int, alias: Optional[str]) -> RequisiteDescriptor:
        return await self._rewrite(req_id, alias=alias or None)

    async def set_required(self, req_id: int, required: Optional[bool] = None) -> RequisiteDescriptor:
        """Set the required flag, or toggle it when ``required`` is None."""
        if required is None:
            required = not (await self.get_requisite(req_id)).required
        return await self._rewrite(req_id, required=required)

    async def set_multi(self, req_id: int, multi: Optional[bool] = None) -> RequisiteDescriptor:
        """Set the multi-value flag, or toggle it when ``multi`` is None."""
        if multi is None:
            multi = not (await self.get_requisite(req_id)).multi
        return await self._rewrite(req_id, multi=multi)

    async def set_attrs(
        self,
        req_id: int,
        name: Optional[str] = None,
        alias: Any = ...,
        required: Optional[bool] = None,
        multi: Optional[bool] = None,
    ) -> RequisiteDescriptor:
        """Change name, alias and flags in one write; omitted values are kept."""
        changes: Dict[str, Any] = {}
        if name:
            changes["name"] = name
        if alias is not ...:
            changes["alias"] = alias or None
        if required is not None:
            changes["required"] = required
        if multi is not None:
            changes["multi"] = multi
        return await self._rewrite(req_id, **changes)

    async def move_requisite_up(self, req_id: int) -> RequisiteDescriptor:
        """Swap a requisite with the one before it; no-op for the first."""
        req = await self.get_requisite(req_id)
        await self.arena.swap_with_previous(req_id, per_type=False)
        await self._invalidate()
        return req

    async def set_requisite_order(self, req_id: int, order: int) -> RequisiteDescriptor:
        """Put a requisite at 1-based position ``order`` among its siblings."""
        if order < 1:
            raise InvalidArgument("Invalid order", {"order": order})
        req = await self.get_requisite(req_id)
        await self.arena.move_to_position(req_id, order, per_type=False)
        await self._invalidate()
        return req

    async def delete_requisite(self, req_id: int, forced: bool = False) -> int:
        """
        Delete a requisite definition.

        Raises:
            HasValues: If objects store values for it and ``forced`` is off
        """
        req = await self.get_requisite(req_id)
        values = await self.arena.find(ArenaRow.t == req_id, ArenaRow.up != 0)
        if values and not forced:
            raise HasValues(
                f"Requisite {req_id} has {len(values)} stored value(s)",
                {"id": req_id, "values": len(values)},
            )
        doomed = {v.id for v in values}
        doomed.update(await self.arena.descendants(doomed))
        doomed.add(req_id)
        await self.arena.delete_ids(doomed)
        await self._invalidate()
        logger.info(f"Requisite deleted in {self.namespace}: id={req_id} values={len(values)}")
        return req.type_id
