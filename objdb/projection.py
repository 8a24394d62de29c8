"""Response shapes built from the arena: object lists, metadata and lookups.

Field names are read by existing clients and must stay as they are.
"""
from typing import Any, Dict, List, Optional
import logging

from .arena import Entity
from .base_types import SECRET_REQUISITES, BaseType, is_basic
from .config import settings
from .db_models import ArenaRow
from .entity_store import EntityStore
from .errors import InvalidArgument, NotFound
from .schema_registry import RequisiteDescriptor, SchemaRegistry, TypeDescriptor

logger = logging.getLogger(__name__)

# Base kinds that never show up as selectable terms
HIDDEN_TERM_BASES = (int(BaseType.CALCULATABLE), int(BaseType.BUTTON))

REF_OPTIONS_MAX = 500


class ProjectionEngine:
    """Read-side projections for one namespace."""

    def __init__(self, db, namespace: str, store: Optional[EntityStore] = None):
        self.db = db
        self.namespace = namespace
        self.store = store or EntityStore(db, namespace)
        self.registry: SchemaRegistry = self.store.registry
        self.arena = self.store.arena

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _values(self, descriptor: TypeDescriptor, objects: List[Entity]) -> Dict[int, Dict[int, List[str]]]:
        """Stored values per object and requisite, in write order; credentials are left out."""
        requisite_ids = {r.id for r in descriptor.requisites} - SECRET_REQUISITES
        values: Dict[int, Dict[int, List[str]]] = {obj.id: {} for obj in objects}
        if not objects or not requisite_ids:
            return values
        grouped = await self.store.attribute_map([obj.id for obj in objects])
        for obj_id, rows in grouped.items():
            for row in rows:
                if row.t in requisite_ids:
                    values[obj_id].setdefault(row.t, []).append(row.val)
        return values

    async def _names(self, ids) -> Dict[int, str]:
        ids = {int(i) for i in ids if str(i).isdigit()}
        return {e.id: e.val for e in await self.arena.get_many(ids)}

    async def _page(self, descriptor: TypeDescriptor, offset: int, limit: int, sort: Any = "ord",
                    descending: bool = False, **filters) -> List[Entity]:
        return await self.store.list_by_type(
            descriptor.id, offset=offset, limit=limit, sort=sort, descending=descending, **filters,
        )

    # ========================================================================
    # Object lists
    # ========================================================================

    async def full_list(
        self,
        type_id: int,
        offset: int = 0,
        limit: Optional[int] = None,
        sort: Any = "ord",
        descending: bool = False,
        **filters,
    ) -> Dict[str, Any]:
        """
        Objects of a type with their values and the metadata needed to render them.

        The ``req_*`` maps are keyed by requisite id (as strings); reference
        values carry the target's display value plus ``ref_<reqId>`` holding
        ``<targetType>:<targetId>``. Multiple values are comma-joined.
        """
        descriptor = await self.registry.get_type(type_id)
        objects = await self._page(descriptor, offset, limit or settings.max_limit, sort, descending, **filters)

        response: Dict[str, Any] = {
            "type": {
                "id": descriptor.id,
                "up": 0 if descriptor.is_basic else 1,
                "val": descriptor.name,
                "base": descriptor.base_name,
            },
            "base": {
                "id": str(descriptor.base_id),
                "unique": "unique" if descriptor.unique else "",
            },
            "object": [
                {"id": str(o.id), "val": o.val, "up": str(o.up), "base": str(o.t), "ord": str(o.ord)}
                for o in objects
            ],
        }
        if not descriptor.requisites:
            return response

        req_base, req_base_id, req_attrs, req_type, ref_type = {}, {}, {}, {}, {}
        req_order: List[str] = []
        for req in descriptor.requisites:
            key = str(req.id)
            req_base[key] = req.base_name
            req_base_id[key] = str(req.base_id)
            req_attrs[key] = req.raw
            req_type[key] = req.label
            req_order.append(key)
            if req.is_reference:
                ref_type[key] = str(req.t)

        values = await self._values(descriptor, objects)
        targets = await self._names(
            v for per_req in values.values()
            for req_id, items in per_req.items() if descriptor.requisite(req_id).is_reference
            for v in items
        )
        reqs: Dict[str, Dict[str, Any]] = {}
        for obj in objects:
            row: Dict[str, Any] = {}
            for req_id, items in values[obj.id].items():
                req = descriptor.requisite(req_id)
                key = str(req_id)
                if req.is_reference:
                    shown = [v for v in items if v.isdigit()]
                    if not shown:
                        continue
                    row[key] = ",".join(targets.get(int(v), "").replace(",", "&comma;") for v in shown)
                    row[f"ref_{key}"] = f"{req.t}:" + ",".join(shown)
                else:
                    nonempty = [v for v in items if v != ""]
                    if nonempty:
                        row[key] = ",".join(nonempty)
            if row:
                reqs[str(obj.id)] = row

        response.update({
            "req_base": req_base,
            "req_base_id": req_base_id,
            "req_attrs": req_attrs,
            "req_type": req_type,
            "req_order": req_order,
        })
        if ref_type:
            response["ref_type"] = ref_type
        if reqs:
            response["reqs"] = reqs
        return response

    async def compact_list(
        self,
        type_id: int,
        offset: int = 0,
        limit: Optional[int] = None,
        sort: Any = "ord",
        descending: bool = False,
        **filters,
    ) -> List[Dict[str, Any]]:
        """``[{i, u, o, r}]`` rows where ``r`` holds each requisite's last value in ``ord`` order."""
        descriptor = await self.registry.get_type(type_id)
        objects = await self._page(descriptor, offset, limit or settings.max_limit, sort, descending, **filters)
        values = await self._values(descriptor, objects)
        return [
            {
                "i": obj.id,
                "u": obj.up,
                "o": obj.ord,
                "r": [
                    values[obj.id][req.id][-1] if req.id in values[obj.id] else None
                    for req in descriptor.requisites
                ],
            }
            for obj in objects
        ]

    async def keyvalue_list(
        self,
        type_id: int,
        offset: int = 0,
        limit: Optional[int] = None,
        sort: Any = "ord",
        descending: bool = False,
        **filters,
    ) -> List[Dict[str, Any]]:
        """Plain rows keyed by requisite alias (or name); multi values come as lists."""
        descriptor = await self.registry.get_type(type_id)
        objects = await self._page(descriptor, offset, limit or settings.max_limit, sort, descending, **filters)
        values = await self._values(descriptor, objects)
        rows = []
        for obj in objects:
            row: Dict[str, Any] = {"id": obj.id, "val": obj.val, "up": obj.up, "ord": obj.ord}
            for req in descriptor.requisites:
                items = values[obj.id].get(req.id, [])
                if req.multi:
                    row[req.label] = items
                else:
                    row[req.label] = items[0] if items else None
            rows.append(row)
        return rows

    async def list_objects(
        self,
        type_id: int,
        parent_id: Optional[int] = None,
        offset: int = 0,
        limit: int = 50,
        search: str = "",
        value_filter: str = "",
        attribute_filters: Optional[Dict[int, str]] = None,
        sort: Any = "ord",
        descending: bool = False,
    ) -> Dict[str, Any]:
        """Paged ``{data, total, limit, offset}`` listing with substring filters."""
        filters: Dict[str, Any] = {"parent_id": parent_id, "search": search or None}
        if value_filter:
            filters["value_like"] = f"%{value_filter}%"
        if attribute_filters:
            filters["attribute_filters"] = {k: f"%{v}%" for k, v in attribute_filters.items()}
        limit = min(max(limit, 1), settings.max_limit)

        rows = await self.store.list_by_type(
            type_id, offset=offset, limit=limit, sort=sort, descending=descending, **filters,
        )
        total = await self.store.count_by_type(type_id, **filters)
        grouped = await self.store.attribute_map([r.id for r in rows])
        data = []
        for row in rows:
            reqs: Dict[str, str] = {}
            for child in grouped.get(row.id, []):
                if child.t not in SECRET_REQUISITES:
                    reqs[str(child.t)] = child.val
            data.append({**row.to_dict(), "reqs": reqs})
        return {"data": data, "total": total, "limit": limit, "offset": offset}

    # ========================================================================
    # Metadata
    # ========================================================================

    def _requisite_meta(self, req: RequisiteDescriptor) -> Dict[str, Any]:
        meta: Dict[str, Any] = {
            "id": str(req.id),
            "val": req.name,
            "type": str(req.base_id),
        }
        if req.is_reference:
            meta["ref"] = str(req.t)
            meta["ref_id"] = str(req.t)
        if req.raw != req.name:
            meta["attrs"] = req.raw
        return meta

    def _type_meta(self, descriptor: TypeDescriptor, up: int = 0) -> Dict[str, Any]:
        reqs = []
        for req in descriptor.requisites:
            meta = self._requisite_meta(req)
            meta = {"num": req.ord, "id": meta.pop("id"), "val": meta.pop("val"), "orig": str(req.t), **meta}
            reqs.append(meta)
        return {
            "id": str(descriptor.id),
            "up": str(up),
            "type": str(descriptor.base_id),
            "val": descriptor.name,
            "unique": "1" if descriptor.unique else "0",
            "reqs": reqs,
        }

    async def metadata(self, type_id: Optional[int] = None) -> Any:
        """
        Type definitions with their requisites.

        Returns a single definition when ``type_id`` is given, otherwise a
        list of every user type ordered by id.
        """
        if type_id:
            descriptor = await self.registry.find_type(type_id)
            if descriptor is None:
                return {"error": "Type not found"}
            return self._type_meta(descriptor)

        rows = await self.registry.list_types()
        result = []
        for row in sorted(rows, key=lambda r: r.id):
            result.append(self._type_meta(await self.registry.get_type(row.id)))
        return result

    async def object_meta(self, obj_id: int) -> Dict[str, Any]:
        """
        An entity with the requisite definitions that apply to it, keyed by order.

        Type rows describe their own requisites; data rows those of their type.

        Raises:
            NotFound: If the entity does not exist
        """
        entity = await self.arena.get(obj_id)
        if entity is None:
            raise NotFound("Object not found", {"id": obj_id})
        descriptor = await self.registry.find_type(entity.id if entity.is_type else entity.t)
        reqs: Dict[str, Any] = {}
        if descriptor is not None:
            for req in descriptor.requisites:
                reqs[str(req.ord)] = self._requisite_meta(req)
        return {
            "id": str(entity.id),
            "up": str(entity.up),
            "type": str(entity.t),
            "val": entity.val,
            "reqs": reqs,
        }

    async def dictionary(self, type_id: Optional[int] = None) -> Any:
        """Type rows as ``{id, name, baseType, order}``, with requisites for a single type."""
        if type_id:
            descriptor = await self.registry.get_type(type_id)
            row = await self.arena.require(type_id, "Type")
            return {
                "id": descriptor.id,
                "name": descriptor.name,
                "baseType": descriptor.base_id,
                "order": row.ord,
                "requisites": [
                    {"id": r.id, "name": r.name, "type": r.t, "order": r.ord}
                    for r in descriptor.requisites
                ],
            }
        rows = await self.arena.find(ArenaRow.up == 0, order_by=(ArenaRow.val, ArenaRow.id))
        return [{"id": r.id, "name": r.val, "baseType": r.t, "order": r.ord} for r in rows]

    async def terms(self) -> List[Dict[str, Any]]:
        """User types a client may pick from: ``[{id, type, name}]`` ordered by name."""
        rows = await self.registry.list_types()
        return [
            {"id": r.id, "type": r.t, "name": r.val}
            for r in rows
            if r.t not in HIDDEN_TERM_BASES
        ]

    async def reference_options(
        self,
        req_id: int,
        query: str = "",
        restrict: str = "",
        limit: Optional[int] = None,
    ) -> Dict[str, str]:
        """
        Objects a reference requisite may point at, as ``{id: value}`` ordered by value.

        Args:
            req_id: Reference requisite id
            query: Substring of the value, or ``@<id>`` for one object
            restrict: Comma-separated ids to choose from
            limit: Number of options (default ``settings.ddlist_items``, at most 500)
        """
        row = await self.arena.get(req_id)
        if row is None:
            raise NotFound("Reference not found", {"id": req_id})
        target = row.t
        if is_basic(target):
            raise InvalidArgument(f"Requisite {req_id} is not a reference", {"id": req_id})

        limit = min(limit or settings.ddlist_items, REF_OPTIONS_MAX)
        criteria = [ArenaRow.t == target, ArenaRow.up != 0, ArenaRow.up.not_in(self.arena.type_ids())]
        restrict_ids = [int(v) for v in str(restrict).split(",") if v.strip().isdigit()]
        if restrict_ids:
            criteria.append(ArenaRow.id.in_(restrict_ids))
        if query.startswith("@"):
            wanted = query[1:]
            if wanted.isdigit():
                criteria.append(ArenaRow.id == int(wanted))
        elif query:
            criteria.append(ArenaRow.val.like(f"%{query}%"))

        rows = await self.arena.find(*criteria, order_by=(ArenaRow.val, ArenaRow.id), limit=limit)
        return {str(r.id): (r.val or "--") for r in rows}
