"""Action vocabulary and dispatch.

Every legacy action code maps to one schema, data or query operation. The
code is validated and the caller's role checked before any store access.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Tuple
import logging

from .arena import Entity
from .auth import Identity
from .base_types import ACCOUNT_TYPES, GUARDED_REQUISITES, ROOT_ID, SELF_SERVICE_REQUISITES, USER
from .cache import Cache
from .config import settings
from .entity_store import EntityStore
from .errors import Forbidden, InvalidArgument, Unauthorized, UnknownAction
from .projection import ProjectionEngine
from .schema_registry import DEFAULT_BASE, SchemaRegistry
from .validation import TRUE_VALUES, extract_attributes, is_flag_set, optional_int, parse_id, parse_limit

logger = logging.getLogger(__name__)

ACTION_VERSION = 1


class ActionKind(str, Enum):
    """What an action touches, which decides who may run it."""

    DML = "dml"
    DDL = "ddl"
    QUERY = "query"


@dataclass(frozen=True)
class ActionSpec:
    code: str
    kind: ActionKind
    handler: str
    privileged: bool = False
    needs_target: bool = True


@dataclass
class ActionResult:
    """
    Outcome of a mutating action.

    ``envelope()`` is the JSON body; HTML callers are redirected to
    ``/<db>/<next_act>/<id>?<args>#<obj>``.
    """

    id: Any
    obj: Any = None
    next_act: str = ""
    args: str = ""
    warnings: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)
    fields: Tuple[str, ...] = ("id", "obj", "next_act", "args", "warnings")

    def envelope(self) -> Dict[str, Any]:
        body = {name: getattr(self, name) for name in self.fields}
        body.update(self.extra)
        return body


ACTIONS: Dict[str, ActionSpec] = {
    spec.code: spec
    for spec in (
        # DML
        ActionSpec("_m_new", ActionKind.DML, "create_object"),
        ActionSpec("_m_save", ActionKind.DML, "save_object"),
        ActionSpec("_m_set", ActionKind.DML, "set_attributes"),
        ActionSpec("_m_del", ActionKind.DML, "delete_object"),
        ActionSpec("_m_up", ActionKind.DML, "move_object_up"),
        ActionSpec("_m_ord", ActionKind.DML, "set_object_order"),
        ActionSpec("_m_move", ActionKind.DML, "move_object"),
        ActionSpec("_m_id", ActionKind.DML, "set_object_id", privileged=True),
        # DDL
        ActionSpec("_d_new", ActionKind.DDL, "create_type", privileged=True, needs_target=False),
        ActionSpec("_d_save", ActionKind.DDL, "save_type", privileged=True),
        ActionSpec("_d_del", ActionKind.DDL, "delete_type", privileged=True),
        ActionSpec("_d_clone", ActionKind.DDL, "clone_type", privileged=True),
        ActionSpec("_d_req", ActionKind.DDL, "add_requisite", privileged=True),
        ActionSpec("_d_alias", ActionKind.DDL, "set_alias", privileged=True),
        ActionSpec("_d_null", ActionKind.DDL, "set_required", privileged=True),
        ActionSpec("_d_multi", ActionKind.DDL, "set_multi", privileged=True),
        ActionSpec("_d_attrs", ActionKind.DDL, "set_requisite_attrs", privileged=True),
        ActionSpec("_d_up", ActionKind.DDL, "move_requisite_up", privileged=True),
        ActionSpec("_d_ord", ActionKind.DDL, "set_requisite_order", privileged=True),
        ActionSpec("_d_del_req", ActionKind.DDL, "delete_requisite", privileged=True),
        ActionSpec("_d_ref", ActionKind.DDL, "create_reference", privileged=True),
        # Queries
        ActionSpec("object", ActionKind.QUERY, "object_list"),
        ActionSpec("_dict", ActionKind.QUERY, "dictionary", needs_target=False),
        ActionSpec("_list", ActionKind.QUERY, "list_objects"),
        ActionSpec("metadata", ActionKind.QUERY, "metadata", needs_target=False),
        ActionSpec("obj_meta", ActionKind.QUERY, "object_meta"),
        ActionSpec("_ref_reqs", ActionKind.QUERY, "reference_options"),
        ActionSpec("terms", ActionKind.QUERY, "terms", needs_target=False),
    )
}

# Names used by newer clients for the same DDL actions
ALIASES: Dict[str, str] = {
    "_terms": "_d_new",
    "_patchterm": "_d_save",
    "_deleteterm": "_d_del",
    "_attributes": "_d_req",
    "_setalias": "_d_alias",
    "_setnull": "_d_null",
    "_setmulti": "_d_multi",
    "_moveup": "_d_up",
    "_setorder": "_d_ord",
    "_deletereq": "_d_del_req",
    "_references": "_d_ref",
    "_modifiers": "_d_attrs",
}

# Query actions that also accept the session token as a request parameter
PARAM_TOKEN_ACTIONS = frozenset(["object", "_dict", "_list", "metadata", "obj_meta", "_ref_reqs", "terms"])


def resolve_action(code: str) -> ActionSpec:
    """
    Canonical action for a code or alias.

    Raises:
        UnknownAction: If the code is not part of the vocabulary
    """
    canonical = ALIASES.get(code, code)
    spec = ACTIONS.get(canonical)
    if spec is None:
        raise UnknownAction(f"Unknown action {str(code)[:64]}", {"action": str(code)[:64]})
    return spec


def is_mutation(code: Optional[str]) -> bool:
    """True when ``code`` names a schema or data action; unknown codes are not mutations."""
    spec = ACTIONS.get(ALIASES.get(code, code)) if code else None
    return spec is not None and spec.kind != ActionKind.QUERY


def find_action_key(params: Mapping[str, Any]) -> Optional[str]:
    """First parameter key that names an action (``?_m_save&id=5`` style)."""
    for key in params:
        if key in ACTIONS or key in ALIASES:
            return key
    return None


def authorize(spec: ActionSpec, identity: Optional[Identity]) -> Identity:
    """
    Check that ``identity`` may run ``spec``.

    Raises:
        Unauthorized: Without an identity
        Forbidden: When the role is too weak for the action
    """
    if identity is None:
        raise Unauthorized("Authentication required", {"action": spec.code})
    if spec.privileged and not identity.is_privileged:
        raise Forbidden(
            f"Role {identity.role or '-'} may not run {spec.code}",
            {"action": spec.code, "role": identity.role},
        )
    if spec.kind != ActionKind.QUERY and identity.is_readonly:
        raise Forbidden(
            f"Role {identity.role} is read-only",
            {"action": spec.code, "role": identity.role},
        )
    return identity


def _scalar(params: Mapping[str, Any], name: str, default: Any = None) -> Any:
    value = params.get(name, default)
    if isinstance(value, (list, tuple)):
        return value[-1] if value else default
    return value


def _optional_flag(params: Mapping[str, Any], name: str) -> Optional[bool]:
    """None when the flag is absent, otherwise whether it is set."""
    if name not in params:
        return None
    return str(_scalar(params, name, "")).strip().lower() in TRUE_VALUES


class ActionDispatcher:
    """Runs action codes for one namespace on behalf of one identity."""

    def __init__(self, db, namespace: str, identity: Optional[Identity], cache: Optional[Cache] = None):
        self.db = db
        self.namespace = namespace
        self.identity = identity
        self.registry = SchemaRegistry(db, namespace, cache)
        self.store = EntityStore(db, namespace, self.registry)
        self.projections = ProjectionEngine(db, namespace, self.store)

    async def dispatch(self, code: str, target: Any = None, params: Optional[Mapping[str, Any]] = None) -> Any:
        """
        Run an action.

        Args:
            code: Action code or alias
            target: Id from the path (type, object or requisite, by action)
            params: Merged query and form parameters

        Returns:
            ``ActionResult`` for mutations, plain data for queries
        """
        spec = resolve_action(code)
        authorize(spec, self.identity)
        params = params or {}

        target_id = None
        if target not in (None, ""):
            target_id = parse_id(target, "id")
        elif spec.needs_target:
            raise InvalidArgument(f"{spec.code} needs an id", {"action": spec.code})

        handler: Callable[..., Awaitable[Any]] = getattr(self, spec.handler)
        logger.info(
            f"Dispatching {spec.code} in {self.namespace}: target={target_id} user={self.identity.user_id}"
        )
        return await handler(target_id, params)

    # ========================================================================
    # Account Protection
    # ========================================================================

    async def _is_account_row(self, entity: Entity) -> bool:
        """True for user and role objects, credential rows and rows stored under an account."""
        if entity.t in ACCOUNT_TYPES or entity.t in GUARDED_REQUISITES:
            return True
        if entity.up == ROOT_ID:
            return False
        parent = await self.store.arena.get(entity.up)
        return parent is not None and not parent.is_type and parent.t in ACCOUNT_TYPES

    def _forbid_account_write(self, obj_id: Any) -> None:
        logger.warning(
            f"Account write refused in {self.namespace}: id={obj_id} user={self.identity.user_id} "
            f"role={self.identity.role or '-'}"
        )
        raise Forbidden(
            f"Role {self.identity.role or '-'} may not change accounts",
            {"id": obj_id, "role": self.identity.role},
        )

    async def _check_account_write(
        self,
        obj_id: int,
        attributes: Iterable[int] = (),
        self_service: bool = False,
    ) -> None:
        """
        Refuse account changes to unprivileged callers.

        A caller may set its own password and email (``self_service``
        writes); any other change to a user or role object, to rows under
        one, or to role links and credentials needs a privileged role.

        Raises:
            Forbidden: When the caller may not make the change
        """
        if self.identity.is_privileged:
            return
        entity = await self.store.require_data(obj_id)
        keys = {int(k) for k in attributes}
        own = entity.t == USER and entity.id == self.identity.user_id
        if own and self_service and keys <= SELF_SERVICE_REQUISITES:
            return
        if keys & GUARDED_REQUISITES or await self._is_account_row(entity):
            self._forbid_account_write(obj_id)

    async def _check_account_parent(self, parent_id: int, type_id: int) -> None:
        if self.identity.is_privileged:
            return
        if type_id in ACCOUNT_TYPES:
            self._forbid_account_write(type_id)
        if parent_id != ROOT_ID:
            parent = await self.store.arena.get(parent_id)
            if parent is not None and not parent.is_type and await self._is_account_row(parent):
                self._forbid_account_write(parent_id)

    # ========================================================================
    # DML
    # ========================================================================

    async def create_object(self, type_id: int, params: Mapping[str, Any]) -> ActionResult:
        parent_id = optional_int(_scalar(params, "up"), ROOT_ID) or ROOT_ID
        if "type" in params:
            # _m_new/<parent>?type=<typeId>
            parent_id, type_id = type_id, parse_id(_scalar(params, "type"), "type")
        attributes = extract_attributes(params)
        main = attributes.pop(type_id, None)
        value = _scalar(params, "val")
        if not value and main is not None:
            value = _scalar({"main": main}, "main")
        value = value or ""
        order = optional_int(_scalar(params, "ord"))

        await self._check_account_parent(parent_id, type_id)
        obj = await self.store.create(type_id, value, parent_id, order=order, attributes=attributes)
        descriptor = await self.registry.get_type(type_id)
        has_requisites = bool(descriptor.requisites)
        if has_requisites:
            args = "new1=1&"
        else:
            args = f"F_U={parent_id}" if parent_id != ROOT_ID else ""
        return ActionResult(
            id=obj.id,
            obj=obj.id,
            next_act="edit_obj" if has_requisites else "object",
            args=args,
            extra={"ord": obj.ord, "val": obj.val},
            fields=("id", "obj", "next_act", "args"),
        )

    async def save_object(self, obj_id: int, params: Mapping[str, Any]) -> ActionResult:
        obj = await self.store.require_data(obj_id)
        if "copybtn" in params:
            await self._check_account_write(obj.id)
            copy = await self.store.copy(obj.id)
            return ActionResult(
                id=obj.t,
                obj=copy.id,
                next_act="object",
                args=f"copied1=1&F_U={copy.up}&F_I={copy.id}",
            )

        attributes = extract_attributes(params)
        value = attributes.pop(obj.t, None)
        if value is None and "val" in params:
            value = _scalar(params, "val")
        if isinstance(value, (list, tuple)):
            value = value[-1] if value else ""
        renames = value is not None and str(value) != obj.val
        await self._check_account_write(obj.id, attributes, self_service=not renames)
        saved = await self.store.save(obj.id, value, attributes)
        return ActionResult(
            id=saved.t,
            obj=saved.id,
            next_act="object",
            args=f"saved1=1&F_U={saved.up}&F_I={saved.id}",
        )

    async def set_attributes(self, obj_id: int, params: Mapping[str, Any]) -> ActionResult:
        attributes = extract_attributes(params)
        await self._check_account_write(obj_id, attributes, self_service=True)
        last = await self.store.set_attributes(obj_id, attributes)
        return ActionResult(
            id=str(last),
            obj=str(obj_id),
            next_act="nul",
            args="",
            extra={"a": "nul"},
            fields=("id", "obj", "args"),
        )

    async def delete_object(self, obj_id: int, params: Mapping[str, Any]) -> ActionResult:
        cascade = is_flag_set(params, "cascade") or "forced" in params
        await self._check_account_write(obj_id)
        obj = await self.store.delete(obj_id, cascade=cascade)
        return ActionResult(id=obj.t, obj=obj.id, next_act="object", args="")

    async def move_object_up(self, obj_id: int, params: Mapping[str, Any]) -> ActionResult:
        await self._check_account_write(obj_id)
        obj = await self.store.move_up(obj_id)
        return ActionResult(id=obj.t, obj=None, next_act="object", args=f"F_U={obj.up}")

    async def set_object_order(self, obj_id: int, params: Mapping[str, Any]) -> ActionResult:
        order = optional_int(_scalar(params, "order", _scalar(params, "ord")))
        if order is None:
            raise InvalidArgument("order must be a positive integer")
        await self._check_account_write(obj_id)
        obj = await self.store.set_order(obj_id, order)
        return ActionResult(
            id=obj.up,
            obj=obj.up,
            next_act=_scalar(params, "next_act") or "_m_ord",
            args="",
        )

    async def move_object(self, obj_id: int, params: Mapping[str, Any]) -> ActionResult:
        parent_id = parse_id(_scalar(params, "up"), "up")
        await self._check_account_write(obj_id)
        obj = await self.store.require_data(obj_id)
        await self._check_account_parent(parent_id, obj.t)
        obj = await self.store.move_to_parent(obj_id, parent_id)
        return ActionResult(
            id=obj.id,
            obj=None,
            next_act="object",
            args=f"moved&&F_U={parent_id}" if parent_id != ROOT_ID else "moved&",
        )

    async def set_object_id(self, obj_id: int, params: Mapping[str, Any]) -> ActionResult:
        new_id = parse_id(_scalar(params, "new_id"), "new_id")
        obj = await self.store.set_id(obj_id, new_id)
        return ActionResult(
            id=obj.id,
            obj=obj.id,
            next_act=_scalar(params, "next_act") or "_m_id",
            args="",
        )

    # ========================================================================
    # DDL
    # ========================================================================

    def _ddl(self, id: Any, obj: Any) -> ActionResult:
        return ActionResult(id=id, obj=obj, next_act="edit_types", args="ext")

    async def create_type(self, parent_id: Optional[int], params: Mapping[str, Any]) -> ActionResult:
        name = _scalar(params, "val") or _scalar(params, "name") or ""
        base = _scalar(params, "t") or _scalar(params, "base")
        type_id = await self.registry.create_type(
            name,
            base if base not in (None, "") else DEFAULT_BASE,
            unique="unique" in params,
        )
        return self._ddl(parent_id or 0, type_id)

    async def save_type(self, type_id: int, params: Mapping[str, Any]) -> ActionResult:
        name = _scalar(params, "val") or _scalar(params, "name")
        base = _scalar(params, "t")
        await self.registry.rename_type(
            type_id,
            name=name if name else None,
            base=base if base not in (None, "") else None,
            unique="unique" in params,
        )
        return self._ddl(type_id, type_id)

    async def delete_type(self, type_id: int, params: Mapping[str, Any]) -> ActionResult:
        await self.registry.delete_type(type_id, cascade=is_flag_set(params, "cascade"))
        return self._ddl(type_id, None)

    async def clone_type(self, type_id: int, params: Mapping[str, Any]) -> ActionResult:
        new_id = await self.registry.clone_type(type_id, _scalar(params, "val") or _scalar(params, "name"))
        return self._ddl(type_id, new_id)

    async def add_requisite(self, type_id: int, params: Mapping[str, Any]) -> ActionResult:
        base = _scalar(params, "t")
        req_id = await self.registry.add_requisite(
            type_id,
            base if base not in (None, "") else DEFAULT_BASE,
            name=_scalar(params, "val") or _scalar(params, "name") or "",
            alias=_scalar(params, "alias") or None,
            required=is_flag_set(params, "required"),
            multi=is_flag_set(params, "multi"),
        )
        return self._ddl(req_id, type_id)

    async def set_alias(self, req_id: int, params: Mapping[str, Any]) -> ActionResult:
        req = await self.registry.set_alias(req_id, _scalar(params, "alias") or _scalar(params, "val") or None)
        return self._ddl(req.type_id, req.type_id)

    async def set_required(self, req_id: int, params: Mapping[str, Any]) -> ActionResult:
        req = await self.registry.set_required(req_id, _optional_flag(params, "required"))
        return self._ddl(req.id, req.type_id)

    async def set_multi(self, req_id: int, params: Mapping[str, Any]) -> ActionResult:
        req = await self.registry.set_multi(req_id, _optional_flag(params, "multi"))
        return self._ddl(req.id, req.type_id)

    async def set_requisite_attrs(self, req_id: int, params: Mapping[str, Any]) -> ActionResult:
        alias: Any = ...
        if "alias" in params:
            alias = _scalar(params, "alias") or None
        req = await self.registry.set_attrs(
            req_id,
            name=_scalar(params, "name") or _scalar(params, "val") or None,
            alias=alias,
            required=_optional_flag(params, "required"),
            multi=_optional_flag(params, "multi"),
        )
        return self._ddl(req.id, req.type_id)

    async def move_requisite_up(self, req_id: int, params: Mapping[str, Any]) -> ActionResult:
        req = await self.registry.move_requisite_up(req_id)
        return self._ddl(req.type_id, req.type_id)

    async def set_requisite_order(self, req_id: int, params: Mapping[str, Any]) -> ActionResult:
        order = optional_int(_scalar(params, "order"))
        if order is None or order < 1:
            raise InvalidArgument("Invalid order", {"order": _scalar(params, "order")})
        req = await self.registry.set_requisite_order(req_id, order)
        return self._ddl(req.type_id, req.type_id)

    async def delete_requisite(self, req_id: int, params: Mapping[str, Any]) -> ActionResult:
        forced = is_flag_set(params, "forced") or is_flag_set(params, "cascade")
        type_id = await self.registry.delete_requisite(req_id, forced=forced)
        return self._ddl(type_id, type_id)

    async def create_reference(self, target_type_id: int, params: Mapping[str, Any]) -> ActionResult:
        owner = parse_id(_scalar(params, "up"), "up")
        req_id = await self.registry.create_reference(
            owner, target_type_id, _scalar(params, "val") or _scalar(params, "name"),
        )
        return self._ddl(target_type_id, req_id)

    # ========================================================================
    # Queries
    # ========================================================================

    async def object_list(self, type_id: int, params: Mapping[str, Any]) -> Any:
        offset, limit = parse_limit(
            _scalar(params, "LIMIT", _scalar(params, "limit")),
            settings.max_limit,
            settings.max_limit,
        )
        filters: Dict[str, Any] = {}
        parent = optional_int(_scalar(params, "F_U"))
        if parent is not None:
            filters["parent_id"] = parent
        if f"F_{type_id}" in params:
            filters["value"] = str(_scalar(params, f"F_{type_id}"))
        sort = "val" if _scalar(params, "order_val") == "val" else "ord"
        descending = str(_scalar(params, "desc", "")) == "1"

        if "JSON_DATA" in params:
            render = self.projections.compact_list
        elif "JSON_KV" in params:
            render = self.projections.keyvalue_list
        else:
            render = self.projections.full_list
        return await render(type_id, offset=offset, limit=limit, sort=sort, descending=descending, **filters)

    async def dictionary(self, type_id: Optional[int], params: Mapping[str, Any]) -> Any:
        return await self.projections.dictionary(type_id)

    async def list_objects(self, type_id: int, params: Mapping[str, Any]) -> Dict[str, Any]:
        limit = optional_int(_scalar(params, "LIMIT", _scalar(params, "limit")), 50) or 50
        offset = optional_int(_scalar(params, "F", _scalar(params, "offset")), 0) or 0
        value_filter = ""
        attribute_filters: Dict[int, str] = {}
        for key in params:
            if key.startswith("f_") and key[2:].isdigit():
                text = _scalar(params, key)
                if not text:
                    continue
                if key == "f_0":
                    value_filter = str(text)
                else:
                    attribute_filters[int(key[2:])] = str(text)
        raw_sort = str(_scalar(params, "sort", "") or "")
        sort: Any = "ord"
        if raw_sort == "0":
            sort = "val"
        elif raw_sort.isdigit():
            sort = int(raw_sort)
        elif raw_sort:
            sort = raw_sort
        return await self.projections.list_objects(
            type_id,
            parent_id=optional_int(_scalar(params, "up")),
            offset=max(offset, 0),
            limit=limit,
            search=str(_scalar(params, "q", "") or ""),
            value_filter=value_filter,
            attribute_filters=attribute_filters,
            sort=sort,
            descending=str(_scalar(params, "dir", "asc")).lower() == "desc",
        )

    async def metadata(self, type_id: Optional[int], params: Mapping[str, Any]) -> Any:
        return await self.projections.metadata(type_id)

    async def object_meta(self, obj_id: int, params: Mapping[str, Any]) -> Dict[str, Any]:
        return await self.projections.object_meta(obj_id)

    async def reference_options(self, req_id: int, params: Mapping[str, Any]) -> Dict[str, str]:
        return await self.projections.reference_options(
            req_id,
            query=str(_scalar(params, "q", "") or ""),
            restrict=str(_scalar(params, "r", "") or ""),
            limit=optional_int(_scalar(params, "LIMIT", _scalar(params, "limit"))),
        )

    async def terms(self, target: Optional[int], params: Mapping[str, Any]) -> Any:
        return await self.projections.terms()
