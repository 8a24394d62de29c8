"""
Tests for the schema registry: types, requisites, references and cascades.
"""
import pytest

from objdb.base_types import BaseKind, BaseType, EMAIL, PASSWORD, ROLE, USER, USER_ROLE
from objdb.entity_store import EntityStore
from objdb.errors import Conflict, HasDependents, HasValues, InvalidArgument, InvalidReference, NotFound
from objdb.namespaces import create_namespace, require_namespace
from objdb.schema_registry import SchemaRegistry


@pytest.fixture
def registry(async_session, demo, cache):
    return SchemaRegistry(async_session, "demo", cache)


@pytest.fixture
def store(async_session, registry):
    return EntityStore(async_session, "demo", registry)


# ============================================================================
# Namespace Seeding
# ============================================================================

@pytest.mark.asyncio
async def test_seeded_user_type(registry):
    user = await registry.get_type(USER)
    assert user.name == "User"
    assert user.unique is True
    ids = [r.id for r in user.requisites]
    assert ids[:3] == [PASSWORD, EMAIL, USER_ROLE]
    password = user.requisite(PASSWORD)
    assert password.required is True
    assert password.t == BaseType.PWD
    role = user.requisite(USER_ROLE)
    assert role.is_reference
    assert role.reference_type == ROLE


@pytest.mark.asyncio
async def test_namespace_duplicate_and_missing(async_session, demo):
    with pytest.raises(Conflict):
        await create_namespace(async_session, "demo", "admin", "secret1")
    with pytest.raises(InvalidArgument):
        await create_namespace(async_session, "1bad", "admin", "secret1")
    with pytest.raises(NotFound):
        await require_namespace(async_session, "nowhere")
    assert await require_namespace(async_session, "demo") == "demo"


# ============================================================================
# Types
# ============================================================================

@pytest.mark.asyncio
async def test_create_type_defaults(registry):
    type_id = await registry.create_type("Person")
    person = await registry.get_type(type_id)
    assert person.name == "Person"
    assert person.base_id == BaseType.CHARS
    assert person.unique is False
    assert person.requisites == []


@pytest.mark.asyncio
async def test_type_columns_read_as_scalars(registry):
    type_id = await registry.create_type("Person", "container")
    person = await registry.get_type(type_id)
    assert person.base_id == BaseType.CONTAINER == 1
    row = await registry.arena.get(type_id)
    assert isinstance(row.t, int)
    assert isinstance(row.up, int)
    assert row.val == "Person"


@pytest.mark.asyncio
async def test_create_type_by_kind_name(registry):
    type_id = await registry.create_type("Amount", "number", unique=True)
    amount = await registry.get_type(type_id)
    assert amount.kind == BaseKind.NUMBER
    assert amount.unique is True


@pytest.mark.asyncio
async def test_create_type_requires_name_and_basic_base(registry):
    with pytest.raises(InvalidArgument):
        await registry.create_type("")
    with pytest.raises(InvalidArgument):
        await registry.create_type("Person", USER)
    with pytest.raises(InvalidArgument):
        await registry.create_type("Person", "nonsense")


@pytest.mark.asyncio
async def test_rename_type(registry):
    type_id = await registry.create_type("Persn")
    renamed = await registry.rename_type(type_id, name="Person", base="MEMO", unique=True)
    assert renamed.name == "Person"
    assert renamed.base_id == BaseType.MEMO
    assert renamed.unique is True


@pytest.mark.asyncio
async def test_get_type_rejects_objects(registry, store):
    type_id = await registry.create_type("Person")
    obj = await store.create(type_id, "Alice")
    assert await registry.find_type(obj.id) is None
    with pytest.raises(NotFound):
        await registry.get_type(obj.id)


@pytest.mark.asyncio
async def test_list_types_excludes_base_rows(registry):
    type_id = await registry.create_type("Person")
    names = [row.val for row in await registry.list_types()]
    assert "Person" in names
    assert "User" in names
    assert "SHORT" not in names
    assert type_id in [row.id for row in await registry.list_types()]


@pytest.mark.asyncio
async def test_clone_type_copies_requisites(registry):
    type_id = await registry.create_type("Person")
    await registry.add_requisite(type_id, "SHORT", "Email", alias="email")
    clone_id = await registry.clone_type(type_id)
    clone = await registry.get_type(clone_id)
    assert clone.name == "Person copy"
    assert [r.raw for r in clone.requisites] == [":ALIAS=email:Email"]


@pytest.mark.asyncio
async def test_system_types_cannot_be_deleted(registry):
    with pytest.raises(InvalidArgument):
        await registry.delete_type(USER, cascade=True)


# ============================================================================
# Requisites
# ============================================================================

@pytest.mark.asyncio
async def test_add_requisite_with_modifiers(registry):
    type_id = await registry.create_type("Person", "container")
    req_id = await registry.add_requisite(type_id, "SHORT", "Email", alias="email", required=True)
    req = (await registry.get_type(type_id)).requisite(req_id)
    assert req.raw == ":!NULL::ALIAS=email:Email"
    assert req.name == "Email"
    assert req.alias == "email"
    assert req.label == "email"
    assert req.required is True
    assert req.multi is False


@pytest.mark.parametrize("name,alias", [
    ("Email", "a:b"),
    ("a:MULTI:b", None),
    ("x:ALIAS=y:z", "mail"),
])
@pytest.mark.asyncio
async def test_requisite_names_must_survive_modifiers(registry, name, alias):
    type_id = await registry.create_type("Person")
    with pytest.raises(InvalidArgument):
        await registry.add_requisite(type_id, "SHORT", name, alias=alias)
    assert (await registry.get_type(type_id)).requisites == []


@pytest.mark.asyncio
async def test_rewrites_reject_unreadable_alias_or_name(registry):
    type_id = await registry.create_type("Person")
    req_id = await registry.add_requisite(type_id, "SHORT", "Email", alias="email")
    with pytest.raises(InvalidArgument):
        await registry.set_alias(req_id, "a:b")
    with pytest.raises(InvalidArgument):
        await registry.set_attrs(req_id, name="x:!NULL:y")
    req = await registry.get_requisite(req_id)
    assert req.raw == ":ALIAS=email:Email"


@pytest.mark.asyncio
async def test_requisite_order_is_sequenced_per_type(registry):
    type_id = await registry.create_type("Person")
    first = await registry.add_requisite(type_id, "SHORT", "Email")
    second = await registry.add_requisite(type_id, "NUMBER", "Age")
    person = await registry.get_type(type_id)
    assert [r.id for r in person.requisites] == [first, second]
    assert [r.ord for r in person.requisites] == [1, 2]


@pytest.mark.asyncio
async def test_find_requisite_by_alias_or_name(registry):
    type_id = await registry.create_type("Person")
    email = await registry.add_requisite(type_id, "SHORT", "E-mail", alias="email")
    age = await registry.add_requisite(type_id, "NUMBER", "Age")
    person = await registry.get_type(type_id)
    assert person.find_requisite("EMAIL").id == email
    assert person.find_requisite("age").id == age
    assert person.find_requisite("phone") is None


@pytest.mark.asyncio
async def test_requisite_flags_toggle(registry):
    type_id = await registry.create_type("Person")
    req_id = await registry.add_requisite(type_id, "SHORT", "Email")

    assert (await registry.set_required(req_id)).required is True
    assert (await registry.set_required(req_id)).required is False
    assert (await registry.set_multi(req_id, True)).multi is True
    assert (await registry.set_alias(req_id, "mail")).alias == "mail"

    req = await registry.get_requisite(req_id)
    assert req.raw == ":MULTI::ALIAS=mail:Email"


@pytest.mark.asyncio
async def test_set_attrs_keeps_omitted_values(registry):
    type_id = await registry.create_type("Person")
    req_id = await registry.add_requisite(type_id, "SHORT", "Email", alias="mail", multi=True)
    req = await registry.set_attrs(req_id, name="E-mail", required=True)
    assert req.name == "E-mail"
    assert req.alias == "mail"
    assert req.required is True
    assert req.multi is True

    cleared = await registry.set_attrs(req_id, alias=None)
    assert cleared.alias is None


@pytest.mark.asyncio
async def test_move_requisite_up_and_set_order(registry):
    type_id = await registry.create_type("Person")
    a = await registry.add_requisite(type_id, "SHORT", "A")
    b = await registry.add_requisite(type_id, "SHORT", "B")
    c = await registry.add_requisite(type_id, "SHORT", "C")

    await registry.move_requisite_up(a)
    assert [r.id for r in (await registry.get_type(type_id)).requisites] == [a, b, c]

    await registry.move_requisite_up(c)
    assert [r.id for r in (await registry.get_type(type_id)).requisites] == [a, c, b]

    await registry.set_requisite_order(b, 1)
    person = await registry.get_type(type_id)
    assert [r.id for r in person.requisites] == [b, a, c]
    assert [r.ord for r in person.requisites] == [1, 2, 3]


@pytest.mark.asyncio
async def test_reference_requisite(registry):
    city = await registry.create_type("City")
    person = await registry.create_type("Person")
    req_id = await registry.create_reference(person, city)
    req = (await registry.get_type(person)).requisite(req_id)
    assert req.is_reference
    assert req.reference_type == city
    assert req.name == "City"
    assert req.base_id == BaseType.CHARS


@pytest.mark.asyncio
async def test_reference_to_missing_type(registry):
    person = await registry.create_type("Person")
    with pytest.raises(InvalidReference):
        await registry.add_requisite(person, 9999, "Ghost")
    with pytest.raises(InvalidReference):
        await registry.create_reference(person, int(BaseType.SHORT))


@pytest.mark.asyncio
async def test_self_reference_allowed(registry):
    person = await registry.create_type("Person")
    req_id = await registry.create_reference(person, person, "Manager")
    assert (await registry.get_requisite(req_id)).reference_type == person


@pytest.mark.asyncio
async def test_delete_requisite_with_values(registry, store):
    type_id = await registry.create_type("Person")
    req_id = await registry.add_requisite(type_id, "SHORT", "Email")
    obj = await store.create(type_id, "Alice", attributes={req_id: "a@x.com"})

    with pytest.raises(HasValues):
        await registry.delete_requisite(req_id)

    assert await registry.delete_requisite(req_id, forced=True) == type_id
    assert (await registry.get_type(type_id)).requisites == []
    assert await store.attributes(obj.id) == []


# ============================================================================
# Type Deletion
# ============================================================================

@pytest.mark.asyncio
async def test_delete_type_with_instance_needs_cascade(registry, store):
    type_id = await registry.create_type("Person")
    req_id = await registry.add_requisite(type_id, "SHORT", "Email")
    obj = await store.create(type_id, "Alice", attributes={req_id: "a@x.com"})

    with pytest.raises(HasDependents):
        await registry.delete_type(type_id)
    assert await registry.find_type(type_id) is not None

    await registry.delete_type(type_id, cascade=True)
    assert await registry.find_type(type_id) is None
    assert await store.arena.get(obj.id) is None
    assert await store.arena.get(req_id) is None
    assert await store.arena.children(obj.id) == []


@pytest.mark.asyncio
async def test_delete_empty_type(registry):
    type_id = await registry.create_type("Person")
    req_id = await registry.add_requisite(type_id, "SHORT", "Email")
    removed = await registry.delete_type(type_id)
    assert removed == 2
    assert await registry.arena.get(req_id) is None


@pytest.mark.asyncio
async def test_delete_referenced_type_cascades_references(registry, store):
    city = await registry.create_type("City")
    person = await registry.create_type("Person")
    ref_id = await registry.create_reference(person, city)
    paris = await store.create(city, "Paris")
    alice = await store.create(person, "Alice", attributes={ref_id: str(paris.id)})

    with pytest.raises(HasDependents):
        await registry.delete_type(city)

    await registry.delete_type(city, cascade=True)
    assert (await registry.get_type(person)).requisites == []
    assert await store.attributes(alice.id) == []
    assert await store.arena.get(alice.id) is not None
