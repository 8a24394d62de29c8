"""
Tests for report configuration and execution.
"""
import json

import pytest

from objdb.accounts import AccountRepository
from objdb.base_types import EMAIL, PASSWORD, USER, USER_ROLE
from objdb.entity_store import EntityStore
from objdb.errors import InvalidArgument, NotFound
from objdb.reports import ReportCatalog, ReportColumn, ReportDefinition, ReportRunner, load_reports, rows_to_csv
from objdb.schema_registry import SchemaRegistry


USERS_REPORT = {
    "id": 1,
    "name": "Users",
    "type_id": USER,
    "columns": [
        {"name": "Login", "requisite_id": None},
        {"name": "Email", "requisite_id": EMAIL},
        {"name": "Role", "requisite_id": USER_ROLE},
    ],
    "limit": 500,
}


@pytest.fixture
def catalog_file(tmp_path):
    path = tmp_path / "reports.json"
    path.write_text(json.dumps({"reports": [USERS_REPORT]}), encoding="utf-8")
    return str(path)


@pytest.fixture
async def runner(async_session, demo, cache, catalog_file):
    accounts = AccountRepository(async_session, "demo")
    bob = await accounts.create_user("bob", "secret2")
    store = EntityStore(async_session, "demo", SchemaRegistry(async_session, "demo", cache))
    await store.set_attributes(bob, {EMAIL: "bob@x.com"})
    return ReportRunner(async_session, "demo", load_reports(catalog_file), store)


# ============================================================================
# Configuration
# ============================================================================

def test_load_reports_object_and_list_forms(tmp_path, catalog_file):
    assert [r.name for r in load_reports(catalog_file).reports] == ["Users"]

    bare = tmp_path / "bare.json"
    bare.write_text(json.dumps([USERS_REPORT]), encoding="utf-8")
    assert load_reports(str(bare)).find(1).name == "Users"


def test_load_reports_missing_file(tmp_path):
    assert load_reports(str(tmp_path / "missing.json")).reports == []


def test_load_reports_invalid(tmp_path):
    path = tmp_path / "invalid.json"
    path.write_text(json.dumps({"reports": [{"id": 1, "name": "Broken"}]}), encoding="utf-8")
    with pytest.raises(InvalidArgument):
        load_reports(str(path))


def test_duplicate_column_names_rejected():
    with pytest.raises(ValueError):
        ReportDefinition(
            id=1, name="Dup", type_id=USER,
            columns=[{"name": "A"}, {"name": "A", "requisite_id": EMAIL}],
        )


def test_catalog_find_by_id_or_name():
    catalog = ReportCatalog(reports=[ReportDefinition(**USERS_REPORT)])
    assert catalog.find(1).name == "Users"
    assert catalog.find("1").name == "Users"
    assert catalog.find("users").id == 1
    with pytest.raises(NotFound):
        catalog.find("Orders")


def test_rows_to_csv():
    text = rows_to_csv(["Login", "Email"], [{"Login": "admin", "Email": None}, {"Login": "bob", "Email": "b@x"}])
    assert text.splitlines() == ["Login,Email", "admin,", "bob,b@x"]


# ============================================================================
# Execution
# ============================================================================

@pytest.mark.asyncio
async def test_list_reports(runner):
    assert runner.list_reports() == [{"id": 1, "name": "Users", "val": "Users", "ord": 1}]


@pytest.mark.asyncio
async def test_run_report_rows(runner):
    rows = await runner.run(1)
    assert rows == [
        {"Login": "admin", "Email": None, "Role": "admin"},
        {"Login": "bob", "Email": "bob@x.com", "Role": "user"},
    ]


@pytest.mark.asyncio
async def test_run_report_filters(runner):
    assert [r["Login"] for r in await runner.run("Users", {"EQ_Login": "bob"})] == ["bob"]
    assert [r["Login"] for r in await runner.run(1, {"LIKE_Email": "x.com"})] == ["bob"]
    assert [r["Login"] for r in await runner.run(1, {"FR_Login": "adm%"})] == ["admin"]
    assert [r["Login"] for r in await runner.run(1, {"FR_Login": "!adm%"})] == ["bob"]
    assert [r["Login"] for r in await runner.run(1, {"FR_Login": "b", "TO_Login": "c"})] == ["bob"]


@pytest.mark.asyncio
async def test_run_report_id_filter(runner, demo):
    rows = await runner.run(1, {"FR_Login": f"@{demo}"})
    assert [r["Login"] for r in rows] == ["admin"]
    with pytest.raises(InvalidArgument):
        await runner.run(1, {"FR_Login": "@abc"})


@pytest.mark.asyncio
async def test_run_report_count_and_limit(runner):
    assert await runner.run(1, {"RECORD_COUNT": ""}) == {"count": 2}
    assert [r["Login"] for r in await runner.run(1, {"LIMIT": "1,1"})] == ["bob"]


@pytest.mark.asyncio
async def test_run_report_unknown_column_or_report(runner):
    with pytest.raises(InvalidArgument):
        await runner.run(1, {"EQ_Nope": "x"})
    with pytest.raises(NotFound):
        await runner.run(42)


@pytest.mark.asyncio
async def test_run_report_columns_by_requisite_name(runner):
    runner.catalog = ReportCatalog(reports=[ReportDefinition(
        id=2, name="Mail", type_id=USER,
        columns=[{"name": "Login"}, {"name": "Mail", "requisite": "email"}],
    )])
    rows = await runner.run(2, {"LIKE_Mail": "bob"})
    assert rows == [{"Login": "bob", "Mail": "bob@x.com"}]

    runner.catalog.reports[0].columns.append(ReportColumn(name="Phone", requisite="phone"))
    with pytest.raises(InvalidArgument):
        await runner.run(2)


@pytest.mark.asyncio
async def test_run_report_never_shows_credentials(runner, async_session):
    accounts = AccountRepository(async_session, "demo")
    token, _ = await accounts.open_session(await accounts.find_user("admin"))
    runner.catalog = ReportCatalog(reports=[ReportDefinition(
        id=3, name="Secrets", type_id=USER,
        columns=[
            {"name": "Login"},
            {"name": "Password", "requisite_id": PASSWORD},
            {"name": "Token", "requisite": "Token"},
        ],
    )])
    rows = await runner.run(3)
    assert [r["Login"] for r in rows] == ["admin", "bob"]
    assert all(r["Password"] is None and r["Token"] is None for r in rows)

    with pytest.raises(InvalidArgument):
        await runner.run(3, {"EQ_Token": token})
