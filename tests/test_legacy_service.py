"""
End-to-end tests for the legacy HTTP service.
"""
import json

import pytest

from objdb.config import settings

NAMESPACE = "demo"
ADMIN_LOGIN = "admin"
ADMIN_PASSWORD = "secret1"

JSON = {"JSON": "1"}


async def _person(client, headers):
    """Create Person with a required, aliased Email requisite over HTTP."""
    created = await client.post(
        f"/{NAMESPACE}/_d_new", params=JSON, headers=headers,
        data={"val": "Person", "t": "container"},
    )
    assert created.status_code == 200
    type_id = created.json()["obj"]

    added = await client.post(
        f"/{NAMESPACE}/_d_req/{type_id}", params=JSON, headers=headers,
        data={"val": "Email", "t": "SHORT", "alias": "email", "required": "1"},
    )
    assert added.status_code == 200
    return type_id, added.json()["id"]


# ============================================================================
# Service
# ============================================================================

@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["service"] == "legacy"


@pytest.mark.asyncio
async def test_new_database_requires_admin_key(client, monkeypatch):
    monkeypatch.setattr(settings, "admin_api_key", "admin-key")

    denied = await client.post("/my/_new_db", params=JSON, data={"db": "shop", "pwd": "secret9"})
    assert denied.status_code == 403

    created = await client.post(
        "/my/_new_db", params=JSON, headers={"X-API-Key": "admin-key"},
        data={"db": "shop", "pwd": "secret9"},
    )
    assert created.status_code == 200
    assert created.json()["db"] == "shop"

    login = await client.post("/shop/auth", params=JSON, data={"login": "admin", "pwd": "secret9"})
    assert login.json()["id"] == created.json()["id"]

    duplicate = await client.post(
        "/my/_new_db", params=JSON, headers={"X-API-Key": "admin-key"},
        data={"db": "shop", "pwd": "secret9"},
    )
    assert duplicate.status_code == 409


# ============================================================================
# Sessions
# ============================================================================

@pytest.mark.asyncio
async def test_auth_success(client, demo):
    response = await client.post(
        f"/{NAMESPACE}/auth", params=JSON, data={"login": ADMIN_LOGIN, "pwd": ADMIN_PASSWORD},
    )
    assert response.status_code == 200
    body = response.json()
    assert set(body) == {"_xsrf", "token", "id", "msg"}
    assert body["id"] == demo
    assert len(body["token"]) == 32
    assert response.cookies.get(NAMESPACE) == body["token"]
    assert response.cookies.get(f"{NAMESPACE}_xsrf") == body["_xsrf"]


@pytest.mark.asyncio
async def test_auth_wrong_password(client):
    response = await client.post(
        f"/{NAMESPACE}/auth", params=JSON, data={"login": ADMIN_LOGIN, "pwd": "nope"},
    )
    assert response.status_code == 200
    assert response.json() == [{
        "error": "Wrong credentials for user admin in demo. Please send login and password as POST-parameters."
    }]


@pytest.mark.asyncio
async def test_auth_html_redirects(client):
    response = await client.post(
        f"/{NAMESPACE}/auth",
        data={"login": ADMIN_LOGIN, "pwd": ADMIN_PASSWORD, "uri": f"/{NAMESPACE}/dict"},
    )
    assert response.status_code == 302
    assert response.headers["location"] == f"/{NAMESPACE}/dict"


@pytest.mark.asyncio
async def test_xsrf_reports_session(client, admin_token, auth_headers):
    response = await client.get(f"/{NAMESPACE}/xsrf", headers=auth_headers)
    body = response.json()
    assert body["token"] == admin_token
    assert body["user"] == ADMIN_LOGIN
    assert body["role"] == "admin"

    client.cookies.clear()
    anonymous = await client.get(f"/{NAMESPACE}/xsrf")
    assert anonymous.json()["id"] == 0


@pytest.mark.asyncio
async def test_structured_token_exchange_and_logout(client, auth_headers, admin_token):
    issued = await client.post(f"/{NAMESPACE}/token", headers=auth_headers)
    assert issued.status_code == 200
    jwt_token = issued.json()["access_token"]
    assert jwt_token.count(".") == 2

    via_jwt = await client.get(
        f"/{NAMESPACE}/xsrf", headers={"Authorization": f"Bearer {jwt_token}"},
    )
    assert via_jwt.json()["user"] == ADMIN_LOGIN

    exchanged = await client.post(f"/{NAMESPACE}/jwt", data={"jwt": jwt_token})
    assert exchanged.status_code == 200
    session_token = exchanged.json()["token"]
    assert session_token != admin_token
    assert exchanged.json()["user"] == ADMIN_LOGIN

    client.cookies.clear()
    stale = await client.get(f"/{NAMESPACE}/xsrf", headers={"Authorization": admin_token})
    assert stale.json()["id"] == 0

    session_headers = {"Authorization": session_token}
    logout = await client.post(f"/{NAMESPACE}/exit", params=JSON, headers=session_headers)
    assert logout.status_code == 200
    assert logout.json()["db"] == NAMESPACE

    after = await client.get(f"/{NAMESPACE}/xsrf", headers=session_headers)
    assert after.json()["id"] == 0


@pytest.mark.asyncio
async def test_invalid_jwt(client, demo):
    response = await client.post(f"/{NAMESPACE}/jwt", params=JSON, data={"jwt": "a.b.c"})
    assert response.status_code == 401


# ============================================================================
# Actions
# ============================================================================

@pytest.mark.asyncio
async def test_schema_and_data_round(client, auth_headers):
    type_id, req_id = await _person(client, auth_headers)

    created = await client.post(
        f"/{NAMESPACE}/_m_new/{type_id}", params=JSON, headers=auth_headers,
        data={"val": "Alice", f"t{req_id}": "a@x.com"},
    )
    assert created.status_code == 200
    obj_id = created.json()["id"]
    assert created.json()["next_act"] == "edit_obj"

    saved = await client.post(
        f"/{NAMESPACE}/_m_save/{obj_id}", params=JSON, headers=auth_headers,
        data={f"t{req_id}": "alice@x.com"},
    )
    assert saved.json()["obj"] == obj_id
    assert saved.json()["args"].startswith("saved1=1&")

    full = await client.get(f"/{NAMESPACE}/object/{type_id}", params=JSON, headers=auth_headers)
    assert full.status_code == 200
    assert [o["val"] for o in full.json()["object"]] == ["Alice"]

    rows = await client.get(f"/{NAMESPACE}/object/{type_id}", params={"JSON_KV": ""}, headers=auth_headers)
    assert rows.json()[0]["email"] == "alice@x.com"
    assert rows.json()[0]["id"] == obj_id


@pytest.mark.asyncio
async def test_json_body_parameters(client, auth_headers):
    type_id, req_id = await _person(client, auth_headers)
    created = await client.post(
        f"/{NAMESPACE}/_m_new/{type_id}", params=JSON, headers=auth_headers,
        json={"val": "Bob", f"t{req_id}": "b@x.com"},
    )
    assert created.status_code == 200
    assert created.json()["val"] == "Bob"


@pytest.mark.asyncio
async def test_action_key_in_form_post(client, auth_headers):
    type_id, req_id = await _person(client, auth_headers)
    obj_id = (await client.post(
        f"/{NAMESPACE}/_m_new/{type_id}", params=JSON, headers=auth_headers,
        data={"val": "Alice", f"t{req_id}": "a@x.com"},
    )).json()["id"]

    response = await client.post(
        f"/{NAMESPACE}", params={"_m_save": "", "id": str(obj_id), "JSON": ""}, headers=auth_headers,
        data={f"t{type_id}": "Alicia"},
    )
    assert response.status_code == 200
    assert response.json()["obj"] == obj_id

    rows = await client.get(f"/{NAMESPACE}/object/{type_id}", params={"JSON_KV": ""}, headers=auth_headers)
    assert rows.json()[0]["val"] == "Alicia"


@pytest.mark.asyncio
async def test_delete_type_with_instances(client, auth_headers):
    type_id, req_id = await _person(client, auth_headers)
    await client.post(
        f"/{NAMESPACE}/_m_new/{type_id}", params=JSON, headers=auth_headers,
        data={"val": "Alice", f"t{req_id}": "a@x.com"},
    )

    refused = await client.post(f"/{NAMESPACE}/_d_del/{type_id}", params=JSON, headers=auth_headers)
    assert refused.status_code == 409
    assert refused.json()["type"] == "HasDependents"

    deleted = await client.post(
        f"/{NAMESPACE}/_d_del/{type_id}", params={"JSON": "1", "cascade": "1"}, headers=auth_headers,
    )
    assert deleted.status_code == 200

    gone = await client.get(f"/{NAMESPACE}/object/{type_id}", params=JSON, headers=auth_headers)
    assert gone.status_code == 404


@pytest.mark.asyncio
async def test_html_mutation_redirects(client, auth_headers):
    type_id = (await client.post(
        f"/{NAMESPACE}/_d_new", params=JSON, headers=auth_headers, data={"val": "City"},
    )).json()["obj"]

    response = await client.post(f"/{NAMESPACE}/_m_new/{type_id}", headers=auth_headers, data={"val": "Paris"})
    assert response.status_code == 302
    assert response.headers["location"].startswith(f"/{NAMESPACE}/object/")


@pytest.mark.asyncio
async def test_html_query_page(client, auth_headers):
    response = await client.get(f"/{NAMESPACE}/terms", headers=auth_headers)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/html")


@pytest.mark.asyncio
async def test_unknown_action(client, auth_headers):
    response = await client.get(f"/{NAMESPACE}/_m_nuke/5", params=JSON, headers=auth_headers)
    assert response.status_code == 400
    assert response.json()["type"] == "UnknownAction"


# ============================================================================
# Errors
# ============================================================================

@pytest.mark.asyncio
async def test_anonymous_json_request(client, demo):
    client.cookies.clear()
    response = await client.get(f"/{NAMESPACE}/object/18", headers={"Accept": "application/json"})
    assert response.status_code == 401
    assert "error" in response.json()


@pytest.mark.asyncio
async def test_anonymous_html_request_redirects_to_login(client, demo):
    client.cookies.clear()
    response = await client.get(f"/{NAMESPACE}/object/18")
    assert response.status_code == 302
    assert response.headers["location"] == f"/{NAMESPACE}?uri=/{NAMESPACE}/object/18"


@pytest.mark.asyncio
async def test_invalid_database(client):
    response = await client.get("/1x/object/18", params=JSON)
    assert response.status_code == 200
    assert response.json() == [{"error": "Invalid database"}]

    page = await client.get("/1x/object/18")
    assert page.status_code == 400


@pytest.mark.asyncio
async def test_user_without_admin_role_cannot_change_schema(client, auth_headers):
    created = await client.post(
        f"/{NAMESPACE}/_m_new/18", params=JSON, headers=auth_headers,
        data={"val": "bob", "t20": "secret2"},
    )
    assert created.status_code == 200

    login = await client.post(f"/{NAMESPACE}/auth", params=JSON, data={"login": "bob", "pwd": "secret2"})
    bob_headers = {"Authorization": login.json()["token"]}
    client.cookies.clear()

    denied = await client.post(f"/{NAMESPACE}/_d_new", params=JSON, headers=bob_headers, data={"val": "X"})
    assert denied.status_code == 403

    listing = await client.get(f"/{NAMESPACE}/object/18", params={"JSON_KV": ""}, headers=bob_headers)
    assert [row["val"] for row in listing.json()] == ["admin", "bob"]


@pytest.mark.asyncio
async def test_user_cannot_read_tokens_or_escalate(client, auth_headers, admin_token):
    created = await client.post(
        f"/{NAMESPACE}/_m_new/18", params=JSON, headers=auth_headers,
        data={"val": "bob", "t20": "secret2"},
    )
    bob_id = created.json()["id"]
    roles = await client.get(f"/{NAMESPACE}/object/42", params={"JSON_KV": ""}, headers=auth_headers)
    admin_role = next(row["id"] for row in roles.json() if row["val"].lower() == "admin")

    login = await client.post(f"/{NAMESPACE}/auth", params=JSON, data={"login": "bob", "pwd": "secret2"})
    bob_headers = {"Authorization": login.json()["token"]}
    client.cookies.clear()

    listing = await client.get(f"/{NAMESPACE}/_list/18", params=JSON, headers=bob_headers)
    assert listing.status_code == 200
    assert admin_token not in json.dumps(listing.json())
    full = await client.get(f"/{NAMESPACE}/object/18", params=JSON, headers=bob_headers)
    assert admin_token not in json.dumps(full.json())

    escalated = await client.post(
        f"/{NAMESPACE}/_m_save/{bob_id}", params=JSON, headers=bob_headers,
        data={"t115": str(admin_role)},
    )
    assert escalated.status_code == 403

    whoami = await client.get(f"/{NAMESPACE}/xsrf", params=JSON, headers=bob_headers)
    assert whoami.json()["role"] != "admin"


@pytest.mark.asyncio
async def test_mutation_with_wrong_xsrf_is_refused(client, admin_token, auth_headers):
    xsrf = (await client.get(f"/{NAMESPACE}/xsrf", headers=auth_headers)).json()["_xsrf"]

    forged = await client.post(
        f"/{NAMESPACE}/_d_new", params=JSON, headers=auth_headers,
        data={"val": "Person", "_xsrf": "forged"},
    )
    assert forged.status_code == 403

    accepted = await client.post(
        f"/{NAMESPACE}/_d_new", params=JSON, headers=auth_headers,
        data={"val": "Person", "_xsrf": xsrf},
    )
    assert accepted.status_code == 200


@pytest.mark.asyncio
async def test_cookie_sessions_send_xsrf_when_required(client, admin_token, monkeypatch):
    monkeypatch.setattr(settings, "require_xsrf", True)
    xsrf = client.cookies.get(f"{NAMESPACE}_xsrf")

    missing = await client.post(f"/{NAMESPACE}/_d_new", params=JSON, data={"val": "Person"})
    assert missing.status_code == 403

    sent = await client.post(f"/{NAMESPACE}/_d_new", params=JSON, data={"val": "Person", "_xsrf": xsrf})
    assert sent.status_code == 200

    client.cookies.clear()
    by_header = await client.post(
        f"/{NAMESPACE}/_d_new", params=JSON, headers={"Authorization": admin_token}, data={"val": "City"},
    )
    assert by_header.status_code == 200

    listing = await client.get(f"/{NAMESPACE}/terms", params=JSON, headers={"Authorization": admin_token})
    assert listing.status_code == 200



# ============================================================================
# Reports
# ============================================================================

@pytest.fixture
def reports_file(tmp_path, monkeypatch):
    path = tmp_path / "reports.json"
    path.write_text(json.dumps({"reports": [{
        "id": 1,
        "name": "Users",
        "type_id": 18,
        "columns": [{"name": "Login"}, {"name": "Role", "requisite_id": 115}],
    }]}), encoding="utf-8")
    monkeypatch.setattr(settings, "reports_file", str(path))
    return path


@pytest.mark.asyncio
async def test_report_list_and_run(client, auth_headers, reports_file):
    listing = await client.get(f"/{NAMESPACE}/report", params=JSON, headers=auth_headers)
    assert listing.json() == [{"id": 1, "name": "Users", "val": "Users", "ord": 1}]

    rows = await client.get(f"/{NAMESPACE}/report/1", params=JSON, headers=auth_headers)
    assert rows.json() == [{"Login": "admin", "Role": "admin"}]

    count = await client.get(f"/{NAMESPACE}/report/Users", params={"JSON": "1", "RECORD_COUNT": ""}, headers=auth_headers)
    assert count.json() == {"count": 1}


@pytest.mark.asyncio
async def test_report_csv(client, auth_headers, reports_file):
    response = await client.get(f"/{NAMESPACE}/report/1", params={"format": "csv"}, headers=auth_headers)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.text.splitlines() == ["Login,Role", "admin,admin"]


@pytest.mark.asyncio
async def test_report_requires_session(client, demo, reports_file):
    client.cookies.clear()
    response = await client.get(f"/{NAMESPACE}/report/1", params=JSON)
    assert response.status_code == 401