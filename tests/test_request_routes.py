import pytest


@pytest.fixture
def world(make_unit, make_user, make_person):
    root = make_unit("HQ")
    child = make_unit("BN1", parent=root)
    operator = make_user("OPERATOR", child)
    return {
        "root": root,
        "child": child,
        "operator": operator,
        "officer": make_user("OFFICER", child),
        "auditor": make_user("AUDITOR"),
        "commander": make_user("COMMANDER", root),
        "admin": make_user("ADMIN"),
        "person": make_person(child, created_by=operator),
    }


def _create(client, headers, user, person, type_="DEACTIVATE_PERSON", payload=None):
    return client.post(
        "/requests",
        json={"type": type_, "person_id": str(person.id), "payload": payload or {"reason": "Left service"}},
        headers=headers(user),
    )


def test_requires_authentication(client):
    assert client.get("/requests/my").status_code == 401


def test_create_and_fetch(client, headers, world):
    res = _create(client, headers, world["operator"], world["person"])
    assert res.status_code == 201
    body = res.json()
    assert body["status"] == "PENDING"
    assert body["target_unit_id"] == str(world["child"].id)
    assert body["person"]["service_no"] == world["person"].service_no
    assert res.headers["X-Request-ID"]

    fetched = client.get(f"/requests/{body['id']}", headers=headers(world["operator"]))
    assert fetched.status_code == 200
    assert fetched.json()["id"] == body["id"]


def test_errors_carry_codes(client, headers, world):
    res = _create(client, headers, world["auditor"], world["person"])
    assert res.status_code == 403
    assert res.json()["code"] == "FORBIDDEN"

    res = client.get("/requests/not-a-uuid", headers=headers(world["admin"]))
    assert res.status_code == 400
    assert res.json()["code"] == "VALIDATION_ERROR"

    _create(client, headers, world["operator"], world["person"])
    res = _create(client, headers, world["operator"], world["person"])
    assert res.status_code == 409
    assert res.json()["code"] == "ALREADY_PENDING"


def test_approve_then_download_document(client, headers, world):
    rid = _create(client, headers, world["operator"], world["person"]).json()["id"]

    res = client.post(f"/requests/{rid}/approve", json={"note": "ok"}, headers=headers(world["commander"]))
    assert res.status_code == 200
    body = res.json()
    assert body["request"]["status"] == "APPROVED"
    assert body["pdf_generated"] is True
    assert body["request"]["has_pdf"] is True

    pdf = client.get(f"/requests/{rid}/pdf", headers=headers(world["operator"]))
    assert pdf.status_code == 200
    assert pdf.headers["content-type"] == "application/pdf"
    assert pdf.headers["content-disposition"].startswith("inline")
    assert pdf.content.startswith(b"%PDF")

    attachment = client.get(f"/requests/{rid}/pdf?download=1", headers=headers(world["operator"]))
    assert attachment.headers["content-disposition"].startswith("attachment")

    again = client.post(f"/requests/{rid}/approve", headers=headers(world["admin"]))
    assert again.status_code == 409
    assert again.json()["code"] == "NOT_PENDING"


def test_decisions_are_limited_to_deciders(client, headers, world):
    rid = _create(client, headers, world["operator"], world["person"]).json()["id"]
    res = client.post(f"/requests/{rid}/approve", headers=headers(world["officer"]))
    assert res.status_code == 403


def test_reject_needs_note(client, headers, world):
    rid = _create(client, headers, world["operator"], world["person"]).json()["id"]
    res = client.post(f"/requests/{rid}/reject", json={}, headers=headers(world["commander"]))
    assert res.status_code == 400
    res = client.post(f"/requests/{rid}/reject", json={"note": "Wrong person"}, headers=headers(world["commander"]))
    assert res.status_code == 200
    assert res.json()["request"]["status"] == "REJECTED"


def test_cancel(client, headers, world):
    rid = _create(client, headers, world["operator"], world["person"]).json()["id"]
    assert client.post(f"/requests/{rid}/cancel", headers=headers(world["officer"])).status_code == 403
    res = client.post(f"/requests/{rid}/cancel", headers=headers(world["operator"]))
    assert res.status_code == 200
    assert res.json()["status"] == "CANCELLED"


def test_listing_endpoints(client, headers, world):
    _create(client, headers, world["operator"], world["person"])

    mine = client.get("/requests/my", headers=headers(world["operator"])).json()
    assert set(mine) == {"items", "page", "limit", "total", "pages"}
    assert mine["total"] == 1

    incoming = client.get("/requests/incoming", headers=headers(world["commander"])).json()
    assert incoming["total"] == 1
    inbox = client.get("/requests/inbox", headers=headers(world["commander"])).json()
    assert inbox["total"] == 1
    archive = client.get("/requests/incoming?status=ARCHIVE", headers=headers(world["commander"])).json()
    assert archive["total"] == 0

    assert client.get("/requests/incoming", headers=headers(world["operator"])).status_code == 403


def test_create_user_returns_temporary_credentials(client, headers, world):
    res = client.post(
        "/requests",
        json={
            "type": "CREATE_USER",
            "payload": {"user": {"username": "new.user", "email": "new.user@example.org", "role": "OPERATOR"}},
        },
        headers=headers(world["commander"]),
    )
    assert res.status_code == 201
    rid = res.json()["id"]

    res = client.post(f"/requests/{rid}/approve", headers=headers(world["admin"]))
    assert res.status_code == 200
    body = res.json()
    assert body["temp_credentials"]["username"] == "new.user"
    assert body["temp_credentials"]["password"]
    # Outbound mail is switched off in the test settings
    assert body["email_sent"] is False
    assert body["request"]["payload"]["meta"]["created_user_id"]


def test_history_lists_audit_entries(client, headers, world):
    rid = _create(client, headers, world["operator"], world["person"]).json()["id"]
    client.post(f"/requests/{rid}/reject", json={"note": "Duplicate"}, headers=headers(world["commander"]))

    res = client.get(f"/requests/{rid}/history", headers=headers(world["auditor"]))
    assert res.status_code == 200
    assert sorted(e["action"] for e in res.json()) == ["CREATE", "REJECT"]
    assert client.get(f"/requests/{rid}/history", headers=headers(world["officer"])).status_code == 403
