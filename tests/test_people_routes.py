import pytest

from personnel.models.models import AuditLog, Person


@pytest.fixture
def world(make_unit, make_user, make_person):
    unit = make_unit("BN1")
    operator = make_user("OPERATOR", unit)
    return {
        "unit": unit,
        "operator": operator,
        "colleague": make_user("OPERATOR", unit),
        "outsider": make_user("OPERATOR", make_unit("BN2")),
        "admin": make_user("ADMIN"),
        "person": make_person(unit, created_by=operator),
        "rejected": make_person(unit, created_by=operator, status="REJECTED", rejection_reason="Missing documents"),
    }


def test_creator_updates_allowed_fields(client, db, headers, world):
    person = world["person"]
    res = client.put(
        f"/people/{person.id}",
        json={"city": "Shkoder", "birth_date": "1988-03-04", "status": "INACTIVE", "grade_id": "OF-9"},
        headers=headers(world["operator"]),
    )
    assert res.status_code == 200
    body = res.json()
    assert body["city"] == "Shkoder"
    assert body["birth_date"] == "1988-03-04"
    assert body["status"] == "ACTIVE"
    assert body["grade_id"] == "OR-4"

    entry = db.query(AuditLog).filter(AuditLog.entity_id == person.id).one()
    assert entry.action == "UPDATE"
    assert set(entry.changes_json) == {"city", "birth_date"}


def test_only_creator_or_admin_may_update(client, headers, world):
    person = world["person"]
    res = client.put(f"/people/{person.id}", json={"city": "Fier"}, headers=headers(world["colleague"]))
    assert res.status_code == 403
    assert res.json()["code"] == "FORBIDDEN_UPDATE"

    res = client.put(f"/people/{person.id}", json={"city": "Fier"}, headers=headers(world["outsider"]))
    assert res.json()["code"] == "FORBIDDEN_UNIT"

    res = client.put(f"/people/{person.id}", json={"city": "Fier"}, headers=headers(world["admin"]))
    assert res.status_code == 200


def test_update_rejects_bad_values(client, headers, world):
    person = world["person"]
    res = client.put(f"/people/{person.id}", json={"gender": "X"}, headers=headers(world["operator"]))
    assert res.status_code == 400
    assert res.json()["code"] == "VALIDATION_ERROR"

    res = client.put(f"/people/{person.id}", json={"role": "ADMIN"}, headers=headers(world["operator"]))
    assert res.status_code == 400


def test_service_no_stays_unique(client, headers, world, make_person):
    other = make_person(world["unit"])
    res = client.put(
        f"/people/{world['person'].id}",
        json={"service_no": other.service_no},
        headers=headers(world["operator"]),
    )
    assert res.status_code == 409
    assert res.json()["code"] == "SERVICE_NO_EXISTS"


def test_resubmit_rejected_person(client, db, headers, world):
    rejected = world["rejected"]
    res = client.post(
        f"/people/{rejected.id}/resubmit",
        json={"phone": "+355 68 222 3333"},
        headers=headers(world["colleague"]),
    )
    assert res.status_code == 403
    assert res.json()["code"] == "FORBIDDEN_RESUBMIT"

    res = client.post(
        f"/people/{rejected.id}/resubmit",
        json={"phone": "+355 68 222 3333"},
        headers=headers(world["operator"]),
    )
    assert res.status_code == 200
    assert res.json()["status"] == "PENDING"
    stored = db.get(Person, rejected.id)
    assert stored.phone == "+355 68 222 3333"
    assert stored.rejection_reason is None

    res = client.post(f"/people/{rejected.id}/resubmit", headers=headers(world["operator"]))
    assert res.status_code == 400
    assert res.json()["code"] == "NOT_REJECTED"
