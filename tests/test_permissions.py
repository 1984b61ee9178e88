import uuid

import pytest

from personnel.errors import Forbidden
from personnel.models.models import ChangeRequest
from personnel.services.permissions import (
    can_access_request,
    ensure_can_cancel,
    ensure_can_decide,
    ensure_can_update_person,
    ensure_same_unit,
    same_unit,
)


@pytest.fixture
def org(make_unit, make_user):
    root = make_unit("HQ")
    child = make_unit("BN1", parent=root)
    sibling = make_unit("BN2", parent=root)
    return {
        "root": root,
        "child": child,
        "sibling": sibling,
        "admin": make_user("ADMIN"),
        "auditor": make_user("AUDITOR"),
        "operator": make_user("OPERATOR", child),
        "officer": make_user("OFFICER", child),
        "commander_root": make_user("COMMANDER", root),
        "commander_sibling": make_user("COMMANDER", sibling),
        "commander_none": make_user("COMMANDER"),
    }


def _request(created_by, target_unit_id, type_="DEACTIVATE_PERSON"):
    return ChangeRequest(
        id=uuid.uuid4(),
        type=type_,
        status="PENDING",
        created_by=created_by.id,
        created_by_role=created_by.role,
        target_unit_id=target_unit_id,
        payload={},
    )


def test_admin_and_auditor_see_everything(db, org):
    req = _request(org["operator"], org["child"].id)
    assert can_access_request(db, org["admin"], req)
    assert can_access_request(db, org["auditor"], req)


def test_operator_and_officer_see_only_their_own(db, org):
    own = _request(org["operator"], org["child"].id)
    assert can_access_request(db, org["operator"], own)
    assert not can_access_request(db, org["officer"], own)


def test_commander_sees_requests_in_subtree(db, org):
    req = _request(org["operator"], org["child"].id)
    assert can_access_request(db, org["commander_root"], req)
    assert not can_access_request(db, org["commander_sibling"], req)


def test_commander_without_unit_is_denied(db, org):
    req = _request(org["operator"], org["child"].id)
    assert not can_access_request(db, org["commander_none"], req)


def test_unknown_role_and_missing_request_are_denied(db, org, make_user):
    stranger = make_user("VISITOR", org["child"])
    assert not can_access_request(db, stranger, _request(org["operator"], org["child"].id))
    assert not can_access_request(db, org["admin"], None)


def test_decide_requires_commander_or_admin(db, org):
    req = _request(org["operator"], org["child"].id)
    for role in ("operator", "officer", "auditor"):
        with pytest.raises(Forbidden):
            ensure_can_decide(db, org[role], req)
    ensure_can_decide(db, org["admin"], req)
    ensure_can_decide(db, org["commander_root"], req)


def test_commander_outside_subtree_cannot_decide(db, org):
    req = _request(org["operator"], org["child"].id)
    with pytest.raises(Forbidden):
        ensure_can_decide(db, org["commander_sibling"], req)


def test_create_user_approval_is_admin_only(db, org):
    req = _request(org["commander_root"], org["root"].id, type_="CREATE_USER")
    with pytest.raises(Forbidden):
        ensure_can_decide(db, org["commander_root"], req, "approve")
    ensure_can_decide(db, org["commander_root"], req, "reject")
    ensure_can_decide(db, org["admin"], req, "approve")


def test_cancel_by_creator_or_admin(org):
    req = _request(org["operator"], org["child"].id)
    ensure_can_cancel(org["operator"], req)
    ensure_can_cancel(org["admin"], req)
    with pytest.raises(Forbidden):
        ensure_can_cancel(org["officer"], req)


def test_same_unit(org):
    assert same_unit(org["operator"], org["child"].id)
    assert not same_unit(org["operator"], org["sibling"].id)
    assert same_unit(org["admin"], org["sibling"].id)
    assert not same_unit(org["commander_none"], org["child"].id)
    with pytest.raises(Forbidden) as exc:
        ensure_same_unit(org["operator"], org["sibling"].id)
    assert exc.value.code == "FORBIDDEN_UNIT"


def test_person_updates_need_unit_and_authorship(org, make_person):
    person = make_person(org["child"], created_by=org["operator"])
    ensure_can_update_person(org["operator"], person)
    ensure_can_update_person(org["admin"], person)

    with pytest.raises(Forbidden) as exc:
        ensure_can_update_person(org["officer"], person)
    assert exc.value.code == "FORBIDDEN_UPDATE"

    with pytest.raises(Forbidden) as exc:
        ensure_can_update_person(org["officer"], person, action="resubmit")
    assert exc.value.code == "FORBIDDEN_RESUBMIT"

    with pytest.raises(Forbidden) as exc:
        ensure_can_update_person(org["commander_sibling"], person)
    assert exc.value.code == "FORBIDDEN_UNIT"
