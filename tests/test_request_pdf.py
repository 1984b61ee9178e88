import uuid
from datetime import date, datetime

import pytest

from personnel.document_creator.request_pdf import (
    build_request_snapshot,
    default_doc_no,
    format_value,
    render_request_pdf,
    store_request_pdf,
)
from personnel.models.models import ChangeRequest


def _request(type_, payload, status="APPROVED", **kw):
    values = dict(
        id=uuid.UUID("12345678-1234-5678-1234-567812abcdef"),
        type=type_,
        status=status,
        created_by=uuid.uuid4(),
        created_by_role="OPERATOR",
        payload=payload,
        decided_at=datetime(2024, 7, 1, 9, 30),
        created_at=datetime(2024, 6, 30, 8, 0),
        decision_note="",
        doc_no="",
    )
    values.update(kw)
    return ChangeRequest(**values)


def test_default_doc_no():
    assert default_doc_no(_request("DELETE_PERSON", {})) == "REQ-2024-ABCDEF"


def test_existing_doc_no_is_kept(db):
    snap = build_request_snapshot(db, _request("DELETE_PERSON", {}, doc_no="NR-7"))
    assert snap["doc_no"] == "NR-7"


def test_update_snapshot_lists_changed_fields(db):
    before = {"service_no": "SN1", "first_name": "Ana", "last_name": "Koci", "city": "Tirana", "birth_date": "1990-05-01"}
    after = dict(before, city="Shkoder", birth_date="1991-02-03")
    req = _request("UPDATE_PERSON", {"meta": {"patch": {"city": "Shkoder", "birth_date": "1991-02-03"}}})

    snap = build_request_snapshot(db, req, before, after)

    assert snap["type_label"] == "Personal data update"
    assert snap["person"] == "SN1 - Ana Koci"
    assert snap["date"] == "01.07.2024"
    assert snap["patch_rows"] == [
        {"field": "City", "before": "Tirana", "after": "Shkoder"},
        {"field": "Birth date", "before": "01.05.1990", "after": "03.02.1991"},
    ]


def test_transfer_snapshot_names_units(db, make_unit):
    origin = make_unit("BN1", "First Battalion")
    target = make_unit("BN2", "Second Battalion")
    req = _request("TRANSFER_PERSON", {"to_unit_id": str(target.id)}, target_unit_id=origin.id)
    snap = build_request_snapshot(db, req)
    assert snap["from_unit"] == "BN1 - First Battalion"
    assert snap["to_unit"] == "BN2 - Second Battalion"


def test_format_value():
    assert format_value(None) == "-"
    assert format_value("  ") == "-"
    assert format_value(date(2024, 1, 9)) == "09.01.2024"
    assert format_value("2024-01-09T10:00:00") == "09.01.2024"
    assert format_value("Durres") == "Durres"


@pytest.mark.parametrize(
    "type_,payload,status,note",
    [
        ("UPDATE_PERSON", {"meta": {"patch": {"city": "Fier"}}}, "APPROVED", ""),
        ("CHANGE_GRADE", {"new_grade_id": "OF-2"}, "REJECTED", "Missing order"),
        ("CREATE_USER", {"user": {"username": "x", "email": "x@example.org", "role": "OFFICER"}}, "APPROVED", ""),
    ],
)
def test_render_produces_pdf(db, type_, payload, status, note):
    snap = build_request_snapshot(
        db, _request(type_, payload, status=status, decision_note=note), {"service_no": "SN1", "city": "Tirana"}
    )
    data = render_request_pdf(snap)
    assert data.startswith(b"%PDF")


def test_store_uses_fresh_keys(storage):
    rid = uuid.uuid4()
    first = store_request_pdf(storage, rid, b"%PDF-1")
    second = store_request_pdf(storage, rid, b"%PDF-2")
    assert first != second
    assert first.startswith(f"requests/req-{rid}-") and first.endswith(".pdf")
    assert storage.path_for(second).read_bytes() == b"%PDF-2"
