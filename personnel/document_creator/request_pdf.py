"""
Decision document for change requests.

``build_request_snapshot`` flattens a request, the before/after person state and
the referenced units into a plain dict; ``render_request_pdf`` turns that dict
into A4 PDF bytes. Rendering never touches the database.
"""
import secrets
import uuid
from datetime import date, datetime
from io import BytesIO
from typing import Any, Dict, List, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import ChangeRequest, Unit, User
from ..services.unit_tree import unit_label
from ..storage.provider import StorageProvider


TYPE_LABELS = {
    "DELETE_PERSON": "Removal from the system",
    "TRANSFER_PERSON": "Transfer (to another unit)",
    "CHANGE_GRADE": "Grade change",
    "CHANGE_UNIT": "Unit change",
    "DEACTIVATE_PERSON": "Deactivation",
    "UPDATE_PERSON": "Personal data update",
    "CREATE_USER": "User account creation",
}

FIELD_LABELS = {
    "service_no": "Service no.",
    "first_name": "First name",
    "last_name": "Last name",
    "personal_number": "Personal no.",
    "birth_date": "Birth date",
    "gender": "Gender",
    "city": "City",
    "address": "Address",
    "phone": "Phone",
    "position": "Position",
    "service_start_date": "Service start date",
    "notes": "Notes",
    "photo_url": "Photo (URL)",
}

PERSON_SNAPSHOT_FIELDS = ("unit_id", "grade_id", "status") + tuple(FIELD_LABELS.keys())


def format_date(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, (datetime, date)):
        return value.strftime("%d.%m.%Y")
    try:
        return datetime.fromisoformat(str(value)).strftime("%d.%m.%Y")
    except ValueError:
        return str(value)


def format_value(value: Any) -> str:
    if value is None:
        return "-"
    if isinstance(value, (datetime, date)):
        return format_date(value)
    if isinstance(value, str):
        s = value.strip()
        if len(s) >= 10 and s[4:5] == "-" and s[7:8] == "-":
            return format_date(s[:10])
        return s or "-"
    return str(value)


def person_snapshot(person) -> Optional[Dict[str, Any]]:
    """Plain-dict copy of a Person row, taken before a mutation is applied."""
    if person is None:
        return None
    out = {f: getattr(person, f, None) for f in PERSON_SNAPSHOT_FIELDS}
    out["id"] = person.id
    return out


def _person_line(person: Optional[Dict[str, Any]], fallback_id: Any) -> str:
    if person:
        sn = (person.get("service_no") or "").strip()
        name = f"{person.get('first_name') or ''} {person.get('last_name') or ''}".strip()
        if sn or name:
            return f"{sn} - {name}".strip(" -") if sn else name
    return str(fallback_id or "")


def _unit_text(db: Session, unit_id: Any) -> Optional[str]:
    if not unit_id:
        return None
    try:
        uid = unit_id if isinstance(unit_id, uuid.UUID) else uuid.UUID(str(unit_id))
    except ValueError:
        return str(unit_id)
    unit = db.query(Unit).filter(Unit.id == uid).first()
    return unit_label(unit) if unit else str(unit_id)


def _user_text(db: Session, user_id: Optional[uuid.UUID]) -> Optional[str]:
    if not user_id:
        return None
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        return str(user_id)
    return f"{user.username} ({user.role})"


def default_doc_no(request: ChangeRequest) -> str:
    year = (request.decided_at or request.created_at or datetime.utcnow()).year
    return f"REQ-{year}-{str(request.id).replace('-', '')[-6:].upper()}"


def build_request_snapshot(
    db: Session,
    request: ChangeRequest,
    person_before: Optional[Dict[str, Any]] = None,
    person_after: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    payload = request.payload or {}
    patch_rows: List[Dict[str, str]] = []
    if request.type == "UPDATE_PERSON":
        patch = (payload.get("meta") or {}).get("patch") or {}
        for key, new_value in patch.items():
            old_value = (person_before or {}).get(key)
            final_value = (person_after or {}).get(key, new_value) if person_after else new_value
            patch_rows.append({
                "field": FIELD_LABELS.get(key, key),
                "before": format_value(old_value),
                "after": format_value(final_value),
            })

    user_payload = payload.get("user") if request.type == "CREATE_USER" else None
    return {
        "id": str(request.id),
        "type": request.type,
        "type_label": TYPE_LABELS.get(request.type, request.type),
        "status": request.status,
        "doc_no": request.doc_no or default_doc_no(request),
        "date": format_date(request.decided_at or request.updated_at or request.created_at),
        "person": _person_line(person_before, request.person_id) if request.type != "CREATE_USER" else None,
        "reason": (payload.get("reason") or "").strip(),
        "decision_note": (request.decision_note or "").strip(),
        "from_unit": _unit_text(db, request.target_unit_id),
        "to_unit": _unit_text(db, payload.get("to_unit_id")),
        "new_grade": payload.get("new_grade_id"),
        "patch_rows": patch_rows,
        "user": {
            "username": user_payload.get("username"),
            "email": user_payload.get("email"),
            "role": user_payload.get("role"),
            "unit": _unit_text(db, user_payload.get("unit_id")),
        } if user_payload else None,
        "created_by": _user_text(db, request.created_by),
        "decided_by": _user_text(db, request.decided_by),
    }


def _styles():
    styles = getSampleStyleSheet()
    return {
        "banner": ParagraphStyle("Banner", parent=styles["Normal"], fontName="Times-Bold", fontSize=10, alignment=1),
        "org": ParagraphStyle("Org", parent=styles["Normal"], fontName="Times-Roman", fontSize=13, alignment=1, spaceAfter=14),
        "title": ParagraphStyle("Title", parent=styles["Heading1"], fontName="Times-Bold", fontSize=16, alignment=1, spaceAfter=12),
        "body": ParagraphStyle("Body", parent=styles["Normal"], fontName="Times-Roman", fontSize=11, leading=15, spaceAfter=8),
        "label": ParagraphStyle("Label", parent=styles["Normal"], fontName="Times-Bold", fontSize=11, spaceAfter=4),
    }


def render_request_pdf(snapshot: Dict[str, Any]) -> bytes:
    """Render the decision document for a request snapshot."""
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=60,
        rightMargin=60,
        topMargin=50,
        bottomMargin=55,
        title=f"Request {snapshot.get('doc_no') or ''}",
    )
    st = _styles()
    story = []

    story.append(Paragraph(escape(settings.doc_header_title), st["banner"]))
    story.append(Paragraph(escape(settings.doc_header_org), st["org"]))
    story.append(Paragraph("Request - Decision", st["title"]))

    meta = Table(
        [["Doc. no.", snapshot.get("doc_no") or ""], ["Date", snapshot.get("date") or ""]],
        colWidths=[1.3 * inch, 3 * inch],
    )
    meta.setStyle(TableStyle([
        ("FONTNAME", (0, 0), (0, -1), "Times-Bold"),
        ("FONTNAME", (1, 0), (1, -1), "Times-Roman"),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#9aa0a6")),
    ]))
    story.append(meta)
    story.append(Spacer(1, 0.25 * inch))

    type_label = escape(snapshot.get("type_label") or "")
    if snapshot.get("person"):
        story.append(Paragraph(f"<b>Person:</b> {escape(snapshot['person'])}", st["body"]))
    if snapshot.get("from_unit"):
        story.append(Paragraph(f"<b>Unit:</b> {escape(snapshot['from_unit'])}", st["body"]))

    status = snapshot.get("status")
    if status == "APPROVED":
        story.append(Paragraph(
            f"<b>APPROVED</b> the request for \"{type_label}\"; the responsible unit is ordered to carry it out.",
            st["body"],
        ))
    elif status == "REJECTED":
        story.append(Paragraph(f"<b>REJECTED</b> the request for \"{type_label}\".", st["body"]))
    elif snapshot.get("reason"):
        story.append(Paragraph(f"<b>Reason:</b> {escape(snapshot['reason'])}", st["body"]))

    rtype = snapshot.get("type")
    if rtype in ("CHANGE_UNIT", "TRANSFER_PERSON"):
        story.append(Paragraph(
            f"Transfer from <b>{escape(snapshot.get('from_unit') or '-')}</b> "
            f"to <b>{escape(snapshot.get('to_unit') or '-')}</b>.",
            st["body"],
        ))
    elif rtype == "CHANGE_GRADE":
        story.append(Paragraph(f"New grade: <b>{escape(str(snapshot.get('new_grade') or '-'))}</b>.", st["body"]))
    elif rtype == "DEACTIVATE_PERSON":
        story.append(Paragraph("Person status changes to: INACTIVE.", st["body"]))
    elif rtype == "DELETE_PERSON":
        story.append(Paragraph("The person is removed from the system.", st["body"]))
    elif rtype == "UPDATE_PERSON":
        rows = snapshot.get("patch_rows") or []
        if rows:
            table = Table(
                [["Field", "Before", "After"]] + [[r["field"], r["before"], r["after"]] for r in rows],
                colWidths=[1.8 * inch, 2.1 * inch, 2.1 * inch],
            )
            table.setStyle(TableStyle([
                ("FONTNAME", (0, 0), (-1, 0), "Times-Bold"),
                ("FONTNAME", (0, 1), (-1, -1), "Times-Roman"),
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#eeeeee")),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#9aa0a6")),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ]))
            story.append(table)
        else:
            story.append(Paragraph("No field changes were submitted.", st["body"]))
    elif rtype == "CREATE_USER" and snapshot.get("user"):
        u = snapshot["user"]
        for label, key in (("Username", "username"), ("Email", "email"), ("Role", "role"), ("Unit", "unit")):
            story.append(Paragraph(f"<b>{label}:</b> {escape(str(u.get(key) or '-'))}", st["body"]))

    if snapshot.get("decision_note"):
        story.append(Spacer(1, 0.15 * inch))
        label = "Reason for rejection:" if status == "REJECTED" else "Decision note:"
        story.append(Paragraph(label, st["label"]))
        story.append(Paragraph(escape(snapshot["decision_note"]), st["body"]))

    story.append(Spacer(1, 0.8 * inch))
    signatures = Table(
        [
            ["Submitted by", "Decided by"],
            [snapshot.get("created_by") or "", snapshot.get("decided_by") or ""],
            ["_________________________", "_________________________"],
        ],
        colWidths=[3 * inch, 3 * inch],
    )
    signatures.setStyle(TableStyle([
        ("ALIGN", (0, 0), (-1, -1), "CENTER"),
        ("FONTNAME", (0, 0), (-1, 0), "Times-Bold"),
        ("FONTNAME", (0, 1), (-1, -1), "Times-Roman"),
        ("FONTSIZE", (0, 0), (-1, -1), 10),
    ]))
    story.append(signatures)

    doc.build(story)
    buffer.seek(0)
    return buffer.read()


def store_request_pdf(storage: StorageProvider, request_id: uuid.UUID, data: bytes) -> str:
    """Write a rendered document under a fresh key; previous versions are left in place."""
    stamp = int(datetime.utcnow().timestamp() * 1000)
    key = f"requests/req-{request_id}-{stamp}-{secrets.token_hex(4)}.pdf"
    return storage.save_bytes(key, data)
