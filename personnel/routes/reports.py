import uuid
from datetime import date, datetime
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..document_creator.report_export import build_report_snapshot, render_report_pdf, render_report_xlsx
from ..errors import Conflict, DomainError, Forbidden, NotFound, ValidationFailed
from ..models.models import Category, DailyReport, Justification, Person, User
from ..schemas.reports import ReportCreate, ReviewBody, RowCreate, RowUpdate
from ..services.audit import create_audit_log
from ..services.permissions import commands_unit, ensure_same_unit, is_admin
from ..services.report_rules import (
    assert_before_cutoff,
    assert_editable,
    is_period_category,
    local_now,
    resolve_row_dates,
)
from ..services.unit_tree import descendant_unit_ids


router = APIRouter(prefix="/reports", tags=["reports"])
log = structlog.get_logger(__name__)

EDITOR_ROLES = ("OPERATOR", "OFFICER", "COMMANDER", "ADMIN")


def _parse_uuid(value: str, what: str = "id") -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise ValidationFailed("VALIDATION_ERROR", f"Invalid {what}")


def _serialize_row(row: Justification) -> Dict[str, Any]:
    return {
        "id": str(row.id),
        "person_id": str(row.person_id),
        "category_id": str(row.category_id),
        "category_code": row.category.code if row.category else None,
        "from_date": row.from_date.isoformat() if row.from_date else None,
        "to_date": row.to_date.isoformat() if row.to_date else None,
        "location": row.location,
        "notes": row.notes,
        "emergency": bool(row.emergency),
    }


def _serialize_report(report: DailyReport, *, with_rows: bool = False) -> Dict[str, Any]:
    data = {
        "id": str(report.id),
        "date": report.report_date.isoformat(),
        "unit_id": str(report.unit_id),
        "status": report.status,
        "created_by": str(report.created_by) if report.created_by else None,
        "reviewed_by": str(report.reviewed_by) if report.reviewed_by else None,
        "reviewed_at": report.reviewed_at.isoformat() if report.reviewed_at else None,
        "review_comment": report.review_comment,
    }
    if with_rows:
        data["rows"] = [_serialize_row(r) for r in report.rows]
    return data


def _can_view(db: Session, me: User, report: DailyReport) -> bool:
    if me.role in ("ADMIN", "AUDITOR"):
        return True
    if me.role == "COMMANDER":
        return commands_unit(db, me, report.unit_id)
    return bool(me.unit_id) and str(me.unit_id) == str(report.unit_id)


def _load_report(db: Session, me: User, report_id: str) -> DailyReport:
    report = db.query(DailyReport).filter(DailyReport.id == _parse_uuid(report_id)).first()
    if not report:
        raise NotFound("NOT_FOUND", "Report not found")
    if not _can_view(db, me, report):
        raise Forbidden("FORBIDDEN_UNIT", "Report belongs to another unit")
    return report


def _load_row(db: Session, row_id: str) -> Justification:
    row = db.query(Justification).filter(Justification.id == _parse_uuid(row_id)).first()
    if not row:
        raise NotFound("NOT_FOUND", "Row not found")
    return row


def _guard_editable(report: DailyReport, me: User, now: datetime) -> None:
    try:
        assert_editable(report, me, now)
    except DomainError as e:
        log.info("report_row_rejected", report_id=str(report.id), user_id=str(me.id), code=e.code)
        raise


def _row_dates(category: Category, from_date, to_date, emergency: bool, today: date):
    from_date, to_date = resolve_row_dates(
        period=is_period_category(category),
        from_date=from_date,
        to_date=to_date,
        emergency=emergency,
        today=today,
    )
    if from_date and to_date and to_date < from_date:
        raise ValidationFailed("VALIDATION_ERROR", "to_date must not be before from_date")
    return from_date, to_date


def _get_category(db: Session, category_id: uuid.UUID) -> Category:
    category = db.query(Category).filter(Category.id == category_id).first()
    if not category or not category.active:
        raise ValidationFailed("VALIDATION_ERROR", "Unknown category")
    return category


@router.get("")
def list_reports(
    date_: Optional[date] = Query(None, alias="date"),
    unit_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    query = db.query(DailyReport)
    if me.role == "COMMANDER":
        if not me.unit_id:
            return []
        query = query.filter(DailyReport.unit_id.in_(descendant_unit_ids(db, me.unit_id)))
    elif me.role not in ("ADMIN", "AUDITOR"):
        if not me.unit_id:
            return []
        query = query.filter(DailyReport.unit_id == me.unit_id)
    if unit_id:
        query = query.filter(DailyReport.unit_id == _parse_uuid(unit_id, "unit_id"))
    if date_:
        query = query.filter(DailyReport.report_date == date_)
    if status:
        query = query.filter(DailyReport.status == status.upper())
    reports = query.order_by(DailyReport.report_date.desc()).limit(200).all()
    return [_serialize_report(r) for r in reports]


@router.post("", status_code=201)
def create_report(
    body: ReportCreate,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*EDITOR_ROLES)),
):
    unit_id = body.unit_id or me.unit_id
    if unit_id is None:
        raise ValidationFailed("VALIDATION_ERROR", "unit_id required")
    ensure_same_unit(me, unit_id)

    existing = (
        db.query(DailyReport.id)
        .filter(DailyReport.report_date == body.report_date, DailyReport.unit_id == unit_id)
        .first()
    )
    if existing:
        raise Conflict("CONFLICT", "A report for this date and unit already exists")

    report = DailyReport(report_date=body.report_date, unit_id=unit_id, created_by=me.id, status="DRAFT")
    db.add(report)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("CONFLICT", "A report for this date and unit already exists")
    db.refresh(report)
    return _serialize_report(report, with_rows=True)


@router.get("/{report_id}")
def get_report(
    report_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    return _serialize_report(_load_report(db, me, report_id), with_rows=True)


@router.post("/{report_id}/rows", status_code=201)
def add_row(
    report_id: str,
    body: RowCreate,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*EDITOR_ROLES)),
):
    report = _load_report(db, me, report_id)
    now = local_now()
    _guard_editable(report, me, now)

    person = db.query(Person).filter(Person.id == body.person_id).first()
    if not person or str(person.unit_id) != str(report.unit_id):
        raise ValidationFailed("VALIDATION_ERROR", "Person is not part of this unit")
    category = _get_category(db, body.category_id)
    from_date, to_date = _row_dates(category, body.from_date, body.to_date, body.emergency, now.date())

    row = Justification(
        report_id=report.id,
        person_id=person.id,
        category_id=category.id,
        from_date=from_date,
        to_date=to_date,
        location=(body.location or "").strip() or None,
        notes=(body.notes or "").strip() or None,
        emergency=body.emergency,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return _serialize_row(row)


@router.put("/rows/{row_id}")
def update_row(
    row_id: str,
    body: RowUpdate,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*EDITOR_ROLES)),
):
    row = _load_row(db, row_id)
    report = row.report
    now = local_now()
    _guard_editable(report, me, now)

    fields = body.model_fields_set
    category = _get_category(db, body.category_id) if body.category_id else row.category
    # Once flagged, a row stays an emergency
    emergency = bool(row.emergency) or bool(body.emergency)
    from_date = body.from_date if "from_date" in fields else row.from_date
    to_date = body.to_date if "to_date" in fields else row.to_date
    from_date, to_date = _row_dates(category, from_date, to_date, emergency, now.date())

    row.category_id = category.id
    row.emergency = emergency
    row.from_date = from_date
    row.to_date = to_date
    if "location" in fields:
        row.location = (body.location or "").strip() or None
    if "notes" in fields:
        row.notes = (body.notes or "").strip() or None
    db.commit()
    db.refresh(row)
    return _serialize_row(row)


@router.delete("/rows/{row_id}")
def delete_row(
    row_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*EDITOR_ROLES)),
):
    row = _load_row(db, row_id)
    _guard_editable(row.report, me, local_now())
    db.delete(row)
    db.commit()
    return {"status": "ok"}


@router.post("/{report_id}/submit")
def submit_report(
    report_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*EDITOR_ROLES)),
):
    report = _load_report(db, me, report_id)
    ensure_same_unit(me, report.unit_id)
    if report.status not in ("DRAFT", "REJECTED"):
        raise ValidationFailed("INVALID_STATE", "Only DRAFT or REJECTED reports can be submitted")
    assert_before_cutoff(report, local_now())

    report.status = "PENDING"
    create_audit_log(
        db,
        entity_type="daily_report",
        entity_id=report.id,
        action="SUBMIT",
        actor_id=me.id,
        actor_role=me.role,
        context={"date": report.report_date.isoformat(), "unit_id": report.unit_id},
        commit=False,
    )
    db.commit()
    db.refresh(report)
    return _serialize_report(report)


def _review(db: Session, me: User, report_id: str, new_status: str, comment: Optional[str]) -> DailyReport:
    report = _load_report(db, me, report_id)
    if not is_admin(me) and not commands_unit(db, me, report.unit_id):
        raise Forbidden("FORBIDDEN", "Report is outside of your command")
    if report.status != "PENDING":
        raise ValidationFailed("INVALID_STATE", "Only PENDING reports can be reviewed")

    report.status = new_status
    report.reviewed_by = me.id
    report.reviewed_at = datetime.utcnow()
    report.review_comment = (comment or "").strip() or None
    create_audit_log(
        db,
        entity_type="daily_report",
        entity_id=report.id,
        action="APPROVE" if new_status == "APPROVED" else "REJECT",
        actor_id=me.id,
        actor_role=me.role,
        context={"comment": report.review_comment},
        commit=False,
    )
    db.commit()
    db.refresh(report)
    return report


@router.post("/{report_id}/approve")
def approve_report(
    report_id: str,
    body: Optional[ReviewBody] = None,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("COMMANDER", "ADMIN")),
):
    return _serialize_report(_review(db, me, report_id, "APPROVED", body.comment if body else None))


@router.post("/{report_id}/reject")
def reject_report(
    report_id: str,
    body: Optional[ReviewBody] = None,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("COMMANDER", "ADMIN")),
):
    return _serialize_report(_review(db, me, report_id, "REJECTED", body.comment if body else None))


@router.get("/{report_id}/export/pdf")
def export_report_pdf(
    report_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*EDITOR_ROLES, "AUDITOR")),
):
    report = _load_report(db, me, report_id)
    data = render_report_pdf(build_report_snapshot(db, report))
    return Response(
        content=data,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="report-{report.id}.pdf"'},
    )


@router.get("/{report_id}/export/xlsx")
def export_report_xlsx(
    report_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*EDITOR_ROLES, "AUDITOR")),
):
    report = _load_report(db, me, report_id)
    data = render_report_xlsx(build_report_snapshot(db, report))
    return Response(
        content=data,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="report-{report.id}.xlsx"'},
    )


@router.get("/people/{person_id}/upcoming-leave")
def upcoming_leave(
    person_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles(*EDITOR_ROLES, "AUDITOR")),
):
    """Justifications for one person starting today or later, soonest first."""
    try:
        pid = uuid.UUID(person_id)
    except ValueError:
        return []
    today = local_now().date()
    rows = (
        db.query(Justification)
        .filter(Justification.person_id == pid, Justification.from_date >= today)
        .order_by(Justification.from_date)
        .all()
    )
    return [
        {
            "id": str(r.id),
            "category_code": r.category.code if r.category else None,
            "category_label": r.category.label if r.category else None,
            "from_date": r.from_date.isoformat(),
            "to_date": r.to_date.isoformat() if r.to_date else None,
        }
        for r in rows
    ]
