import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..models.models import ChangeRequest, Person, Unit, User
from ..schemas.change_requests import ChangeRequestCreate, DecisionBody
from ..services import change_requests as engine
from ..services.audit import get_audit_logs
from ..services.unit_tree import unit_label


router = APIRouter(prefix="/requests", tags=["requests"])


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _unit_brief(db: Session, unit_id: Any) -> Optional[Dict[str, Any]]:
    if not unit_id:
        return None
    try:
        uid = unit_id if isinstance(unit_id, uuid.UUID) else uuid.UUID(str(unit_id))
    except ValueError:
        return None
    unit = db.query(Unit).filter(Unit.id == uid).first()
    if not unit:
        return {"id": str(uid)}
    return {"id": str(unit.id), "code": unit.code, "name": unit.name, "label": unit_label(unit)}


def _user_brief(db: Session, user_id: Optional[uuid.UUID]) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        return {"id": str(user_id)}
    return {"id": str(user.id), "username": user.username, "role": user.role}


def _person_brief(db: Session, person_id: Optional[uuid.UUID]) -> Optional[Dict[str, Any]]:
    if not person_id:
        return None
    person = db.query(Person).filter(Person.id == person_id).first()
    if not person:
        # Hard-deleted by an approved DELETE_PERSON
        return {"id": str(person_id), "deleted": True}
    return {
        "id": str(person.id),
        "service_no": person.service_no,
        "first_name": person.first_name,
        "last_name": person.last_name,
        "status": person.status,
    }


def _serialize_request(db: Session, request: ChangeRequest) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": str(request.id),
        "type": request.type,
        "status": request.status,
        "person_id": str(request.person_id) if request.person_id else None,
        "target_unit_id": str(request.target_unit_id) if request.target_unit_id else None,
        "target_role": request.target_role,
        "payload": request.payload or {},
        "created_by": str(request.created_by) if request.created_by else None,
        "created_by_role": request.created_by_role,
        "decided_by": str(request.decided_by) if request.decided_by else None,
        "decided_at": _iso(request.decided_at),
        "decision_note": request.decision_note or "",
        "doc_no": request.doc_no or "",
        "has_pdf": bool(request.pdf_path),
        "pdf_generated_at": _iso(request.pdf_generated_at),
        "created_at": _iso(request.created_at),
        "updated_at": _iso(request.updated_at),
    }
    data["person"] = _person_brief(db, request.person_id)
    data["target_unit"] = _unit_brief(db, request.target_unit_id)
    data["to_unit"] = _unit_brief(db, (request.payload or {}).get("to_unit_id"))
    data["created_by_user"] = _user_brief(db, request.created_by)
    data["decided_by_user"] = _user_brief(db, request.decided_by)
    return data


def _serialize_page(db: Session, page: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(page)
    out["items"] = [_serialize_request(db, r) for r in page["items"]]
    return out


def _serialize_decision(db: Session, result: engine.DecisionResult) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "request": _serialize_request(db, result.request),
        "pdf_generated": result.pdf_generated,
    }
    if result.email_sent is not None:
        data["email_sent"] = result.email_sent
    if result.temp_credentials is not None:
        data["temp_credentials"] = result.temp_credentials
    return data


@router.post("", status_code=201)
def create_request(
    body: ChangeRequestCreate,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("OPERATOR", "OFFICER", "ADMIN", "COMMANDER")),
):
    request = engine.create_request(db, me, body.type, body.person_id, body.payload)
    return _serialize_request(db, request)


@router.get("/my")
def list_my_requests(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("OPERATOR", "OFFICER", "ADMIN", "AUDITOR", "COMMANDER")),
):
    return _serialize_page(db, engine.list_mine(db, me, status=status, page=page, limit=limit))


@router.get("/incoming")
def list_incoming_requests(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("COMMANDER", "ADMIN", "AUDITOR")),
):
    return _serialize_page(db, engine.list_incoming(db, me, status=status, page=page, limit=limit))


# Alias kept for clients built against the inbox naming
router.add_api_route("/inbox", list_incoming_requests, methods=["GET"])


@router.get("/{request_id}")
def get_request(
    request_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    return _serialize_request(db, engine.get_request(db, me, request_id))


@router.get("/{request_id}/history")
def get_request_history(
    request_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    request = engine.get_request(db, me, request_id)
    return [
        {
            "action": entry.action,
            "actor_id": str(entry.actor_id) if entry.actor_id else None,
            "actor_role": entry.actor_role,
            "timestamp": _iso(entry.timestamp_utc),
            "changes": entry.changes_json,
            "context": entry.context,
        }
        for entry in get_audit_logs(db, entity_type="change_request", entity_id=request.id)
    ]


@router.get("/{request_id}/pdf")
def get_request_pdf(
    request_id: str,
    download: int = Query(0),
    db: Session = Depends(get_db),
    me: User = Depends(get_current_user),
):
    path, filename = engine.ensure_request_document(db, me, request_id)
    return FileResponse(
        path,
        media_type="application/pdf",
        filename=filename,
        content_disposition_type="attachment" if download else "inline",
    )


@router.post("/{request_id}/pdf/regenerate")
def regenerate_request_pdf(
    request_id: str,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("COMMANDER", "ADMIN")),
):
    return _serialize_decision(db, engine.regenerate_document(db, me, request_id))


@router.post("/{request_id}/approve")
def approve_request(
    request_id: str,
    body: Optional[DecisionBody] = None,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("COMMANDER", "ADMIN")),
):
    result = engine.approve_request(db, me, request_id, body.note if body else None)
    return _serialize_decision(db, result)


@router.post("/{request_id}/reject")
def reject_request(
    request_id: str,
    body: Optional[DecisionBody] = None,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("COMMANDER", "ADMIN")),
):
    result = engine.reject_request(db, me, request_id, body.note if body else None)
    return _serialize_decision(db, result)


@router.post("/{request_id}/cancel")
def cancel_request(
    request_id: str,
    body: Optional[DecisionBody] = None,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("OPERATOR", "OFFICER", "ADMIN", "COMMANDER")),
):
    request = engine.cancel_request(db, me, request_id, body.note if body else None)
    return _serialize_request(db, request)
