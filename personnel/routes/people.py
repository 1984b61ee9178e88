from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Body, Depends
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth.security import require_roles
from ..db import get_db
from ..document_creator.request_pdf import person_snapshot
from ..errors import NotFound, ValidationFailed
from ..models.models import Person, User
from ..schemas.change_requests import parse_payload
from ..services.audit import compute_diff, create_audit_log
from ..services.change_requests import integrity_conflict, parse_id, person_changes
from ..services.permissions import ensure_can_update_person


router = APIRouter(prefix="/people", tags=["people"])
log = structlog.get_logger(__name__)


def _serialize_person(person: Person) -> Dict[str, Any]:
    data = {k: v.isoformat() if hasattr(v, "isoformat") else v for k, v in person_snapshot(person).items()}
    data["id"] = str(person.id)
    data["unit_id"] = str(person.unit_id)
    return data


def _patch_changes(patch: Dict[str, Any]) -> Dict[str, Any]:
    # Same field whitelist and value rules as an UPDATE_PERSON request
    try:
        variant = parse_payload("UPDATE_PERSON", {"meta": {"patch": patch}})
    except ValidationError as e:
        raise ValidationFailed("VALIDATION_ERROR", "; ".join(str(err.get("msg")) for err in e.errors()))
    return person_changes(variant)


def _apply(db: Session, me: User, person: Person, changes: Dict[str, Any], action: str) -> Person:
    before = person_snapshot(person)
    for field, value in changes.items():
        setattr(person, field, value)
    create_audit_log(
        db,
        entity_type="person",
        entity_id=person.id,
        action=action,
        actor_id=me.id,
        actor_role=me.role,
        changes_json=compute_diff(before, person_snapshot(person)),
        commit=False,
    )
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise integrity_conflict(e)
    db.refresh(person)
    return person


def _load_person(db: Session, person_id: str) -> Person:
    person = db.query(Person).filter(Person.id == parse_id(person_id)).first()
    if not person:
        raise NotFound("PERSON_NOT_FOUND", "Person not found")
    return person


@router.put("/{person_id}")
def update_person(
    person_id: str,
    patch: Dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("OPERATOR", "ADMIN")),
):
    person = _load_person(db, person_id)
    ensure_can_update_person(me, person, "update")
    person = _apply(db, me, person, _patch_changes(patch), "UPDATE")
    log.info("person_updated", person_id=str(person.id), user_id=str(me.id))
    return _serialize_person(person)


@router.post("/{person_id}/resubmit")
def resubmit_person(
    person_id: str,
    patch: Optional[Dict[str, Any]] = Body(None),
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("OPERATOR", "ADMIN")),
):
    """Send a REJECTED person back for approval, optionally with corrections."""
    person = _load_person(db, person_id)
    ensure_can_update_person(me, person, "resubmit")
    if person.status != "REJECTED":
        raise ValidationFailed("NOT_REJECTED", "Only REJECTED people can be resubmitted")

    changes = _patch_changes(patch) if patch else {}
    changes.update(status="PENDING", rejected_by=None, rejected_at=None, rejection_reason=None)
    person = _apply(db, me, person, changes, "RESUBMIT")
    log.info("person_resubmitted", person_id=str(person.id), user_id=str(me.id))
    return _serialize_person(person)
