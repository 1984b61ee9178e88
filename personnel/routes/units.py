import uuid
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth.security import get_current_user, require_roles
from ..db import get_db
from ..errors import Conflict, NotFound, ValidationFailed
from ..models.models import Unit, User
from ..schemas.units import UnitCreate, UnitUpdate
from ..services.audit import create_audit_log
from ..services.unit_tree import descendant_unit_ids, unit_label, would_create_cycle


router = APIRouter(prefix="/units", tags=["units"])
log = structlog.get_logger(__name__)


def _serialize_unit(unit: Unit) -> Dict[str, Any]:
    return {
        "id": str(unit.id),
        "code": unit.code,
        "name": unit.name,
        "label": unit_label(unit),
        "parent_id": str(unit.parent_id) if unit.parent_id else None,
    }


def _get_unit(db: Session, unit_id: str) -> Unit:
    try:
        uid = uuid.UUID(str(unit_id))
    except ValueError:
        raise ValidationFailed("VALIDATION_ERROR", "Invalid id")
    unit = db.query(Unit).filter(Unit.id == uid).first()
    if not unit:
        raise NotFound("NOT_FOUND", "Unit not found")
    return unit


def _ensure_parent_exists(db: Session, parent_id) -> None:
    if parent_id is not None and db.query(Unit.id).filter(Unit.id == parent_id).first() is None:
        raise ValidationFailed("UNIT_NOT_FOUND", "Parent unit not found")


def _ensure_code_free(db: Session, code: str, exclude_id=None) -> None:
    query = db.query(Unit.id).filter(Unit.code == code)
    if exclude_id is not None:
        query = query.filter(Unit.id != exclude_id)
    if query.first():
        raise Conflict("CONFLICT", "Unit code already exists")


@router.get("")
def list_units(db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    units = db.query(Unit).order_by(Unit.code.asc()).all()
    return [_serialize_unit(u) for u in units]


@router.get("/{unit_id}/descendants")
def list_descendants(unit_id: str, db: Session = Depends(get_db), me: User = Depends(get_current_user)):
    unit = _get_unit(db, unit_id)
    ids = descendant_unit_ids(db, unit.id)
    units = db.query(Unit).filter(Unit.id.in_(ids)).order_by(Unit.code.asc()).all()
    return [_serialize_unit(u) for u in units]


@router.post("", status_code=201)
def create_unit(body: UnitCreate, db: Session = Depends(get_db), me: User = Depends(require_roles("ADMIN"))):
    _ensure_code_free(db, body.code)
    _ensure_parent_exists(db, body.parent_id)
    unit = Unit(code=body.code, name=body.name, parent_id=body.parent_id)
    db.add(unit)
    db.flush()
    create_audit_log(
        db,
        entity_type="unit",
        entity_id=unit.id,
        action="CREATE",
        actor_id=me.id,
        actor_role=me.role,
        context={"code": unit.code, "parent_id": unit.parent_id},
        commit=False,
    )
    db.commit()
    db.refresh(unit)
    return _serialize_unit(unit)


@router.patch("/{unit_id}")
def update_unit(
    unit_id: str,
    body: UnitUpdate,
    db: Session = Depends(get_db),
    me: User = Depends(require_roles("ADMIN")),
):
    unit = _get_unit(db, unit_id)
    fields = body.model_fields_set
    before = _serialize_unit(unit)

    if "parent_id" in fields:
        _ensure_parent_exists(db, body.parent_id)
        if would_create_cycle(db, unit.id, body.parent_id):
            log.info("unit_cycle_rejected", unit_id=str(unit.id), parent_id=str(body.parent_id))
            raise Conflict("UNIT_CYCLE", "A unit cannot be placed under itself or its descendants")
        unit.parent_id = body.parent_id
    if "code" in fields and body.code:
        code = body.code.strip()
        _ensure_code_free(db, code, exclude_id=unit.id)
        unit.code = code
    if "name" in fields and body.name:
        unit.name = body.name.strip()

    create_audit_log(
        db,
        entity_type="unit",
        entity_id=unit.id,
        action="UPDATE",
        actor_id=me.id,
        actor_role=me.role,
        changes_json={"before": before, "after": _serialize_unit(unit)},
        commit=False,
    )
    db.commit()
    db.refresh(unit)
    return _serialize_unit(unit)
