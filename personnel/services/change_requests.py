"""
Change-request engine.

Requests are created PENDING and leave that state exactly once: APPROVED (the
type-specific mutation is applied), REJECTED or CANCELLED. The transition is a
single conditional UPDATE on ``status = 'PENDING'`` committed together with the
mutation and its audit entry. Document rendering and credential mail run after
that commit and only report failure through ``DecisionResult`` flags.
"""
from __future__ import annotations

import json
import math
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth.security import get_password_hash
from ..config import settings
from ..document_creator.request_pdf import (
    build_request_snapshot,
    person_snapshot,
    render_request_pdf,
    store_request_pdf,
)
from ..errors import Conflict, Forbidden, NotFound, ValidationFailed
from ..models.models import ChangeRequest, Person, Unit, User
from ..schemas.change_requests import (
    REQUEST_STATUSES,
    REQUEST_TYPES,
    TERMINAL_STATUSES,
    ChangeGradePayload,
    CreateUserPayload,
    DATE_PERSON_FIELDS,
    DeactivatePersonPayload,
    DeletePersonPayload,
    MovePersonPayload,
    UpdatePersonPayload,
    dump_payload,
    parse_payload,
)
from ..storage.local_provider import LocalStorageProvider
from ..storage.provider import StorageProvider
from .audit import compute_diff, create_audit_log
from .mailer import send_new_user_credentials
from .permissions import (
    can_access_request,
    ensure_can_cancel,
    ensure_can_decide,
    is_admin,
)
from .report_rules import parse_date
from .unit_tree import descendant_unit_ids, unit_label


log = structlog.get_logger(__name__)

# Fields stored as NULL when a patch sends an empty string
_BLANK_IS_NULL = {"personal_number", "notes", "photo_url", "city", "address", "phone", "position", "gender"}


@dataclass
class DecisionResult:
    request: ChangeRequest
    pdf_generated: bool = False
    email_sent: Optional[bool] = None
    temp_credentials: Optional[Dict[str, str]] = None


def parse_id(value: Any, what: str = "id") -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationFailed("VALIDATION_ERROR", f"Invalid {what}")


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in REQUEST_TYPES)
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid payload"


def _jsonable(value):
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))


# =====================
# Create
# =====================


def create_request(
    db: Session,
    me: User,
    request_type: Optional[str],
    person_id: Any = None,
    payload: Optional[Dict[str, Any]] = None,
) -> ChangeRequest:
    if not request_type:
        raise ValidationFailed("VALIDATION_ERROR", "type required")
    request_type = str(request_type).strip().upper()
    if request_type not in REQUEST_TYPES:
        raise ValidationFailed("VALIDATION_ERROR", "invalid type")

    if request_type == "CREATE_USER":
        request = _new_create_user_request(db, me, payload)
    else:
        request = _new_person_request(db, me, request_type, person_id, payload)

    db.add(request)
    db.flush()
    create_audit_log(
        db,
        entity_type="change_request",
        entity_id=request.id,
        action="CREATE",
        actor_id=me.id,
        actor_role=me.role,
        context={"type": request.type, "person_id": request.person_id, "target_unit_id": request.target_unit_id},
        commit=False,
    )
    db.commit()
    db.refresh(request)
    log.info(
        "change_request_created",
        request_id=str(request.id),
        type=request.type,
        created_by=str(me.id),
        target_unit_id=str(request.target_unit_id) if request.target_unit_id else None,
    )
    return request


def _new_create_user_request(db: Session, me: User, payload: Optional[Dict[str, Any]]) -> ChangeRequest:
    if me.role not in ("COMMANDER", "ADMIN"):
        raise Forbidden("FORBIDDEN", "Only COMMANDER/ADMIN can create CREATE_USER requests")
    try:
        variant: CreateUserPayload = parse_payload("CREATE_USER", payload)
    except ValidationError as e:
        raise ValidationFailed("VALIDATION_ERROR", _validation_message(e))

    if variant.user.unit_id is None:
        variant.user.unit_id = me.unit_id
    elif db.query(Unit.id).filter(Unit.id == variant.user.unit_id).first() is None:
        raise NotFound("NOT_FOUND", "Unit not found")

    return ChangeRequest(
        type="CREATE_USER",
        status="PENDING",
        created_by=me.id,
        created_by_role=me.role,
        created_by_unit_id=me.unit_id,
        person_id=None,
        # Admins without a unit submit into the admin-only inbox
        target_unit_id=me.unit_id,
        target_role=None if me.unit_id else "ADMIN",
        payload=dump_payload(variant),
        decision_note="",
        doc_no="",
        pdf_path="",
    )


def _new_person_request(
    db: Session,
    me: User,
    request_type: str,
    person_id: Any,
    payload: Optional[Dict[str, Any]],
) -> ChangeRequest:
    if not person_id:
        raise ValidationFailed("VALIDATION_ERROR", "person_id required")
    pid = parse_id(person_id, "person_id")

    person = db.query(Person).filter(Person.id == pid).first()
    if not person:
        raise NotFound("NOT_FOUND", "Person not found")

    target_unit_id = person.unit_id
    if not is_admin(me):
        if not me.unit_id:
            raise Forbidden("FORBIDDEN", "User has no unit")
        if str(me.unit_id) != str(target_unit_id):
            raise Forbidden("FORBIDDEN", "Person is not in your unit")

    try:
        variant = parse_payload(request_type, payload)
    except ValidationError as e:
        raise ValidationFailed("VALIDATION_ERROR", _validation_message(e))

    if isinstance(variant, MovePersonPayload):
        if db.query(Unit.id).filter(Unit.id == variant.to_unit_id).first() is None:
            raise NotFound("NOT_FOUND", "Target unit not found")

    pending = (
        db.query(ChangeRequest.id)
        .filter(
            ChangeRequest.person_id == pid,
            ChangeRequest.type == request_type,
            ChangeRequest.status == "PENDING",
        )
        .first()
    )
    if pending:
        raise Conflict("ALREADY_PENDING", "A pending request already exists")

    return ChangeRequest(
        type=request_type,
        status="PENDING",
        created_by=me.id,
        created_by_role=me.role,
        created_by_unit_id=me.unit_id,
        person_id=pid,
        target_unit_id=target_unit_id,
        payload=dump_payload(variant),
        decision_note="",
        doc_no="",
        pdf_path="",
    )


# =====================
# Read
# =====================


def _apply_status_filter(query, status: Optional[str]):
    if not status:
        return query
    status = status.upper()
    if status == "ARCHIVE":
        return query.filter(ChangeRequest.status.in_(TERMINAL_STATUSES))
    if status in REQUEST_STATUSES:
        return query.filter(ChangeRequest.status == status)
    return query


def _page(query, page: int, limit: Optional[int]) -> Dict[str, Any]:
    limit = min(max(1, limit or settings.page_limit_default), settings.page_limit_max)
    page = max(1, page or 1)
    total = query.count()
    items = (
        query.order_by(ChangeRequest.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "items": items,
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if total else 0,
    }


def list_mine(db: Session, me: User, status: Optional[str] = None, page: int = 1, limit: Optional[int] = None) -> Dict[str, Any]:
    query = db.query(ChangeRequest).filter(ChangeRequest.created_by == me.id)
    return _page(_apply_status_filter(query, status), page, limit)


def list_incoming(db: Session, me: User, status: Optional[str] = None, page: int = 1, limit: Optional[int] = None) -> Dict[str, Any]:
    """Inbox of requests the caller may decide or audit. Defaults to PENDING."""
    query = db.query(ChangeRequest)
    if me.role == "COMMANDER":
        if not me.unit_id:
            raise Forbidden("FORBIDDEN", "Commander has no unit")
        unit_ids = descendant_unit_ids(db, me.unit_id)
        query = query.filter(ChangeRequest.target_unit_id.in_(unit_ids))
    elif me.role not in ("ADMIN", "AUDITOR"):
        raise Forbidden("FORBIDDEN", "Insufficient role")
    return _page(_apply_status_filter(query, status or "PENDING"), page, limit)


def _load(db: Session, request_id: Any) -> ChangeRequest:
    rid = parse_id(request_id)
    request = db.query(ChangeRequest).filter(ChangeRequest.id == rid).first()
    if not request:
        raise NotFound("NOT_FOUND", "Change request not found")
    return request


def get_request(db: Session, me: User, request_id: Any) -> ChangeRequest:
    request = _load(db, request_id)
    if not can_access_request(db, me, request):
        raise Forbidden("FORBIDDEN", "Not allowed to view this request")
    return request


# =====================
# Decide
# =====================


def _transition(
    db: Session,
    request: ChangeRequest,
    new_status: str,
    me: User,
    note: str,
    now: datetime,
    **extra: Any,
) -> None:
    """Move a request out of PENDING; only one concurrent caller can win."""
    values = {
        ChangeRequest.status: new_status,
        ChangeRequest.decided_by: me.id,
        ChangeRequest.decided_at: now,
        ChangeRequest.decision_note: note,
        ChangeRequest.updated_at: now,
    }
    for key, value in extra.items():
        values[getattr(ChangeRequest, key)] = value
    updated = (
        db.query(ChangeRequest)
        .filter(ChangeRequest.id == request.id, ChangeRequest.status == "PENDING")
        .update(values, synchronize_session=False)
    )
    if updated != 1:
        db.rollback()
        raise Conflict("NOT_PENDING", "Request is no longer pending")


def _ensure_pending(request: ChangeRequest) -> None:
    if request.status != "PENDING":
        raise Conflict("NOT_PENDING", "Only PENDING requests can be decided")


def _parse_stored_payload(request: ChangeRequest):
    try:
        return parse_payload(request.type, request.payload)
    except ValidationError as e:
        raise ValidationFailed("INVALID_PAYLOAD", _validation_message(e))


def _patch_value(key: str, value: Any) -> Any:
    if value is None:
        return None
    value = value.strip() if isinstance(value, str) else value
    if value == "" and key in _BLANK_IS_NULL | DATE_PERSON_FIELDS:
        return None
    if key in DATE_PERSON_FIELDS:
        return parse_date(value)
    return value


def person_changes(variant) -> Optional[Dict[str, Any]]:
    """Column values a person-scoped request writes; None means delete the row."""
    if isinstance(variant, DeletePersonPayload):
        return None
    if isinstance(variant, DeactivatePersonPayload):
        return {"status": "INACTIVE"}
    if isinstance(variant, ChangeGradePayload):
        return {"grade_id": variant.new_grade_id}
    if isinstance(variant, MovePersonPayload):
        return {"unit_id": variant.to_unit_id}
    if isinstance(variant, UpdatePersonPayload):
        return {k: _patch_value(k, v) for k, v in variant.meta.patch.items()}
    raise ValidationFailed("INVALID_PAYLOAD", f"Unsupported request type {variant.type}")


def _commit_or_conflict(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise integrity_conflict(e)


def integrity_conflict(exc: IntegrityError) -> Conflict:
    text = str(getattr(exc, "orig", exc)).lower()
    if "service_no" in text:
        return Conflict("SERVICE_NO_EXISTS", "Service number already exists")
    if "personal_number" in text:
        return Conflict("PERSONAL_NO_EXISTS", "Personal number already exists")
    if "username" in text:
        return Conflict("USER_EXISTS", "Username already exists")
    return Conflict("CONFLICT", "Conflicting record")


def approve_request(
    db: Session,
    me: User,
    request_id: Any,
    note: Optional[str] = None,
    *,
    sender: Optional[Callable[..., None]] = None,
    renderer: Optional[Callable[[Dict[str, Any]], bytes]] = None,
    storage: Optional[StorageProvider] = None,
    hasher: Optional[Callable[[str], str]] = None,
) -> DecisionResult:
    request = _load(db, request_id)
    _ensure_pending(request)
    ensure_can_decide(db, me, request, "approve")
    variant = _parse_stored_payload(request)
    now = datetime.utcnow()
    note = (note or "").strip()

    if isinstance(variant, CreateUserPayload):
        return _approve_create_user(
            db, me, request, variant, note, now,
            sender=sender or send_new_user_credentials,
            renderer=renderer,
            storage=storage,
            hasher=hasher or get_password_hash,
        )

    person = db.query(Person).filter(Person.id == request.person_id).first() if request.person_id else None
    if person is None and not isinstance(variant, DeletePersonPayload):
        raise NotFound("PERSON_NOT_FOUND", "Person not found")

    changes = person_changes(variant)
    if isinstance(variant, MovePersonPayload):
        if db.query(Unit.id).filter(Unit.id == variant.to_unit_id).first() is None:
            raise ValidationFailed("INVALID_PAYLOAD", "Target unit no longer exists")

    before = _jsonable(person_snapshot(person))
    after = None
    if changes is not None:
        after = dict(before or {})
        after.update(_jsonable(changes))

    _transition(
        db, request, "APPROVED", me, note, now,
        decision_snapshot={"before": before, "after": after},
    )
    if person is not None:
        if changes is None:
            db.delete(person)
        else:
            for field, value in changes.items():
                setattr(person, field, value)
    create_audit_log(
        db,
        entity_type="change_request",
        entity_id=request.id,
        action="APPROVE",
        actor_id=me.id,
        actor_role=me.role,
        changes_json=compute_diff(before, after),
        context={"type": request.type, "person_id": request.person_id, "note": note},
        commit=False,
    )
    _commit_or_conflict(db)
    db.refresh(request)
    log.info("change_request_approved", request_id=str(request.id), type=request.type, decided_by=str(me.id))

    pdf_ok = generate_document(db, request, renderer=renderer, storage=storage)
    return DecisionResult(request=request, pdf_generated=pdf_ok)


def _approve_create_user(
    db: Session,
    me: User,
    request: ChangeRequest,
    variant: CreateUserPayload,
    note: str,
    now: datetime,
    *,
    sender: Callable[..., None],
    renderer: Optional[Callable[[Dict[str, Any]], bytes]],
    storage: Optional[StorageProvider],
    hasher: Callable[[str], str],
) -> DecisionResult:
    u = variant.user
    if db.query(User.id).filter(User.username == u.username).first():
        raise Conflict("USER_EXISTS", "Username already exists")

    temp_password = secrets.token_urlsafe(9)
    created = User(
        username=u.username,
        email=str(u.email),
        password_hash=hasher(temp_password),
        role=u.role,
        unit_id=u.unit_id,
        must_change_password=u.must_change_password,
        never_expires=u.never_expires,
        contract_valid_from=None if u.never_expires else u.contract_valid_from,
        contract_valid_to=None if u.never_expires else u.contract_valid_to,
    )
    db.add(created)
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        raise integrity_conflict(e)

    payload = dict(request.payload or {})
    meta = dict(payload.get("meta") or {})
    meta["created_user_id"] = str(created.id)
    payload["meta"] = meta
    _transition(db, request, "APPROVED", me, note, now, payload=payload)
    create_audit_log(
        db,
        entity_type="change_request",
        entity_id=request.id,
        action="APPROVE",
        actor_id=me.id,
        actor_role=me.role,
        context={"type": request.type, "created_user_id": created.id, "username": u.username, "note": note},
        commit=False,
    )
    _commit_or_conflict(db)
    db.refresh(request)
    log.info("change_request_approved", request_id=str(request.id), type=request.type, decided_by=str(me.id))

    unit = db.query(Unit).filter(Unit.id == u.unit_id).first() if u.unit_id else None
    email_sent = False
    try:
        sender(
            to=str(u.email),
            username=u.username,
            temp_password=temp_password,
            role=u.role,
            unit_label=unit_label(unit),
        )
        email_sent = True
    except Exception as e:
        log.warning("credentials_email_failed", request_id=str(request.id), username=u.username, error=str(e))

    pdf_ok = generate_document(db, request, renderer=renderer, storage=storage)
    return DecisionResult(
        request=request,
        pdf_generated=pdf_ok,
        email_sent=email_sent,
        temp_credentials={"username": u.username, "password": temp_password, "email": str(u.email)},
    )


def reject_request(
    db: Session,
    me: User,
    request_id: Any,
    note: Optional[str],
    *,
    renderer: Optional[Callable[[Dict[str, Any]], bytes]] = None,
    storage: Optional[StorageProvider] = None,
) -> DecisionResult:
    note = (note or "").strip()
    if len(note) < settings.reject_note_min_chars:
        raise ValidationFailed("VALIDATION_ERROR", "note required")

    request = _load(db, request_id)
    _ensure_pending(request)
    ensure_can_decide(db, me, request, "reject")
    now = datetime.utcnow()

    person = db.query(Person).filter(Person.id == request.person_id).first() if request.person_id else None
    before = _jsonable(person_snapshot(person))
    _transition(db, request, "REJECTED", me, note, now, decision_snapshot={"before": before, "after": None})
    create_audit_log(
        db,
        entity_type="change_request",
        entity_id=request.id,
        action="REJECT",
        actor_id=me.id,
        actor_role=me.role,
        context={"type": request.type, "person_id": request.person_id, "note": note},
        commit=False,
    )
    db.commit()
    db.refresh(request)
    log.info("change_request_rejected", request_id=str(request.id), type=request.type, decided_by=str(me.id))

    pdf_ok = generate_document(db, request, renderer=renderer, storage=storage)
    return DecisionResult(request=request, pdf_generated=pdf_ok)


def cancel_request(db: Session, me: User, request_id: Any, note: Optional[str] = None) -> ChangeRequest:
    request = _load(db, request_id)
    if request.status != "PENDING":
        raise Conflict("NOT_PENDING", "Only PENDING requests can be cancelled")
    ensure_can_cancel(me, request)

    _transition(db, request, "CANCELLED", me, (note or "").strip(), datetime.utcnow())
    create_audit_log(
        db,
        entity_type="change_request",
        entity_id=request.id,
        action="CANCEL",
        actor_id=me.id,
        actor_role=me.role,
        context={"type": request.type, "person_id": request.person_id},
        commit=False,
    )
    db.commit()
    db.refresh(request)
    log.info("change_request_cancelled", request_id=str(request.id), type=request.type, cancelled_by=str(me.id))
    return request


# =====================
# Documents
# =====================


def generate_document(
    db: Session,
    request: ChangeRequest,
    *,
    renderer: Optional[Callable[[Dict[str, Any]], bytes]] = None,
    storage: Optional[StorageProvider] = None,
) -> bool:
    """
    Render and store the decision document, then point the request at it.
    Safe to repeat: every run writes a new file and replaces the reference.
    """
    renderer = renderer or render_request_pdf
    try:
        storage = storage or LocalStorageProvider()
        snap = request.decision_snapshot or {}
        before = snap.get("before")
        if before is None and request.person_id and not snap:
            before = _jsonable(person_snapshot(db.query(Person).filter(Person.id == request.person_id).first()))
        snapshot = build_request_snapshot(db, request, before, snap.get("after"))
        data = renderer(snapshot)
        key = store_request_pdf(storage, request.id, data)
        request.doc_no = snapshot["doc_no"]
        request.pdf_path = key
        request.pdf_generated_at = datetime.utcnow()
        db.commit()
        db.refresh(request)
        return True
    except Exception as e:
        db.rollback()
        log.warning("request_pdf_failed", request_id=str(request.id), error=str(e))
        return False


def ensure_request_document(
    db: Session,
    me: User,
    request_id: Any,
    *,
    storage: Optional[StorageProvider] = None,
    renderer: Optional[Callable[[Dict[str, Any]], bytes]] = None,
) -> Tuple[Any, str]:
    """Path and download name of a request's document, rendering it on first access."""
    request = get_request(db, me, request_id)
    storage = storage or LocalStorageProvider()
    # Cancelled requests never get a document
    if not request.pdf_path and request.status != "CANCELLED":
        generate_document(db, request, renderer=renderer, storage=storage)
    path = storage.path_for(request.pdf_path) if request.pdf_path else None
    if path is None:
        raise NotFound("PDF_NOT_FOUND", "Document file is missing")
    return path, f"request-{request.doc_no or request.id}.pdf"


def regenerate_document(
    db: Session,
    me: User,
    request_id: Any,
    *,
    storage: Optional[StorageProvider] = None,
    renderer: Optional[Callable[[Dict[str, Any]], bytes]] = None,
) -> DecisionResult:
    request = get_request(db, me, request_id)
    if request.status not in ("APPROVED", "REJECTED"):
        raise ValidationFailed("INVALID_STATE", "Only decided requests carry a document")
    if me.role not in ("COMMANDER", "ADMIN"):
        raise Forbidden("FORBIDDEN", "Insufficient role")
    pdf_ok = generate_document(db, request, renderer=renderer, storage=storage)
    return DecisionResult(request=request, pdf_generated=pdf_ok)
