"""
Authorization checks for change requests, reports and people.
"""
from typing import Optional

from sqlalchemy.orm import Session

from ..errors import Forbidden
from ..models.models import ChangeRequest, Person, User
from .unit_tree import descendant_unit_ids


DECIDER_ROLES = {"COMMANDER", "ADMIN"}


def is_admin(user: User) -> bool:
    return user.role == "ADMIN"


def same_unit(user: User, unit_id) -> bool:
    """ADMIN acts everywhere; everyone else only inside their own unit."""
    if is_admin(user):
        return True
    if not user.unit_id or unit_id is None:
        return False
    return str(user.unit_id) == str(unit_id)


def ensure_same_unit(user: User, unit_id, code: str = "FORBIDDEN_UNIT") -> None:
    if not same_unit(user, unit_id):
        raise Forbidden(code, "Outside of your unit")


def commands_unit(db: Session, user: User, unit_id) -> bool:
    """True if ``unit_id`` is the commander's unit or one of its descendants."""
    if not user.unit_id or unit_id is None:
        return False
    return unit_id in descendant_unit_ids(db, user.unit_id)


def can_access_request(db: Session, user: User, request: Optional[ChangeRequest]) -> bool:
    """
    Read access to a change request.
    - ADMIN, AUDITOR: always
    - OPERATOR, OFFICER: only their own requests
    - COMMANDER: requests targeted at their unit subtree
    """
    if request is None:
        return False
    if user.role in ("ADMIN", "AUDITOR"):
        return True
    if user.role in ("OPERATOR", "OFFICER"):
        return str(request.created_by) == str(user.id)
    if user.role == "COMMANDER":
        return commands_unit(db, user, request.target_unit_id)
    return False


def ensure_can_decide(db: Session, user: User, request: ChangeRequest, action: str = "approve") -> None:
    """Approve/reject gate. CREATE_USER approval is reserved to ADMIN."""
    if user.role not in DECIDER_ROLES:
        raise Forbidden("FORBIDDEN", "Insufficient role")
    if user.role == "COMMANDER" and not commands_unit(db, user, request.target_unit_id):
        raise Forbidden("FORBIDDEN", "Request is outside of your command")
    if request.type == "CREATE_USER" and action == "approve" and not is_admin(user):
        raise Forbidden("FORBIDDEN", "Only ADMIN can approve CREATE_USER")


def ensure_can_cancel(user: User, request: ChangeRequest) -> None:
    if not is_admin(user) and str(request.created_by) != str(user.id):
        raise Forbidden("FORBIDDEN", "You can cancel only your requests")


def ensure_can_update_person(user: User, person: Person, action: str = "update") -> None:
    """
    Person edits by collaborating routes and by the change-request engine.
    Non-admins stay inside their unit and may only touch people they created.
    """
    ensure_same_unit(user, person.unit_id)
    if not is_admin(user) and str(person.created_by) != str(user.id):
        code = "FORBIDDEN_RESUBMIT" if action == "resubmit" else "FORBIDDEN_UPDATE"
        raise Forbidden(code, "Only the creator can modify this person")
