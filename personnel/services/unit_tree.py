from __future__ import annotations

import uuid
from typing import Optional, Set

from sqlalchemy.orm import Session

from ..models.models import Unit


def _as_uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def descendant_unit_ids(db: Session, root_unit_id) -> Set[uuid.UUID]:
    """Return the root unit id plus the ids of every unit below it.

    Breadth-first over ``Unit.parent_id``, one query per tree level. The seen
    set keeps a malformed cycle from looping. An unknown root yields ``{root}``.
    """
    root = _as_uuid(root_unit_id)
    if root is None:
        return set()
    seen: Set[uuid.UUID] = {root}
    frontier = [root]
    while frontier:
        rows = db.query(Unit.id).filter(Unit.parent_id.in_(frontier)).all()
        frontier = []
        for (child_id,) in rows:
            if child_id not in seen:
                seen.add(child_id)
                frontier.append(child_id)
    return seen


def would_create_cycle(db: Session, unit_id, new_parent_id) -> bool:
    """True if making ``new_parent_id`` the parent of ``unit_id`` closes a loop."""
    if new_parent_id is None:
        return False
    return _as_uuid(new_parent_id) in descendant_unit_ids(db, unit_id)


def unit_label(unit: Optional[Unit]) -> Optional[str]:
    if unit is None:
        return None
    code = (unit.code or "").strip()
    name = (unit.name or "").strip()
    return f"{code} - {name}" if code else name
