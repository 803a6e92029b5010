"""
Call audit trail (call_updates)

Audit rows describe a mutation that has already been committed. They are
written in their own short transaction after the primary commit: a failed
audit write is logged and dropped, it never undoes the change it describes.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import CallUpdate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    """Authenticated identity performing an action (issued by the auth service)"""
    user_id: Optional[int]
    name: Optional[str] = None
    role: Optional[str] = None


SYSTEM_ACTOR = Actor(user_id=None, name="system", role="system")


@dataclass
class AuditEntry:
    call_id: int
    update_type: str
    description: str
    fields_changed: Optional[dict] = None


def write_audit_entries(db: Session, entries: Iterable[AuditEntry], actor: Optional[Actor] = None) -> int:
    """
    Append audit rows for committed changes. Returns how many were written.
    """
    entries = list(entries)
    if not entries:
        return 0

    actor = actor or SYSTEM_ACTOR
    try:
        for entry in entries:
            db.add(CallUpdate(
                call_id=entry.call_id,
                actor_id=actor.user_id,
                actor_name=actor.name,
                update_type=entry.update_type,
                description=entry.description,
                fields_changed=entry.fields_changed,
            ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        call_ids = sorted({entry.call_id for entry in entries})
        logger.error(f"Failed to write audit trail for call(s) {call_ids}: {e}", exc_info=True)
        return 0

    return len(entries)
