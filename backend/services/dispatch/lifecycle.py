"""
Call Lifecycle Manager

Creation, field updates, status transitions and closure of calls.

Status machine:
    pending -> dispatched -> enroute -> on_scene -> cleared
    (forward skips allowed, cancelled from any non-terminal status)
    cleared and cancelled are terminal.

Unit-set changes always go through the assignment coordinator's staged
helpers so the call row, unit rows and assignment rows commit together.
Audit rows and change notifications follow each commit.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import (
    Call, CallType, CallUnit, CallUpdate, Unit, CallStatus, UpdateType,
    ACTIVE_CALL_STATUSES, TERMINAL_CALL_STATUSES,
    PRIORITY_MOST_URGENT, PRIORITY_LEAST_URGENT,
)
from services.dispatch import notifier
from services.dispatch.assignment import (
    AssignmentChange, apply_assign, apply_release, lock_call, lock_units, normalize_unit_ids,
)
from services.dispatch.audit import Actor, AuditEntry, write_audit_entries
from services.dispatch.call_numbers import insert_with_call_number
from services.dispatch.errors import (
    ConflictError, DispatchError, NotFoundError, PersistenceFailure, ValidationFailure,
)

logger = logging.getLogger(__name__)


# =============================================================================
# STATUS MACHINE
# =============================================================================

ALLOWED_TRANSITIONS = {
    CallStatus.PENDING.value: {
        CallStatus.DISPATCHED.value, CallStatus.ENROUTE.value, CallStatus.ON_SCENE.value,
        CallStatus.CLEARED.value, CallStatus.CANCELLED.value,
    },
    CallStatus.DISPATCHED.value: {
        CallStatus.ENROUTE.value, CallStatus.ON_SCENE.value,
        CallStatus.CLEARED.value, CallStatus.CANCELLED.value,
    },
    CallStatus.ENROUTE.value: {
        CallStatus.ON_SCENE.value, CallStatus.CLEARED.value, CallStatus.CANCELLED.value,
    },
    CallStatus.ON_SCENE.value: {
        CallStatus.CLEARED.value, CallStatus.CANCELLED.value,
    },
    CallStatus.CLEARED.value: set(),
    CallStatus.CANCELLED.value: set(),
}


def check_transition(current: str, target: str):
    if target not in ALLOWED_TRANSITIONS:
        raise ValidationFailure([f"Invalid status '{target}'"])
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ConflictError(f"Cannot change call status from {current} to {target}")


# =============================================================================
# FIELD MAPPING
# =============================================================================

# Nested request sections -> call columns
LOCATION_FIELDS = {
    "latitude": "latitude",
    "longitude": "longitude",
    "address": "address",
    "location_notes": "location_notes",
    "notes": "location_notes",
}
CALLER_FIELDS = {
    "name": "caller_name",
    "phone": "caller_phone",
    "callback_number": "callback_number",
    "is_anonymous": "is_anonymous",
}

UPDATABLE_FIELDS = [
    "call_type_id", "priority", "status", "description",
    "latitude", "longitude", "address", "location_notes",
    "caller_name", "caller_phone", "callback_number", "is_anonymous",
]

# (columns, audit fragment, audit type when it is the only change), in audit order
CHANGE_GROUPS = [
    (("call_type_id",), "Call type changed.", UpdateType.GENERAL.value),
    (("priority",), "Priority changed.", UpdateType.PRIORITY_CHANGE.value),
    (("latitude", "longitude", "address", "location_notes"), "Location updated.", UpdateType.LOCATION_UPDATE.value),
    (("caller_name", "caller_phone", "callback_number", "is_anonymous"), "Caller information updated.", UpdateType.GENERAL.value),
    (("description",), "Description updated.", UpdateType.DESCRIPTION_UPDATE.value),
    (("status",), None, UpdateType.STATUS_CHANGE.value),
]


def flatten_call_fields(data: dict) -> dict:
    """
    Turn a request payload ({location: {...}, caller: {...}, ...}) into
    call column values. Only keys present in the payload are returned.
    """
    fields = {}
    for key, value in data.items():
        if key == "location" and isinstance(value, dict):
            for sub_key, sub_value in value.items():
                if sub_key in LOCATION_FIELDS:
                    fields[LOCATION_FIELDS[sub_key]] = sub_value
        elif key in ("caller", "caller_info") and isinstance(value, dict):
            for sub_key, sub_value in value.items():
                if sub_key in CALLER_FIELDS:
                    fields[CALLER_FIELDS[sub_key]] = sub_value
        elif key in UPDATABLE_FIELDS or key == "assigned_units":
            fields[key] = value
    return fields


def _priority_error(priority) -> Optional[str]:
    if isinstance(priority, bool) or not isinstance(priority, int):
        return "Priority must be an integer"
    if not PRIORITY_MOST_URGENT <= priority <= PRIORITY_LEAST_URGENT:
        return f"Priority must be between {PRIORITY_MOST_URGENT} and {PRIORITY_LEAST_URGENT}"
    return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive values
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _actor_label(actor: Optional[Actor]) -> str:
    if actor is None:
        return "system"
    return actor.name or f"user {actor.user_id}"


def _fail(db: Session, error: Exception, what: str):
    db.rollback()
    if isinstance(error, DispatchError):
        raise error
    logger.error(f"{what} failed: {error}", exc_info=True)
    raise PersistenceFailure() from error


def _attached_unit_ids(db: Session, call: Call) -> List[int]:
    """Open assignment rows plus any unit still pointing at the call"""
    unit_ids = list(call.assigned_units)
    for (unit_id,) in db.query(Unit.id).filter(Unit.assigned_call_id == call.id).order_by(Unit.id).all():
        if unit_id not in unit_ids:
            unit_ids.append(unit_id)
    return unit_ids


def _apply_closure(call: Call, status: str, now: datetime):
    call.closed_at = now
    if status == CallStatus.CLEARED.value:
        call.cleared_time = now


# =============================================================================
# CREATE
# =============================================================================

def create_call(db: Session, data: dict, actor: Optional[Actor] = None) -> Call:
    """
    Create a call in pending status with a fresh call number.
    Units supplied at creation are assigned in the same transaction.
    """
    fields = flatten_call_fields(data)

    errors = []
    if fields.get("call_type_id") is None:
        errors.append("Call type is required")
    if fields.get("priority") is None:
        errors.append("Priority is required")
    else:
        priority_error = _priority_error(fields["priority"])
        if priority_error:
            errors.append(priority_error)
    description = fields.get("description")
    if description is None or not str(description).strip():
        errors.append("Description is required")
    if errors:
        raise ValidationFailure(errors, prefix="Invalid call")

    unit_ids = normalize_unit_ids(fields.pop("assigned_units", None))
    fields.pop("status", None)

    now = _utcnow()
    change = None
    try:
        call_type = db.get(CallType, fields["call_type_id"])
        if not call_type or not call_type.is_active:
            raise ValidationFailure([f"Unknown call type {fields['call_type_id']}"], prefix="Invalid call")

        call = Call(
            **fields,
            status=CallStatus.PENDING.value,
            dispatcher_id=actor.user_id if actor else None,
            dispatcher_name=actor.name if actor else None,
            created_at=now,
            updated_at=now,
        )
        insert_with_call_number(db, call)

        if unit_ids:
            units = lock_units(db, unit_ids)
            change = apply_assign(db, call, units, actor, now)

        db.commit()
    except (DispatchError, SQLAlchemyError) as e:
        _fail(db, e, "Creating call")

    logger.info(f"Call created: {call.call_number} by {_actor_label(actor)}")

    entries = [AuditEntry(call_id=call.id, update_type=UpdateType.GENERAL.value, description="Call created")]
    if change is not None:
        entries += change.audit_entries()
    write_audit_entries(db, entries, actor)

    notifier.publish_change(notifier.CALLS, call.id, "created")
    if change is not None:
        change.publish()
    return call


# =============================================================================
# UPDATE
# =============================================================================

def update_call(db: Session, call_id: int, changes: dict, actor: Optional[Actor] = None) -> Call:
    """
    Apply a partial update. Only keys present in `changes` are considered;
    a payload that changes nothing is a no-op (no write, no audit).

    A new assigned_units list is applied as a diff: units no longer wanted
    are released first, then new units are assigned. Units in both sets
    are not touched.
    """
    fields = flatten_call_fields(changes)
    desired_units = fields.pop("assigned_units", None)
    if desired_units is not None:
        desired_units = normalize_unit_ids(desired_units)

    errors = []
    if "priority" in fields:
        priority_error = _priority_error(fields["priority"])
        if priority_error:
            errors.append(priority_error)
    if "description" in fields and (fields["description"] is None or not str(fields["description"]).strip()):
        errors.append("Description cannot be empty")
    for required in ("call_type_id", "status"):
        if required in fields and fields[required] is None:
            errors.append(f"{required} cannot be null")
    if errors:
        raise ValidationFailure(errors, prefix="Invalid call update")

    now = _utcnow()
    change = AssignmentChange(call_id=call_id)
    try:
        call = lock_call(db, call_id)

        diff = {}
        for key, value in fields.items():
            current = getattr(call, key)
            if current != value:
                diff[key] = {"old": current, "new": value}

        to_release, to_assign = [], []
        if desired_units is not None:
            current_units = _attached_unit_ids(db, call)
            to_release = [u for u in current_units if u not in desired_units]
            to_assign = [u for u in desired_units if u not in current_units]
        units_requested = bool(to_release or to_assign)

        if not diff and not to_release and not to_assign:
            db.rollback()
            return call

        if "call_type_id" in diff:
            call_type = db.get(CallType, diff["call_type_id"]["new"])
            if not call_type or not call_type.is_active:
                raise ValidationFailure([f"Unknown call type {diff['call_type_id']['new']}"], prefix="Invalid call update")

        new_status = diff.get("status", {}).get("new")
        if new_status is not None:
            check_transition(call.status, new_status)
            if new_status in TERMINAL_CALL_STATUSES:
                if to_assign:
                    raise ConflictError(f"Cannot assign units while setting call to {new_status}")
                to_release = _attached_unit_ids(db, call)

        for key, values in diff.items():
            setattr(call, key, values["new"])
        if new_status in TERMINAL_CALL_STATUSES:
            _apply_closure(call, new_status, now)

        # Release before assign
        units = {unit.id: unit for unit in lock_units(db, to_release + to_assign)}
        if to_release:
            change.merge(apply_release(db, call, [units[u] for u in to_release], now))
        if to_assign:
            change.merge(apply_assign(db, call, [units[u] for u in to_assign], actor, now))

        call.updated_at = now
        db.commit()
    except (DispatchError, SQLAlchemyError) as e:
        _fail(db, e, f"Updating call {call_id}")

    logger.info(f"Call updated: {call.call_number} ({', '.join(diff) or 'units'}) by {_actor_label(actor)}")

    entries = []
    summary = summarize_changes(call.id, diff, units_changed=units_requested)
    if summary is not None:
        entries.append(summary)
    entries += change.audit_entries()
    write_audit_entries(db, entries, actor)

    notifier.publish_change(notifier.CALLS, call.id, "closed" if new_status in TERMINAL_CALL_STATUSES else "updated")
    change.publish()
    return call


def summarize_changes(
    call_id: int, diff: dict, units_changed: bool = False, note: Optional[str] = None,
) -> Optional[AuditEntry]:
    """
    One audit row describing every changed field.
    A unit-set-only change is described by the coordinator's own rows.
    """
    fragments = []
    types = []
    for columns, fragment, update_type in CHANGE_GROUPS:
        if not any(column in diff for column in columns):
            continue
        if columns == ("status",):
            fragment = f"Status changed to {diff['status']['new']}."
        fragments.append(fragment)
        types.append(update_type)

    if not fragments:
        return None

    if units_changed:
        fragments.append("Unit assignment updated.")
    if note:
        fragments.append(note)

    update_type = types[0] if len(types) == 1 and not units_changed else UpdateType.GENERAL.value
    return AuditEntry(
        call_id=call_id,
        update_type=update_type,
        description=" ".join(fragments),
        fields_changed=diff,
    )


def update_call_status(db: Session, call_id: int, status: str, actor: Optional[Actor] = None) -> Call:
    """Status-only transition, same validation and audit path as update_call"""
    return update_call(db, call_id, {"status": status}, actor)


# =============================================================================
# CLOSE
# =============================================================================

def close_call(db: Session, call_id: int, actor: Optional[Actor] = None, notes: Optional[str] = None) -> Call:
    """Clear the call, stamp closure times and release every unit on it."""
    now = _utcnow()
    try:
        call = lock_call(db, call_id)
        if call.status == CallStatus.CLEARED.value:
            raise ConflictError("Call is already closed")
        if call.status == CallStatus.CANCELLED.value:
            raise ConflictError("Call was cancelled and cannot be closed")

        call.status = CallStatus.CLEARED.value
        _apply_closure(call, CallStatus.CLEARED.value, now)
        call.updated_at = now

        units = lock_units(db, _attached_unit_ids(db, call))
        change = apply_release(db, call, units, now)

        db.commit()
    except (DispatchError, SQLAlchemyError) as e:
        _fail(db, e, f"Closing call {call_id}")

    logger.info(f"Call closed: {call.call_number} by {_actor_label(actor)}")

    notes = (notes or "").strip()
    description = f"Call closed. Notes: {notes}" if notes else "Call closed"
    entries = [AuditEntry(call_id=call.id, update_type=UpdateType.STATUS_CHANGE.value, description=description)]
    write_audit_entries(db, entries + change.audit_entries(), actor)

    notifier.publish_change(notifier.CALLS, call.id, "closed")
    change.publish()
    return call


# =============================================================================
# QUERIES
# =============================================================================

def get_call(db: Session, call_id: int) -> Call:
    call = db.query(Call).filter(Call.id == call_id).first()
    if not call:
        raise NotFoundError(f"Call {call_id} not found")
    return call


def get_call_timeline(db: Session, call_id: int) -> Tuple[Call, List[CallUpdate]]:
    """Call plus its audit trail, newest first"""
    call = get_call(db, call_id)
    updates = (
        db.query(CallUpdate)
        .filter(CallUpdate.call_id == call_id)
        .order_by(CallUpdate.created_at.desc(), CallUpdate.id.desc())
        .all()
    )
    return call, updates


def search_calls(
    db: Session,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    statuses: Optional[List[str]] = None,
    priorities: Optional[List[int]] = None,
    call_type_ids: Optional[List[int]] = None,
    unit_ids: Optional[List[int]] = None,
    dispatcher_id: Optional[int] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Call], int]:
    """
    Filtered call list, newest first. `total` ignores limit/offset.
    unit_ids matches any call the units were ever assigned to.
    """
    query = db.query(Call)

    if start_date:
        query = query.filter(Call.created_at >= start_date)
    if end_date:
        query = query.filter(Call.created_at <= end_date)
    if statuses:
        query = query.filter(Call.status.in_(statuses))
    if priorities:
        query = query.filter(Call.priority.in_(priorities))
    if call_type_ids:
        query = query.filter(Call.call_type_id.in_(call_type_ids))
    if unit_ids:
        query = query.filter(Call.id.in_(
            select(CallUnit.call_id).where(CallUnit.unit_id.in_(unit_ids))
        ))
    if dispatcher_id is not None:
        query = query.filter(Call.dispatcher_id == dispatcher_id)

    total = query.count()

    calls = (
        query.order_by(Call.created_at.desc(), Call.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return calls, total


def get_active_calls(db: Session) -> List[Call]:
    """Non-terminal calls, most urgent first, then oldest first"""
    return (
        db.query(Call)
        .filter(Call.status.in_(ACTIVE_CALL_STATUSES))
        .order_by(Call.priority.asc(), Call.created_at.asc(), Call.id.asc())
        .all()
    )


def get_call_stats(db: Session, start_date: Optional[datetime] = None, end_date: Optional[datetime] = None) -> dict:
    """Totals over calls created in the range; response time is creation to clearance"""
    query = db.query(Call.status, Call.priority, Call.created_at, Call.cleared_time)
    if start_date:
        query = query.filter(Call.created_at >= start_date)
    if end_date:
        query = query.filter(Call.created_at <= end_date)

    total = 0
    active = 0
    emergency = 0
    response_minutes = []
    for status, priority, created_at, cleared_time in query.all():
        total += 1
        if status not in TERMINAL_CALL_STATUSES:
            active += 1
        if priority == PRIORITY_MOST_URGENT:
            emergency += 1
        if cleared_time and created_at:
            delta = _as_utc(cleared_time) - _as_utc(created_at)
            response_minutes.append(delta.total_seconds() / 60)

    return {
        "total_calls": total,
        "active_calls": active,
        "emergency_calls": emergency,
        "avg_response_time": round(sum(response_minutes) / len(response_minutes), 1) if response_minutes else None,
    }
