"""
Unit Assignment Coordinator

The only code that changes which units are attached to which call.

Invariants kept here:
    - a unit is attached to at most one call at a time
    - unit.assigned_call_id is set exactly while the unit is in a committed
      status (dispatched, enroute, on_scene, transporting)
    - a call's assigned_units (open call_units rows) matches the units
      pointing at it

Every public operation is one transaction: call and unit rows are locked
(call first, then units by id), all writes are applied, then committed
together. Audit rows and change notifications follow the commit.

Assigning a unit that is committed to another call releases it from that
call first (last writer wins), and the release is audited on the call that
lost the unit.

The apply_* helpers stage changes without committing so the lifecycle
manager can fold them into its own unit of work.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import (
    Call, CallUnit, Unit, UnitStatus, UpdateType, COMMITTED_UNIT_STATUSES,
)
from services.dispatch import notifier
from services.dispatch.audit import Actor, AuditEntry, write_audit_entries
from services.dispatch.errors import (
    ConflictError, DispatchError, NotFoundError, PersistenceFailure, ValidationFailure,
)

logger = logging.getLogger(__name__)


@dataclass
class AssignmentChange:
    """What one unit of work did to a call's unit set"""
    call_id: int
    assigned: List[Unit] = field(default_factory=list)
    released: List[Unit] = field(default_factory=list)
    # Units taken from other calls: other call id -> units
    displaced: Dict[int, List[Unit]] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.assigned or self.released)

    def merge(self, other: "AssignmentChange"):
        self.assigned.extend(other.assigned)
        self.released.extend(other.released)
        for call_id, units in other.displaced.items():
            self.displaced.setdefault(call_id, []).extend(units)

    def audit_entries(self) -> List[AuditEntry]:
        entries = []
        if self.released:
            entries.append(AuditEntry(
                call_id=self.call_id,
                update_type=UpdateType.UNIT_ASSIGNMENT.value,
                description=f"Units released: {_unit_numbers(self.released)}",
            ))
        if self.assigned:
            entries.append(AuditEntry(
                call_id=self.call_id,
                update_type=UpdateType.UNIT_ASSIGNMENT.value,
                description=f"Units assigned: {_unit_numbers(self.assigned)}",
            ))
        for other_call_id, units in self.displaced.items():
            entries.append(AuditEntry(
                call_id=other_call_id,
                update_type=UpdateType.UNIT_ASSIGNMENT.value,
                description=f"Units released: {_unit_numbers(units)} (reassigned to another call)",
            ))
        return entries

    def publish(self):
        if not self.changed:
            return
        notifier.publish_change(notifier.CALLS, self.call_id, "units_changed")
        for other_call_id in self.displaced:
            notifier.publish_change(notifier.CALLS, other_call_id, "units_changed")
        for unit in self.assigned + self.released:
            notifier.publish_change(notifier.UNITS, unit.id, "updated")


def _unit_numbers(units: Iterable[Unit]) -> str:
    return ", ".join(unit.unit_number for unit in units)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_unit_ids(unit_ids) -> List[int]:
    """Deduplicate while keeping the caller's order"""
    seen = set()
    result = []
    for unit_id in unit_ids or []:
        try:
            unit_id = int(unit_id)
        except (TypeError, ValueError):
            raise ValidationFailure([f"Invalid unit id: {unit_id!r}"])
        if unit_id not in seen:
            seen.add(unit_id)
            result.append(unit_id)
    return result


# =============================================================================
# LOCKING
# =============================================================================

def lock_call(db: Session, call_id: int) -> Call:
    call = db.query(Call).filter(Call.id == call_id).with_for_update().first()
    if not call:
        raise NotFoundError(f"Call {call_id} not found")
    return call


def lock_units(db: Session, unit_ids: List[int]) -> List[Unit]:
    """Lock units in id order; returns them in the caller's order"""
    if not unit_ids:
        return []

    units = (
        db.query(Unit)
        .filter(Unit.id.in_(unit_ids))
        .order_by(Unit.id)
        .with_for_update()
        .all()
    )
    by_id = {unit.id: unit for unit in units}
    missing = [unit_id for unit_id in unit_ids if unit_id not in by_id]
    if missing:
        raise NotFoundError(f"Unit(s) not found: {', '.join(str(m) for m in missing)}")
    return [by_id[unit_id] for unit_id in unit_ids]


def _open_row(call: Call, unit_id: int) -> Optional[CallUnit]:
    for row in call.assignments:
        if row.unit_id == unit_id and row.released_at is None:
            return row
    return None


def _close_open_rows(db: Session, unit_id: int, now: datetime, exclude_call_id: Optional[int] = None) -> List[int]:
    """Close a unit's open assignment rows on other calls; returns those call ids"""
    query = db.query(CallUnit).filter(CallUnit.unit_id == unit_id, CallUnit.released_at.is_(None))
    if exclude_call_id is not None:
        query = query.filter(CallUnit.call_id != exclude_call_id)

    call_ids = []
    for row in query.all():
        row.released_at = now
        call_ids.append(row.call_id)
    return call_ids


def _free_unit(unit: Unit, now: datetime):
    unit.status = UnitStatus.AVAILABLE.value
    unit.assigned_call_id = None
    unit.last_status_update = now


# =============================================================================
# STAGED CHANGES (no commit)
# =============================================================================

def apply_release(db: Session, call: Call, units: List[Unit], now: Optional[datetime] = None) -> AssignmentChange:
    """Detach units from the call. Units not on the call are left alone."""
    now = now or _utcnow()
    change = AssignmentChange(call_id=call.id)

    for unit in units:
        row = _open_row(call, unit.id)
        attached = unit.assigned_call_id == call.id
        if row is None and not attached:
            continue
        if row is not None:
            row.released_at = now
        if attached:
            _free_unit(unit, now)
        change.released.append(unit)

    return change


def apply_assign(
    db: Session,
    call: Call,
    units: List[Unit],
    actor: Optional[Actor] = None,
    now: Optional[datetime] = None,
) -> AssignmentChange:
    """Attach units to the call, releasing them from any other call first."""
    if call.is_terminal:
        raise ConflictError(f"Call {call.call_number} is {call.status}; units cannot be assigned")

    now = now or _utcnow()
    change = AssignmentChange(call_id=call.id)

    for unit in units:
        row = _open_row(call, unit.id)
        if row is not None and unit.assigned_call_id == call.id and unit.status in COMMITTED_UNIT_STATUSES:
            continue

        # Release first: no moment where the unit belongs to two calls
        for other_call_id in _close_open_rows(db, unit.id, now, exclude_call_id=call.id):
            change.displaced.setdefault(other_call_id, []).append(unit)
        if unit.assigned_call_id is not None and unit.assigned_call_id != call.id:
            if unit.assigned_call_id not in change.displaced:
                change.displaced[unit.assigned_call_id] = [unit]
            logger.info(f"Unit {unit.unit_number} moved from call {unit.assigned_call_id} to {call.call_number}")

        unit.status = UnitStatus.DISPATCHED.value
        unit.assigned_call_id = call.id
        unit.last_status_update = now
        if row is None:
            call.assignments.append(CallUnit(
                unit_id=unit.id,
                assigned_at=now,
                assigned_by=actor.user_id if actor else None,
            ))
        change.assigned.append(unit)

    if change.displaced:
        displaced_calls = (
            db.query(Call)
            .filter(Call.id.in_(sorted(change.displaced)))
            .order_by(Call.id)
            .with_for_update()
            .all()
        )
        for other_call in displaced_calls:
            other_call.updated_at = now

    return change


def _finish(db: Session, change: AssignmentChange, actor: Optional[Actor], extra_entries=None):
    """Post-commit: audit then notify"""
    entries = change.audit_entries() + list(extra_entries or [])
    write_audit_entries(db, entries, actor)
    change.publish()


def _fail(db: Session, error: Exception, what: str):
    db.rollback()
    if isinstance(error, DispatchError):
        raise error
    logger.error(f"{what} failed: {error}", exc_info=True)
    raise PersistenceFailure() from error


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def assign_units(db: Session, call_id: int, unit_ids, actor: Optional[Actor] = None) -> Call:
    """Commit units to a call (status dispatched)."""
    unit_ids = normalize_unit_ids(unit_ids)

    try:
        call = lock_call(db, call_id)
        units = lock_units(db, unit_ids)
        change = apply_assign(db, call, units, actor)
        if change.changed:
            call.updated_at = _utcnow()
        db.commit()
    except (DispatchError, SQLAlchemyError) as e:
        _fail(db, e, f"Assigning units {unit_ids} to call {call_id}")

    if change.changed:
        logger.info(f"Units assigned to call {call.call_number}: {_unit_numbers(change.assigned)}")
        _finish(db, change, actor)
    return call


def release_units(db: Session, call_id: int, unit_ids, actor: Optional[Actor] = None) -> Call:
    """Return units to available. Units not on the call are ignored."""
    unit_ids = normalize_unit_ids(unit_ids)

    try:
        call = lock_call(db, call_id)
        units = lock_units(db, unit_ids)
        change = apply_release(db, call, units)
        if change.changed:
            call.updated_at = _utcnow()
        db.commit()
    except (DispatchError, SQLAlchemyError) as e:
        _fail(db, e, f"Releasing units {unit_ids} from call {call_id}")

    if change.changed:
        logger.info(f"Units released from call {call.call_number}: {_unit_numbers(change.released)}")
        _finish(db, change, actor)
    return call


def set_unit_status(db: Session, unit_id: int, status: str, actor: Optional[Actor] = None) -> Unit:
    """
    Field status change reported for a unit.

    committed -> committed keeps the call pairing (enroute, on_scene, ...).
    Leaving the committed set releases the unit from its call.
    Entering the committed set requires an assignment, so an unassigned
    unit cannot be moved to a committed status here.
    """
    valid = {s.value for s in UnitStatus}
    if status not in valid:
        raise ValidationFailure([f"Invalid unit status '{status}'. Must be one of: {', '.join(sorted(valid))}"])

    change = None
    try:
        unit = db.query(Unit).filter(Unit.id == unit_id).with_for_update().first()
        if not unit:
            raise NotFoundError(f"Unit {unit_id} not found")

        if unit.status == status:
            db.rollback()
            return unit

        old_status = unit.status
        now = _utcnow()
        if status in COMMITTED_UNIT_STATUSES:
            if unit.assigned_call_id is None:
                raise ConflictError(
                    f"Unit {unit.unit_number} is not assigned to a call; assign it to a call before setting '{status}'"
                )
            unit.status = status
            unit.last_status_update = now
        else:
            if unit.assigned_call_id is not None:
                call = lock_call(db, unit.assigned_call_id)
                change = apply_release(db, call, [unit], now)
                call.updated_at = now
            unit.status = status
            unit.last_status_update = now

        db.commit()
    except (DispatchError, SQLAlchemyError) as e:
        _fail(db, e, f"Setting unit {unit_id} status to {status}")

    logger.info(f"Unit {unit.unit_number} status {old_status} -> {status}")
    if change is not None and change.changed:
        _finish(db, change, actor)
    else:
        notifier.publish_change(notifier.UNITS, unit.id, "updated")
    return unit


def reconcile_call_units(db: Session, call_id: int, actor: Optional[Actor] = None) -> dict:
    """
    Repair divergence between a call's open assignment rows and the units
    pointing at it. Safe to run any number of times.

    Active call: open rows win, unless the unit has since been committed
    to a different call (then the row is closed).
    Terminal call: nothing may stay attached.
    """
    repairs = []
    try:
        call = lock_call(db, call_id)
        now = _utcnow()

        pointing = {
            unit.id: unit
            for unit in db.query(Unit).filter(Unit.assigned_call_id == call.id).order_by(Unit.id).with_for_update().all()
        }
        open_rows = [row for row in call.assignments if row.released_at is None]
        open_unit_ids = {row.unit_id for row in open_rows}

        for row in open_rows:
            unit = row.unit
            if call.is_terminal:
                row.released_at = now
                repairs.append(f"closed assignment of {unit.unit_number} on {call.status} call")
            elif unit.assigned_call_id not in (None, call.id):
                row.released_at = now
                repairs.append(f"closed stale assignment of {unit.unit_number} (now on call {unit.assigned_call_id})")
            elif unit.assigned_call_id is None:
                unit.assigned_call_id = call.id
                unit.status = UnitStatus.DISPATCHED.value
                unit.last_status_update = now
                repairs.append(f"re-attached {unit.unit_number}")
            elif unit.status not in COMMITTED_UNIT_STATUSES:
                unit.status = UnitStatus.DISPATCHED.value
                unit.last_status_update = now
                repairs.append(f"set {unit.unit_number} to dispatched")

        for unit_id, unit in pointing.items():
            if call.is_terminal:
                _free_unit(unit, now)
                repairs.append(f"freed {unit.unit_number}")
            elif unit_id not in open_unit_ids:
                call.assignments.append(CallUnit(unit_id=unit.id, assigned_at=now,
                                                 assigned_by=actor.user_id if actor else None))
                if unit.status not in COMMITTED_UNIT_STATUSES:
                    unit.status = UnitStatus.DISPATCHED.value
                    unit.last_status_update = now
                repairs.append(f"recorded assignment of {unit.unit_number}")

        if not repairs:
            db.rollback()
            return {"call_id": call_id, "repaired": False, "repairs": []}

        call.updated_at = now
        db.commit()
    except (DispatchError, SQLAlchemyError) as e:
        _fail(db, e, f"Reconciling units for call {call_id}")

    logger.warning(f"Reconciled unit assignments for call {call.call_number}: {'; '.join(repairs)}")
    write_audit_entries(db, [AuditEntry(
        call_id=call.id,
        update_type=UpdateType.GENERAL.value,
        description=f"Unit assignments reconciled: {'; '.join(repairs)}",
    )], actor)
    notifier.publish_change(notifier.CALLS, call.id, "units_changed")
    return {"call_id": call_id, "repaired": True, "repairs": repairs}
