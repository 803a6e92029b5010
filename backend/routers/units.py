"""
Units router - unit roster and field status

Unit records themselves are managed by the admin tools. Status changes
reported from the field go through the assignment coordinator so a unit
leaving service is released from its call.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional

from database import get_db
from jwt_auth import get_current_actor
from models import Unit, UnitStatus
from schemas_calls import UnitStatusUpdate
from services.dispatch import assignment
from services.dispatch.audit import Actor
from services.dispatch.errors import NotFoundError

router = APIRouter()


def unit_to_dict(unit: Unit) -> dict:
    return {
        "id": unit.id,
        "unit_number": unit.unit_number,
        "unit_name": unit.unit_name,
        "unit_type": unit.unit_type,
        "group_name": unit.group_name,
        "status": unit.status,
        "assigned_call_id": unit.assigned_call_id,
        "is_active": bool(unit.is_active),
        "last_status_update": unit.last_status_update.isoformat() if unit.last_status_update else None,
    }


@router.get("")
def list_units(
    status: Optional[str] = None,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    query = db.query(Unit)
    if not include_inactive:
        query = query.filter(Unit.is_active == True)
    if status:
        query = query.filter(Unit.status == status)
    units = query.order_by(Unit.unit_number).all()
    return [unit_to_dict(u) for u in units]


@router.get("/available")
def list_available_units(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    units = db.query(Unit).filter(
        Unit.is_active == True,
        Unit.status == UnitStatus.AVAILABLE.value,
    ).order_by(Unit.unit_number).all()
    return [unit_to_dict(u) for u in units]


@router.get("/{unit_id}")
def get_unit(
    unit_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    unit = db.query(Unit).filter(Unit.id == unit_id).first()
    if not unit:
        raise NotFoundError(f"Unit {unit_id} not found")
    return unit_to_dict(unit)


@router.patch("/{unit_id}/status")
def update_unit_status(
    unit_id: int,
    data: UnitStatusUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    unit = assignment.set_unit_status(db, unit_id, data.status, actor)
    return unit_to_dict(unit)
