"""
Calls router - create, update, close and search dispatch calls

All state changes go through services.dispatch; this module only
translates HTTP to service calls and models to dicts.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional, List
from datetime import datetime

from database import get_db
from jwt_auth import get_current_actor
from models import Call, CallUpdate
from schemas_calls import (
    CallCreate, CallPatch, CallStatusUpdate, CloseCallRequest, UnitAssignmentRequest,
)
from services.dispatch import assignment, lifecycle
from services.dispatch.audit import Actor

router = APIRouter()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def call_to_dict(call: Call) -> dict:
    open_rows = [a for a in call.assignments if a.released_at is None]
    return {
        "id": call.id,
        "call_number": call.call_number,
        "call_type_id": call.call_type_id,
        "call_type_name": call.call_type.name if call.call_type else None,
        "priority": call.priority,
        "status": call.status,
        "location": {
            "latitude": call.latitude,
            "longitude": call.longitude,
            "address": call.address,
            "location_notes": call.location_notes,
        },
        "caller": {
            "name": call.caller_name,
            "phone": call.caller_phone,
            "callback_number": call.callback_number,
            "is_anonymous": bool(call.is_anonymous),
        },
        "description": call.description,
        "assigned_units": [a.unit_id for a in open_rows],
        "units": [
            {
                "id": a.unit.id,
                "unit_number": a.unit.unit_number,
                "status": a.unit.status,
                "assigned_at": _iso(a.assigned_at),
            }
            for a in open_rows
        ],
        "dispatcher_id": call.dispatcher_id,
        "dispatcher_name": call.dispatcher_name,
        "created_at": _iso(call.created_at),
        "updated_at": _iso(call.updated_at),
        "closed_at": _iso(call.closed_at),
        "cleared_time": _iso(call.cleared_time),
    }


def call_update_to_dict(update: CallUpdate) -> dict:
    return {
        "id": update.id,
        "call_id": update.call_id,
        "update_type": update.update_type,
        "description": update.description,
        "fields_changed": update.fields_changed,
        "actor_id": update.actor_id,
        "actor_name": update.actor_name,
        "created_at": _iso(update.created_at),
    }


# =============================================================================
# QUERIES
# =============================================================================

@router.get("")
def list_calls(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    status: Optional[List[str]] = Query(None),
    priority: Optional[List[int]] = Query(None),
    call_type_id: Optional[List[int]] = Query(None),
    unit_id: Optional[List[int]] = Query(None),
    dispatcher_id: Optional[int] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Search calls; repeat a filter parameter to match any of several values"""
    calls, total = lifecycle.search_calls(
        db,
        start_date=start_date,
        end_date=end_date,
        statuses=status,
        priorities=priority,
        call_type_ids=call_type_id,
        unit_ids=unit_id,
        dispatcher_id=dispatcher_id,
        limit=limit,
        offset=offset,
    )
    return {
        "total": total,
        "limit": limit,
        "offset": offset,
        "calls": [call_to_dict(c) for c in calls],
    }


@router.get("/active")
def list_active_calls(
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Open calls, most urgent first"""
    return [call_to_dict(c) for c in lifecycle.get_active_calls(db)]


@router.get("/stats")
def call_stats(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return lifecycle.get_call_stats(db, start_date, end_date)


@router.get("/{call_id}")
def get_call(
    call_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return call_to_dict(lifecycle.get_call(db, call_id))


@router.get("/{call_id}/details")
def get_call_details(
    call_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Call plus its audit timeline (newest first)"""
    call, updates = lifecycle.get_call_timeline(db, call_id)
    result = call_to_dict(call)
    result["timeline"] = [call_update_to_dict(u) for u in updates]
    return result


# =============================================================================
# MUTATIONS
# =============================================================================

@router.post("", status_code=201)
def create_call(
    data: CallCreate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    call = lifecycle.create_call(db, data.model_dump(), actor)
    return call_to_dict(call)


@router.patch("/{call_id}")
def update_call(
    call_id: int,
    data: CallPatch,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Partial update; an unchanged payload writes nothing"""
    call = lifecycle.update_call(db, call_id, data.model_dump(exclude_unset=True), actor)
    return call_to_dict(call)


@router.patch("/{call_id}/status")
def update_call_status(
    call_id: int,
    data: CallStatusUpdate,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    call = lifecycle.update_call_status(db, call_id, data.status, actor)
    return call_to_dict(call)


@router.post("/{call_id}/close")
def close_call(
    call_id: int,
    data: Optional[CloseCallRequest] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    notes = data.notes if data else None
    call = lifecycle.close_call(db, call_id, actor, notes)
    return call_to_dict(call)


@router.post("/{call_id}/units")
def assign_units(
    call_id: int,
    data: UnitAssignmentRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    call = assignment.assign_units(db, call_id, data.unit_ids, actor)
    return call_to_dict(call)


@router.delete("/{call_id}/units/{unit_id}")
def release_unit(
    call_id: int,
    unit_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    call = assignment.release_units(db, call_id, [unit_id], actor)
    return call_to_dict(call)


@router.post("/{call_id}/reconcile-units")
def reconcile_units(
    call_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Repair call/unit pairing drift for one call"""
    return assignment.reconcile_call_units(db, call_id, actor)
