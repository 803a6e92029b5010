"""
Protocol router - dispatch questionnaires per call type
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import Optional
from datetime import datetime

from database import get_db
from jwt_auth import get_current_actor
from schemas_calls import ProtocolProcessRequest
from services.dispatch import protocol
from services.dispatch.audit import Actor

router = APIRouter()


@router.get("/workflow/{call_type_id}")
def get_workflow(
    call_type_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return protocol.get_workflow(db, call_type_id)


@router.post("/process")
def process_protocol(
    data: ProtocolProcessRequest,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Validate and score answers; may escalate the call's priority"""
    return protocol.evaluate_protocol(db, data.call_id, data.answers, actor, started_at=data.started_at)


@router.get("/statistics")
def protocol_statistics(
    call_type_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return protocol.get_protocol_statistics(db, call_type_id, start_date, end_date)


@router.get("/calls/{call_id}/answers")
def list_call_answers(
    call_id: int,
    db: Session = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Every questionnaire submission for a call, newest first"""
    return [protocol.evaluation_to_dict(r) for r in protocol.list_call_evaluations(db, call_id)]
