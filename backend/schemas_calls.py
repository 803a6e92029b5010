"""
Call, unit and protocol request schemas (Pydantic) for CampCAD

Create/patch models leave most fields optional: presence checks and
aggregate error messages belong to the dispatch services, so the same
rules apply to every caller.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Any, Dict
from datetime import datetime


# ============================================================================
# Calls
# ============================================================================

class CallLocation(BaseModel):
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    address: Optional[str] = None
    location_notes: Optional[str] = None


class CallerInfo(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    callback_number: Optional[str] = None
    is_anonymous: bool = False


class CallCreate(BaseModel):
    """New call; call type, priority and description are required"""
    call_type_id: Optional[int] = None
    priority: Optional[int] = None
    description: Optional[str] = None
    location: Optional[CallLocation] = None
    caller: Optional[CallerInfo] = None
    assigned_units: List[int] = []

    class Config:
        json_schema_extra = {
            "example": {
                "call_type_id": 1,
                "priority": 3,
                "description": "Camper fell near the lake trail",
                "location": {"latitude": 40.1234, "longitude": -75.4321, "address": "Lakeside Cabin 4"},
                "caller": {"name": "J. Smith", "phone": "555-0100"},
                "assigned_units": [],
            }
        }


class CallPatch(BaseModel):
    """Partial update; only fields sent are considered"""
    call_type_id: Optional[int] = None
    priority: Optional[int] = None
    status: Optional[str] = None
    description: Optional[str] = None
    location: Optional[CallLocation] = None
    caller: Optional[CallerInfo] = None
    assigned_units: Optional[List[int]] = None  # Full desired set, applied as a diff


class CallStatusUpdate(BaseModel):
    status: str


class CloseCallRequest(BaseModel):
    notes: Optional[str] = None


class UnitAssignmentRequest(BaseModel):
    unit_ids: List[int] = Field(..., min_length=1)


# ============================================================================
# Units
# ============================================================================

class UnitStatusUpdate(BaseModel):
    status: str


# ============================================================================
# Protocol
# ============================================================================

class ProtocolProcessRequest(BaseModel):
    """Questionnaire answers keyed by question id"""
    call_id: int
    answers: Dict[str, Any] = {}
    started_at: Optional[datetime] = None  # When the dispatcher opened the questionnaire
