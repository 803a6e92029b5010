"""
SQLAlchemy models for CampCAD

Calls, units and the dispatch protocol tables. Reference data (call types,
protocol questions) is maintained by the admin tools; this core only reads it.

Priority is an ordinal where 1 is the most urgent.
"""

from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Boolean, Text, Float, ForeignKey, TIMESTAMP, JSON,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base

# JSONB on PostgreSQL, plain JSON anywhere else
JSONType = JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# ENUMERATIONS
# =============================================================================

class CallStatus(str, Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    ENROUTE = "enroute"
    ON_SCENE = "on_scene"
    CLEARED = "cleared"
    CANCELLED = "cancelled"


class UnitStatus(str, Enum):
    AVAILABLE = "available"
    DISPATCHED = "dispatched"
    ENROUTE = "enroute"
    ON_SCENE = "on_scene"
    TRANSPORTING = "transporting"
    OUT_OF_SERVICE = "out_of_service"
    MAINTENANCE = "maintenance"
    TRAINING = "training"


class UpdateType(str, Enum):
    STATUS_CHANGE = "status_change"
    UNIT_ASSIGNMENT = "unit_assignment"
    LOCATION_UPDATE = "location_update"
    DESCRIPTION_UPDATE = "description_update"
    PRIORITY_CHANGE = "priority_change"
    GENERAL = "general"


class QuestionType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    SELECT = "select"
    MULTI_SELECT = "multi_select"


TERMINAL_CALL_STATUSES = {CallStatus.CLEARED.value, CallStatus.CANCELLED.value}
ACTIVE_CALL_STATUSES = [
    CallStatus.PENDING.value,
    CallStatus.DISPATCHED.value,
    CallStatus.ENROUTE.value,
    CallStatus.ON_SCENE.value,
]

# A unit holds an assigned_call_id exactly while in one of these
COMMITTED_UNIT_STATUSES = {
    UnitStatus.DISPATCHED.value,
    UnitStatus.ENROUTE.value,
    UnitStatus.ON_SCENE.value,
    UnitStatus.TRANSPORTING.value,
}

PRIORITY_MOST_URGENT = 1
PRIORITY_LEAST_URGENT = 4


# =============================================================================
# REFERENCE DATA
# =============================================================================

class CallType(Base):
    """Incident category with default priority and protocol questionnaire"""
    __tablename__ = "call_types"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    default_priority = Column(Integer, nullable=False, default=3)
    response_plan = Column(Text)          # Template text, also mined for base unit recommendations
    is_active = Column(Boolean, default=True)
    created_at = Column(TIMESTAMP(timezone=True), default=func.current_timestamp())

    questions = relationship(
        "ProtocolQuestion",
        back_populates="call_type",
        order_by="ProtocolQuestion.display_order",
        cascade="all, delete-orphan",
    )


class ProtocolQuestion(Base):
    """
    One question of a call type's questionnaire.

    conditional_logic, when set, hides the question unless another answer matches:
        {"depends_on": <question id>, "condition": "equals", "value": "yes"}
    """
    __tablename__ = "protocol_questions"

    id = Column(Integer, primary_key=True)
    call_type_id = Column(Integer, ForeignKey("call_types.id", ondelete="CASCADE"), nullable=False, index=True)
    question = Column(String(500), nullable=False)
    question_type = Column(String(20), nullable=False, default=QuestionType.TEXT.value)
    required = Column(Boolean, default=False)
    options = Column(JSONType)            # select / multi_select choices
    display_order = Column(Integer, nullable=False, default=100)
    conditional_logic = Column(JSONType)
    created_at = Column(TIMESTAMP(timezone=True), default=func.current_timestamp())

    call_type = relationship("CallType", back_populates="questions")


# =============================================================================
# UNITS
# =============================================================================

class Unit(Base):
    """Field response resource (ambulance, engine, patrol, SAR team)"""
    __tablename__ = "units"

    id = Column(Integer, primary_key=True)
    unit_number = Column(String(20), unique=True, nullable=False)  # MED1, ENG2
    unit_name = Column(String(100))
    unit_type = Column(String(30))        # ems, fire, security, law_enforcement, search_rescue, support
    group_name = Column(String(50))
    status = Column(String(20), nullable=False, default=UnitStatus.AVAILABLE.value, index=True)
    assigned_call_id = Column(Integer, ForeignKey("calls.id", ondelete="SET NULL"), index=True)
    is_active = Column(Boolean, default=True)
    last_status_update = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), default=func.current_timestamp())

# =============================================================================
# CALLS
# =============================================================================

class Call(Base):
    """A single reported incident, tracked from creation to closure"""
    __tablename__ = "calls"

    id = Column(Integer, primary_key=True)
    call_number = Column(String(20), unique=True, nullable=False, index=True)  # 2026-14
    call_type_id = Column(Integer, ForeignKey("call_types.id"), nullable=False, index=True)
    priority = Column(Integer, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=CallStatus.PENDING.value, index=True)

    # Location
    latitude = Column(Float)
    longitude = Column(Float)
    address = Column(String(255))
    location_notes = Column(Text)

    # Caller
    caller_name = Column(String(100))
    caller_phone = Column(String(30))
    callback_number = Column(String(30))
    is_anonymous = Column(Boolean, default=False)

    description = Column(Text, nullable=False)

    # Dispatcher (authenticated identity, users live in the auth service)
    dispatcher_id = Column(Integer, index=True)
    dispatcher_name = Column(String(100))

    created_at = Column(TIMESTAMP(timezone=True), default=func.current_timestamp(), index=True)
    updated_at = Column(TIMESTAMP(timezone=True), default=func.current_timestamp())
    closed_at = Column(TIMESTAMP(timezone=True))
    cleared_time = Column(TIMESTAMP(timezone=True))

    call_type = relationship("CallType")
    assignments = relationship(
        "CallUnit",
        back_populates="call",
        order_by="CallUnit.id",
        cascade="all, delete-orphan",
    )

    @property
    def assigned_units(self):
        """Unit ids with an open assignment, in assignment order"""
        return [a.unit_id for a in self.assignments if a.released_at is None]

    @property
    def is_terminal(self):
        return self.status in TERMINAL_CALL_STATUSES


class CallUnit(Base):
    """
    Assignment history between calls and units.
    Open rows (released_at NULL) are the call's current unit set.
    """
    __tablename__ = "call_units"

    id = Column(Integer, primary_key=True)
    call_id = Column(Integer, ForeignKey("calls.id", ondelete="CASCADE"), nullable=False, index=True)
    unit_id = Column(Integer, ForeignKey("units.id"), nullable=False, index=True)
    assigned_at = Column(TIMESTAMP(timezone=True), default=func.current_timestamp())
    released_at = Column(TIMESTAMP(timezone=True))
    assigned_by = Column(Integer)

    call = relationship("Call", back_populates="assignments")
    unit = relationship("Unit")


class CallUpdate(Base):
    """
    Append-only audit trail for calls.
    One row per logical mutation, never updated or deleted.
    """
    __tablename__ = "call_updates"

    id = Column(Integer, primary_key=True)
    call_id = Column(Integer, ForeignKey("calls.id", ondelete="CASCADE"), nullable=False, index=True)
    actor_id = Column(Integer)
    actor_name = Column(String(100))
    update_type = Column(String(30), nullable=False, index=True)
    description = Column(Text, nullable=False)
    fields_changed = Column(JSONType)
    created_at = Column(TIMESTAMP(timezone=True), default=func.current_timestamp(), index=True)


class CallNumberSequence(Base):
    """Per-year atomic counter behind call numbers"""
    __tablename__ = "call_number_sequences"

    year = Column(Integer, primary_key=True, autoincrement=False)
    last_value = Column(Integer, nullable=False, default=0)


# =============================================================================
# PROTOCOL EVALUATIONS
# =============================================================================

class CallProtocolAnswer(Base):
    """One questionnaire submission for a call (re-triage adds another row)"""
    __tablename__ = "call_protocol_answers"

    id = Column(Integer, primary_key=True)
    call_id = Column(Integer, ForeignKey("calls.id", ondelete="CASCADE"), nullable=False, index=True)
    answers = Column(JSONType, nullable=False)
    calculated_priority = Column(Integer, nullable=False, index=True)
    recommended_units = Column(JSONType, default=list)
    response_plan = Column(Text)
    protocol_completed = Column(Boolean, default=False)
    ruleset_version = Column(String(20))
    started_at = Column(TIMESTAMP(timezone=True))
    completed_at = Column(TIMESTAMP(timezone=True), index=True)
    created_at = Column(TIMESTAMP(timezone=True), default=func.current_timestamp())

    call = relationship("Call")
