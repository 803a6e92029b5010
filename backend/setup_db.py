#!/usr/bin/env python3
"""
CampCAD Database Setup Script

Creates the dispatch tables and loads default reference data
(call types, protocol questionnaires, starter units).
Safe to re-run: reference data is only loaded into an empty database.

Usage:
    cd /opt/campcad/backend
    CAMPCAD_DATABASE_URL=postgresql:///campcad_db python3 setup_db.py
"""

import logging

from sqlalchemy.orm import Session

from database import Base, SessionLocal, engine
from models import CallType, ProtocolQuestion, QuestionType, Unit

logger = logging.getLogger(__name__)

# name, description, default priority, response plan template
DEFAULT_CALL_TYPES = [
    ("Medical Emergency", "Medical emergencies requiring immediate attention", 1,
     "Dispatch nearest EMS unit. Notify camp health center."),
    ("Fire", "Fire-related incidents", 1,
     "Dispatch Fire and EMS standby. Notify camp director."),
    ("Traffic Accident", "Vehicle accidents and traffic incidents", 2,
     "Dispatch EMS and Security for traffic control."),
    ("Lost Person", "Missing or lost individuals", 2,
     "Dispatch Search and Rescue team. Security to check gates."),
    ("Weather Emergency", "Weather-related emergencies", 3, None),
    ("Security Incident", "Security-related incidents", 2,
     "Dispatch Security."),
    ("Equipment Failure", "Equipment or facility issues", 4, None),
    ("Animal Incident", "Wildlife or animal-related incidents", 3, None),
]

# call type -> [(question, type, required, options, conditional on question index)]
DEFAULT_QUESTIONS = {
    "Medical Emergency": [
        ("Is the patient conscious and breathing?", QuestionType.BOOLEAN, True, None, None),
        ("What is the nature of the medical emergency?", QuestionType.TEXT, True, None, None),
        ("Is there any bleeding?", QuestionType.BOOLEAN, False, None, None),
        ("How severe is the bleeding?", QuestionType.SELECT, True, ["Minor", "Moderate", "Severe"], 2),
        ("How many patients are involved?", QuestionType.NUMBER, False, None, None),
    ],
    "Fire": [
        ("Is the fire currently active?", QuestionType.BOOLEAN, True, None, None),
        ("What type of structure is involved?", QuestionType.SELECT, True, ["Building", "Vehicle", "Wildland", "Other"], None),
        ("Are there any people trapped?", QuestionType.BOOLEAN, True, None, None),
        ("Is there smoke visible?", QuestionType.BOOLEAN, False, None, None),
    ],
    "Security Incident": [
        ("What type of security incident?", QuestionType.SELECT, True,
         ["Fight", "Theft", "Trespassing", "Suspicious Activity", "Other"], None),
        ("Are weapons involved?", QuestionType.BOOLEAN, True, None, None),
        ("How many people are involved?", QuestionType.NUMBER, False, None, None),
    ],
}

# unit number, name, type, group
DEFAULT_UNITS = [
    ("MED-1", "Medical Unit 1", "ems", "Medical Response"),
    ("MED-2", "Medical Unit 2", "ems", "Medical Response"),
    ("FIRE-1", "Fire Engine 1", "fire", "Fire Response"),
    ("SEC-1", "Security Patrol 1", "security", "Security"),
    ("SAR-1", "Search and Rescue 1", "search_rescue", "Support"),
    ("TRANS-1", "Transport 1", "support", "Transport"),
]


def seed_reference_data(db: Session) -> bool:
    """Load default call types, questionnaires and units. Returns False if data already exists."""
    if db.query(CallType.id).first() is not None:
        return False

    for name, description, priority, plan in DEFAULT_CALL_TYPES:
        call_type = CallType(name=name, description=description, default_priority=priority,
                             response_plan=plan, is_active=True)
        db.add(call_type)
        db.flush()

        created = []
        for order, (text, qtype, required, options, depends_on) in enumerate(DEFAULT_QUESTIONS.get(name, []), start=1):
            question = ProtocolQuestion(
                call_type_id=call_type.id,
                question=text,
                question_type=qtype.value,
                required=required,
                options=options,
                display_order=order,
            )
            if depends_on is not None:
                question.conditional_logic = {
                    "depends_on": str(created[depends_on].id),
                    "condition": "equals",
                    "value": "yes",
                }
            db.add(question)
            db.flush()
            created.append(question)

    for unit_number, unit_name, unit_type, group_name in DEFAULT_UNITS:
        db.add(Unit(unit_number=unit_number, unit_name=unit_name, unit_type=unit_type,
                    group_name=group_name, is_active=True))

    db.commit()
    return True


def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')

    print("=" * 60)
    print("CampCAD Database Setup")
    print("=" * 60)

    Base.metadata.create_all(bind=engine)
    print("Tables ready.")

    db = SessionLocal()
    try:
        if seed_reference_data(db):
            print("Default call types, protocols and units loaded.")
        else:
            print("Reference data already present, skipping seed.")
    finally:
        db.close()


if __name__ == "__main__":
    main()
