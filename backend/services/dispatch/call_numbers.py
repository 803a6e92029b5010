"""
Call Number Sequencer

Call numbers are "<year>-<n>" (2026-1, 2026-2, ...), unique and increasing
within a calendar year.

Numbers come from a per-year counter row (call_number_sequences) that is
incremented with a single UPDATE inside the same transaction as the call
INSERT. The row lock serializes concurrent creators, and a rolled-back
insert also rolls back its increment.

The counter is seeded from the highest number already stored for the year,
so calls imported or created before the counter existed are never reused.
If an insert still collides (a number written outside this path), the
counter is resynced and generation retried a bounded number of times.
"""

import logging
import os
import re
from datetime import datetime
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Call, CallNumberSequence
from services.dispatch.errors import ConflictError

logger = logging.getLogger(__name__)

CALL_NUMBER_TIMEZONE = os.environ.get("CAMPCAD_TIMEZONE", "UTC")
CALL_NUMBER_ATTEMPTS = int(os.environ.get("CAMPCAD_CALL_NUMBER_ATTEMPTS", "5"))

CALL_NUMBER_PATTERN = re.compile(r"^(\d{4})-(\d+)$")


def current_year(now: Optional[datetime] = None) -> int:
    """Calendar year in the dispatch center's timezone"""
    tz = ZoneInfo(CALL_NUMBER_TIMEZONE)
    if now is None:
        return datetime.now(tz).year
    if now.tzinfo is None:
        return now.year
    return now.astimezone(tz).year


def validate_call_number(call_number: str) -> bool:
    if not isinstance(call_number, str):
        return False
    return CALL_NUMBER_PATTERN.match(call_number) is not None


def parse_call_number(call_number: str) -> Optional[Tuple[int, int]]:
    """'2026-14' -> (2026, 14); None if it is not a call number"""
    if not isinstance(call_number, str):
        return None
    match = CALL_NUMBER_PATTERN.match(call_number)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def highest_issued(db: Session, year: int) -> int:
    """Largest suffix stored for the year; malformed numbers are skipped"""
    rows = db.query(Call.call_number).filter(Call.call_number.like(f"{year}-%")).all()

    highest = 0
    for (call_number,) in rows:
        parsed = parse_call_number(call_number)
        if not parsed or parsed[0] != year:
            logger.warning(f"Ignoring malformed call number '{call_number}' for {year}")
            continue
        highest = max(highest, parsed[1])
    return highest


def _ensure_sequence(db: Session, year: int):
    """Create the year's counter row if it does not exist yet (own short commit)"""
    if db.get(CallNumberSequence, year) is not None:
        return

    seed = highest_issued(db, year)
    db.add(CallNumberSequence(year=year, last_value=seed))
    try:
        db.commit()
        logger.info(f"Call number sequence for {year} started at {seed}")
    except IntegrityError:
        # Another session created it first
        db.rollback()


def next_call_number(db: Session, year: Optional[int] = None) -> str:
    """
    Reserve the next number for the year.

    The increment is NOT committed here; it belongs to the caller's
    transaction and is released or kept together with the call insert.
    """
    if year is None:
        year = current_year()

    _ensure_sequence(db, year)

    db.execute(
        update(CallNumberSequence)
        .where(CallNumberSequence.year == year)
        .values(last_value=CallNumberSequence.last_value + 1)
    )
    value = db.query(CallNumberSequence.last_value).filter(CallNumberSequence.year == year).scalar()
    return f"{year}-{value}"


def resync_sequence(db: Session, year: int) -> int:
    """Move the counter up to the highest stored number for the year"""
    highest = highest_issued(db, year)
    db.query(CallNumberSequence).filter(
        CallNumberSequence.year == year,
        CallNumberSequence.last_value < highest,
    ).update({CallNumberSequence.last_value: highest}, synchronize_session=False)
    db.commit()
    return highest


def insert_with_call_number(db: Session, call: Call, year: Optional[int] = None) -> str:
    """
    Give a new (transient) call its number and flush the INSERT.

    Must be the first write of the caller's unit of work: a collision rolls
    the session back before retrying. Raises ConflictError when every
    attempt collides.
    """
    if year is None:
        year = current_year()

    for attempt in range(1, CALL_NUMBER_ATTEMPTS + 1):
        call_number = next_call_number(db, year)
        call.call_number = call_number
        db.add(call)
        try:
            db.flush()
            return call_number
        except IntegrityError:
            db.rollback()
            if db.query(Call.id).filter(Call.call_number == call_number).first() is None:
                # Not a number collision
                raise
            logger.warning(
                f"Call number {call_number} already in use "
                f"(attempt {attempt}/{CALL_NUMBER_ATTEMPTS}), resyncing sequence"
            )
            resync_sequence(db, year)

    raise ConflictError(
        f"Could not allocate a unique call number for {year} after {CALL_NUMBER_ATTEMPTS} attempts"
    )
