"""
Protocol Engine

Per-call-type questionnaires ("protocols") and their evaluation.

evaluate_protocol:
    1. load call + workflow (call type and its ordered questions)
    2. validate answers, honoring conditional visibility; all problems
       are reported together
    3. escalate priority, recommend unit categories and build a response
       plan from the rule table (protocol_rules.DEFAULT_RULESET), reading
       every answered question of the workflow, hidden ones included
    4. store a call_protocol_answers row and, if the priority moved,
       update the call, both in one transaction
    5. audit the priority change through the lifecycle audit path

Answer maps are keyed by question id (string form, as received in JSON).
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Call, CallProtocolAnswer, CallType, ProtocolQuestion, QuestionType
from services.dispatch import notifier
from services.dispatch.assignment import lock_call
from services.dispatch.audit import Actor, write_audit_entries
from services.dispatch.errors import DispatchError, NotFoundError, PersistenceFailure, ValidationFailure
from services.dispatch.lifecycle import summarize_changes
from services.dispatch.protocol_rules import DEFAULT_RULESET, RuleSet, answer_text

logger = logging.getLogger(__name__)

BOOLEAN_WORDS = {"true", "false", "yes", "no"}


# =============================================================================
# WORKFLOW
# =============================================================================

def question_to_dict(question: ProtocolQuestion) -> dict:
    return {
        "id": question.id,
        "call_type_id": question.call_type_id,
        "question": question.question,
        "type": question.question_type,
        "required": bool(question.required),
        "options": question.options,
        "order": question.display_order,
        "conditional_logic": question.conditional_logic,
    }


def _load_workflow(db: Session, call_type_id: int):
    call_type = db.query(CallType).filter(CallType.id == call_type_id).first()
    if not call_type:
        return None, []
    questions = (
        db.query(ProtocolQuestion)
        .filter(ProtocolQuestion.call_type_id == call_type_id)
        .order_by(ProtocolQuestion.display_order, ProtocolQuestion.id)
        .all()
    )
    return call_type, questions


def get_workflow(db: Session, call_type_id: int, ruleset: RuleSet = DEFAULT_RULESET) -> dict:
    """Ordered questionnaire plus base recommendations for a call type"""
    call_type, questions = _load_workflow(db, call_type_id)
    if not call_type:
        raise NotFoundError(f"Protocol workflow for call type {call_type_id} not found")

    return {
        "id": call_type.id,
        "call_type_id": call_type.id,
        "name": call_type.name,
        "description": call_type.description or "",
        "default_priority": call_type.default_priority,
        "questions": [question_to_dict(q) for q in questions],
        "unit_recommendations": ruleset.template_units(call_type.response_plan),
        "response_plan": call_type.response_plan or "",
    }


# =============================================================================
# VALIDATION
# =============================================================================

def is_unset(value) -> bool:
    """None, '' and [] are unanswered; False and 0 are answers"""
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


def _to_number(value) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return None if number != number else number  # NaN
    return None


def _as_string(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(_as_string(v) for v in value)
    return str(value)


def evaluate_condition(logic: dict, answers: dict) -> bool:
    """True when the question should be shown (and validated)"""
    depends_on = logic.get("depends_on")
    condition = logic.get("condition")
    expected = logic.get("value")
    answer = answers.get(str(depends_on))

    if condition == "equals":
        return answer == expected
    if condition == "not_equals":
        return answer != expected
    if condition == "contains":
        return _as_string(expected) in _as_string(answer)
    if condition in ("greater_than", "less_than"):
        left = _to_number(answer)
        right = _to_number(expected)
        if left is None or right is None:
            return False
        return left > right if condition == "greater_than" else left < right

    logger.warning(f"Unknown conditional operator '{condition}' on question depending on {depends_on}; showing question")
    return True


def _format_error(question: ProtocolQuestion, answer) -> Optional[str]:
    label = question.question
    options = question.options or []

    if question.question_type == QuestionType.NUMBER.value:
        if _to_number(answer) is None:
            return f'Question "{label}" requires a number'
    elif question.question_type == QuestionType.BOOLEAN.value:
        if not isinstance(answer, bool) and str(answer).lower() not in BOOLEAN_WORDS:
            return f'Question "{label}" requires yes/no answer'
    elif question.question_type == QuestionType.SELECT.value:
        if options and answer not in options:
            return f'Question "{label}" requires selection from available options'
    elif question.question_type == QuestionType.MULTI_SELECT.value:
        if not isinstance(answer, list):
            return f'Question "{label}" requires multiple selections'
        for item in answer:
            if options and item not in options:
                return f'Question "{label}" contains invalid option: {item}'
    return None


def visible_questions(questions: List[ProtocolQuestion], answers: dict) -> List[ProtocolQuestion]:
    return [
        q for q in questions
        if not q.conditional_logic or evaluate_condition(q.conditional_logic, answers)
    ]


def validate_answers(questions: List[ProtocolQuestion], answers: dict) -> List[str]:
    """Every problem with the submission, in question order"""
    errors = []
    for question in visible_questions(questions, answers):
        answer = answers.get(str(question.id))
        if is_unset(answer):
            if question.required:
                errors.append(f'Question "{question.question}" is required')
            continue

        error = _format_error(question, answer)
        if error:
            errors.append(error)
    return errors


# =============================================================================
# EVALUATION
# =============================================================================

def evaluation_to_dict(record: CallProtocolAnswer) -> dict:
    return {
        "id": record.id,
        "call_id": record.call_id,
        "answers": record.answers,
        "calculated_priority": record.calculated_priority,
        "recommended_units": record.recommended_units or [],
        "response_plan": record.response_plan or "",
        "protocol_completed": bool(record.protocol_completed),
        "ruleset_version": record.ruleset_version,
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
    }


def evaluate_protocol(
    db: Session,
    call_id: int,
    answers: dict,
    actor: Optional[Actor] = None,
    started_at: Optional[datetime] = None,
    ruleset: RuleSet = DEFAULT_RULESET,
) -> dict:
    """Validate and score a questionnaire submission for a call."""
    answers = {str(key): value for key, value in (answers or {}).items()}
    now = datetime.now(timezone.utc)

    try:
        call = lock_call(db, call_id)
        call_type, questions = _load_workflow(db, call.call_type_id)
        if not call_type:
            raise NotFoundError("Protocol workflow not found")

        errors = validate_answers(questions, answers)
        if errors:
            raise ValidationFailure(errors, prefix="Protocol validation failed")

        texts = []
        for question in questions:
            answer = answers.get(str(question.id))
            if not is_unset(answer):
                texts.append(answer_text(answer))

        previous_priority = call.priority
        calculated_priority = ruleset.escalate(previous_priority, texts)
        recommended_units = ruleset.recommend_units(ruleset.template_units(call_type.response_plan), texts)
        response_plan = ruleset.build_plan(call_type.response_plan, texts)

        record = CallProtocolAnswer(
            call_id=call.id,
            answers=answers,
            calculated_priority=calculated_priority,
            recommended_units=recommended_units,
            response_plan=response_plan,
            protocol_completed=True,
            ruleset_version=ruleset.version,
            started_at=started_at,
            completed_at=now,
        )
        db.add(record)

        priority_changed = calculated_priority != previous_priority
        if priority_changed:
            call.priority = calculated_priority
            call.updated_at = now

        db.commit()
    except (DispatchError, SQLAlchemyError) as e:
        db.rollback()
        if isinstance(e, DispatchError):
            raise
        logger.error(f"Protocol evaluation for call {call_id} failed: {e}", exc_info=True)
        raise PersistenceFailure() from e

    logger.info(
        f"Protocol evaluated for call {call.call_number}: priority {previous_priority} -> {calculated_priority}, "
        f"units {recommended_units}"
    )

    if priority_changed:
        entry = summarize_changes(
            call.id,
            {"priority": {"old": previous_priority, "new": calculated_priority}},
            note="Set by protocol evaluation.",
        )
        write_audit_entries(db, [entry], actor)
        notifier.publish_change(notifier.CALLS, call.id, "updated")
    notifier.publish_change(notifier.PROTOCOL_ANSWERS, record.id, "evaluated")

    result = evaluation_to_dict(record)
    result["previous_priority"] = previous_priority
    result["priority_changed"] = priority_changed
    return result


def list_call_evaluations(db: Session, call_id: int) -> List[CallProtocolAnswer]:
    """Stored evaluations for one call, newest first"""
    if not db.query(Call.id).filter(Call.id == call_id).first():
        raise NotFoundError(f"Call {call_id} not found")
    return (
        db.query(CallProtocolAnswer)
        .filter(CallProtocolAnswer.call_id == call_id)
        .order_by(CallProtocolAnswer.completed_at.desc(), CallProtocolAnswer.id.desc())
        .all()
    )


# =============================================================================
# STATISTICS
# =============================================================================

def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def get_protocol_statistics(
    db: Session,
    call_type_id: Optional[int] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> dict:
    """
    Aggregates over stored evaluations:
        total_protocols
        average_completion_time   seconds from started_at to completed_at,
                                  over evaluations that recorded a start
        priority_distribution     {priority: count}
        most_common_answers       {question_id: {answer: count}}
    """
    query = db.query(CallProtocolAnswer).join(Call, CallProtocolAnswer.call_id == Call.id)
    if call_type_id is not None:
        query = query.filter(Call.call_type_id == call_type_id)
    if start_date:
        query = query.filter(CallProtocolAnswer.completed_at >= start_date)
    if end_date:
        query = query.filter(CallProtocolAnswer.completed_at <= end_date)

    results = query.order_by(CallProtocolAnswer.completed_at.desc()).all()

    durations = []
    priority_distribution = {}
    answer_counts = {}
    for record in results:
        if record.started_at and record.completed_at:
            durations.append((_as_utc(record.completed_at) - _as_utc(record.started_at)).total_seconds())

        key = str(record.calculated_priority)
        priority_distribution[key] = priority_distribution.get(key, 0) + 1

        for question_id, answer in (record.answers or {}).items():
            counts = answer_counts.setdefault(str(question_id), {})
            text = _as_string(answer)
            counts[text] = counts.get(text, 0) + 1

    return {
        "total_protocols": len(results),
        "average_completion_time": round(sum(durations) / len(durations), 1) if durations else 0,
        "priority_distribution": priority_distribution,
        "most_common_answers": answer_counts,
    }
