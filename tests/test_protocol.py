"""Protocol engine: workflows, conditional validation, scoring and statistics"""

from datetime import datetime, timedelta, timezone

import pytest

from models import Call, CallProtocolAnswer, CallUpdate, ProtocolQuestion
from services.dispatch.errors import NotFoundError, ValidationFailure
from services.dispatch.protocol import (
    evaluate_condition, evaluate_protocol, get_protocol_statistics, get_workflow,
    list_call_evaluations, validate_answers,
)
from services.dispatch.protocol_rules import RULESET_VERSION


@pytest.fixture
def questions(db, call_type_id):
    """Question ids for a call type, in display order"""
    def _lookup(type_name="Medical Emergency"):
        rows = (
            db.query(ProtocolQuestion.id)
            .filter(ProtocolQuestion.call_type_id == call_type_id(type_name))
            .order_by(ProtocolQuestion.display_order)
            .all()
        )
        return [str(row[0]) for row in rows]
    return _lookup


def _medical(qs, conscious="yes", nature="Twisted ankle", bleeding=None, severity=None, patients=None):
    answers = {qs[0]: conscious, qs[1]: nature}
    if bleeding is not None:
        answers[qs[2]] = bleeding
    if severity is not None:
        answers[qs[3]] = severity
    if patients is not None:
        answers[qs[4]] = patients
    return answers


# =============================================================================
# WORKFLOW
# =============================================================================

class TestWorkflow:
    def test_medical_workflow(self, db, call_type_id):
        workflow = get_workflow(db, call_type_id("Medical Emergency"))

        assert workflow["name"] == "Medical Emergency"
        assert workflow["default_priority"] == 1
        assert [q["order"] for q in workflow["questions"]] == [1, 2, 3, 4, 5]
        assert workflow["questions"][0]["type"] == "boolean"
        assert workflow["questions"][3]["conditional_logic"]["condition"] == "equals"
        assert workflow["unit_recommendations"] == ["EMS"]
        assert workflow["response_plan"].startswith("Dispatch nearest EMS unit")

    def test_call_type_without_questions(self, db, call_type_id):
        workflow = get_workflow(db, call_type_id("Equipment Failure"))
        assert workflow["questions"] == []
        assert workflow["unit_recommendations"] == []
        assert workflow["response_plan"] == ""

    def test_unknown_call_type(self, db):
        with pytest.raises(NotFoundError):
            get_workflow(db, 99999)


# =============================================================================
# CONDITIONS
# =============================================================================

class TestConditions:
    def test_equals_is_strict(self):
        logic = {"depends_on": "5", "condition": "equals", "value": "yes"}
        assert evaluate_condition(logic, {"5": "yes"})
        assert not evaluate_condition(logic, {"5": "Yes"})
        assert not evaluate_condition(logic, {})

    def test_not_equals(self):
        logic = {"depends_on": "5", "condition": "not_equals", "value": "no"}
        assert evaluate_condition(logic, {"5": "yes"})
        assert not evaluate_condition(logic, {"5": "no"})

    def test_contains(self):
        logic = {"depends_on": "5", "condition": "contains", "value": "Fight"}
        assert evaluate_condition(logic, {"5": ["Theft", "Fight"]})
        assert not evaluate_condition(logic, {"5": "Theft"})

    def test_numeric_comparisons(self):
        greater = {"depends_on": "5", "condition": "greater_than", "value": 2}
        less = {"depends_on": "5", "condition": "less_than", "value": "2"}
        assert evaluate_condition(greater, {"5": "3"})
        assert not evaluate_condition(greater, {"5": 2})
        assert not evaluate_condition(greater, {"5": "many"})
        assert evaluate_condition(less, {"5": 1})

    def test_unknown_operator_shows_question(self):
        assert evaluate_condition({"depends_on": "5", "condition": "matches", "value": "x"}, {})


# =============================================================================
# VALIDATION
# =============================================================================

class TestValidation:
    def test_required_questions_reported_together(self, db, new_call, questions):
        call = new_call()

        with pytest.raises(ValidationFailure) as exc:
            evaluate_protocol(db, call.id, {})

        assert exc.value.errors == [
            'Question "Is the patient conscious and breathing?" is required',
            'Question "What is the nature of the medical emergency?" is required',
        ]
        assert str(exc.value).startswith("Protocol validation failed: ")
        assert db.query(CallProtocolAnswer).count() == 0

    def test_hidden_question_is_skipped(self, db, new_call, questions):
        qs = questions()
        call = new_call()

        result = evaluate_protocol(db, call.id, _medical(qs, bleeding="no"))

        assert result["protocol_completed"] is True

    def test_shown_question_is_required(self, db, new_call, questions):
        qs = questions()
        call = new_call()

        with pytest.raises(ValidationFailure) as exc:
            evaluate_protocol(db, call.id, _medical(qs, bleeding="yes"))

        assert exc.value.errors == ['Question "How severe is the bleeding?" is required']

    def test_format_errors(self, db, new_call, questions):
        qs = questions()
        call = new_call()

        answers = _medical(qs, conscious="maybe", bleeding="yes", severity="Gushing", patients="several")
        with pytest.raises(ValidationFailure) as exc:
            evaluate_protocol(db, call.id, answers)

        assert exc.value.errors == [
            'Question "Is the patient conscious and breathing?" requires yes/no answer',
            'Question "How severe is the bleeding?" requires selection from available options',
            'Question "How many patients are involved?" requires a number',
        ]

    def test_false_and_zero_are_answers(self, db, new_call, questions):
        qs = questions()
        call = new_call()

        result = evaluate_protocol(db, call.id, _medical(qs, conscious=False, patients=0))

        assert result["answers"][qs[0]] is False
        assert result["answers"][qs[4]] == 0

    def test_multi_select(self, db, call_type_id):
        question = ProtocolQuestion(
            call_type_id=call_type_id("Weather Emergency"),
            question="Which hazards are present?",
            question_type="multi_select",
            required=True,
            options=["Lightning", "Hail", "Flooding"],
            display_order=1,
        )
        db.add(question)
        db.commit()
        key = str(question.id)

        assert validate_answers([question], {key: ["Lightning", "Hail"]}) == []
        assert validate_answers([question], {key: "Lightning"}) == [
            'Question "Which hazards are present?" requires multiple selections'
        ]
        assert validate_answers([question], {key: ["Lightning", "Tornado"]}) == [
            'Question "Which hazards are present?" contains invalid option: Tornado'
        ]
        assert validate_answers([question], {key: []}) == [
            'Question "Which hazards are present?" is required'
        ]

    def test_unknown_call(self, db):
        with pytest.raises(NotFoundError):
            evaluate_protocol(db, 99999, {})


# =============================================================================
# EVALUATION
# =============================================================================

class TestEvaluate:
    def test_unconscious_patient_escalates_to_priority_one(self, db, actor, new_call, questions, events):
        qs = questions()
        call = new_call(priority=3)

        result = evaluate_protocol(db, call.id, _medical(qs, conscious="no", nature="Patient is unconscious"), actor)

        assert result["calculated_priority"] == 1
        assert result["previous_priority"] == 3
        assert result["priority_changed"] is True
        assert result["recommended_units"] == ["EMS"]
        assert result["response_plan"] == (
            "Dispatch nearest EMS unit. Notify camp health center."
            "\n- Check for responsiveness and breathing"
            "\n- Begin CPR if necessary"
        )
        assert result["ruleset_version"] == RULESET_VERSION
        assert db.get(Call, call.id).priority == 1

        last = db.query(CallUpdate).filter(CallUpdate.call_id == call.id).order_by(CallUpdate.id.desc()).first()
        assert last.update_type == "priority_change"
        assert last.description == "Priority changed. Set by protocol evaluation."
        assert last.fields_changed == {"priority": {"old": 3, "new": 1}}
        assert last.actor_id == actor.user_id

        kinds = {(e.entity_type, e.change_kind) for e in events}
        assert ("calls", "updated") in kinds
        assert ("call_protocol_answers", "evaluated") in kinds

    def test_urgent_keywords_cap_at_two(self, db, new_call, questions):
        qs = questions()
        call = new_call(priority=4)

        result = evaluate_protocol(db, call.id, _medical(qs, nature="Knee injury from a fall"))

        assert result["calculated_priority"] == 2
        assert result["recommended_units"] == ["EMS"]

    def test_never_de_escalates(self, db, new_call, questions):
        qs = questions()
        call = new_call(priority=1)
        before = db.query(CallUpdate).filter(CallUpdate.call_id == call.id).count()

        result = evaluate_protocol(db, call.id, _medical(qs, nature="Splinter"))

        assert result["calculated_priority"] == 1
        assert result["priority_changed"] is False
        assert db.query(CallUpdate).filter(CallUpdate.call_id == call.id).count() == before

    def test_bleeding_plan_directives_added_once(self, db, new_call, questions):
        qs = questions()
        call = new_call(priority=3)

        result = evaluate_protocol(db, call.id, _medical(qs, nature="bleeding from scalp, bleeding heavily",
                                                         bleeding="yes", severity="Severe"))

        assert result["calculated_priority"] == 1
        assert result["response_plan"].count("Apply direct pressure to wound") == 1

    def test_fire_recommendations(self, db, new_call, questions):
        qs = questions("Fire")
        call = new_call(priority=2, type_name="Fire", description="Smoke near the lodge")

        result = evaluate_protocol(db, call.id, {qs[0]: "yes", qs[1]: "Building", qs[2]: "no", qs[3]: "yes"})

        assert result["recommended_units"] == ["EMS", "Fire"]
        assert result["calculated_priority"] == 2

    def test_answer_keywords_add_unit_categories(self, db, new_call, questions):
        qs = questions()
        call = new_call(priority=3)

        result = evaluate_protocol(db, call.id, _medical(qs, nature="Camper missing on the lake trail"))

        assert result["recommended_units"] == ["EMS", "Search_Rescue"]
        assert result["calculated_priority"] == 3

    def test_hidden_question_answers_still_scored(self, db, new_call, questions):
        qs = questions()
        call = new_call(priority=3)

        # Severity is gated on bleeding == "yes", so it is not validated here
        result = evaluate_protocol(db, call.id, _medical(qs, bleeding="no", severity="Severe bleeding"))

        assert result["calculated_priority"] == 1
        assert result["priority_changed"] is True
        assert "\n- Apply direct pressure to wound\n- Elevate if possible" in result["response_plan"]
        assert result["recommended_units"] == ["EMS"]

        last = db.query(CallUpdate).filter(CallUpdate.call_id == call.id).order_by(CallUpdate.id.desc()).first()
        assert last.update_type == "priority_change"

    def test_answers_to_unknown_questions_are_ignored(self, db, new_call):
        call = new_call(priority=3, type_name="Equipment Failure", description="Radio tower down")

        result = evaluate_protocol(db, call.id, {"notes": "fire in the generator shed"})

        assert result["calculated_priority"] == 3
        assert result["recommended_units"] == []

    def test_history_newest_first(self, db, new_call, questions):
        qs = questions()
        call = new_call(priority=4)
        first = evaluate_protocol(db, call.id, _medical(qs, nature="Headache"))
        second = evaluate_protocol(db, call.id, _medical(qs, nature="Chest pain"))

        history = list_call_evaluations(db, call.id)

        assert [r.id for r in history] == [second["id"], first["id"]]

    def test_history_unknown_call(self, db):
        with pytest.raises(NotFoundError):
            list_call_evaluations(db, 99999)


# =============================================================================
# STATISTICS
# =============================================================================

class TestStatistics:
    def test_statistics(self, db, new_call, questions, call_type_id):
        qs = questions()
        started = datetime.now(timezone.utc) - timedelta(seconds=60)
        evaluate_protocol(db, new_call(priority=3).id, _medical(qs, conscious="no", nature="unconscious"),
                          started_at=started)
        evaluate_protocol(db, new_call(priority=3).id, _medical(qs, nature="Blister"))
        fire_qs = questions("Fire")
        evaluate_protocol(db, new_call(priority=2, type_name="Fire").id,
                          {fire_qs[0]: "no", fire_qs[1]: "Other", fire_qs[2]: "no"})

        stats = get_protocol_statistics(db)
        assert stats["total_protocols"] == 3
        assert stats["priority_distribution"] == {"1": 1, "3": 1, "2": 1}
        assert 60 <= stats["average_completion_time"] < 120
        assert stats["most_common_answers"][qs[0]] == {"no": 1, "yes": 1}

        medical = get_protocol_statistics(db, call_type_id=call_type_id("Medical Emergency"))
        assert medical["total_protocols"] == 2

    def test_statistics_empty(self, db):
        assert get_protocol_statistics(db) == {
            "total_protocols": 0,
            "average_completion_time": 0,
            "priority_distribution": {},
            "most_common_answers": {},
        }
