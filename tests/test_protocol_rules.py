"""Keyword rule table used by protocol evaluation"""

from services.dispatch.protocol_rules import (
    DEFAULT_RULESET, PlanRule, PriorityRule, RuleSet, UnitRule, answer_text,
)


def test_answer_text():
    assert answer_text("Patient UNCONSCIOUS") == "patient unconscious"
    assert answer_text(True) == "true"
    assert answer_text(False) == "false"
    assert answer_text(["Fight", "Theft"]) == "fight,theft"
    assert answer_text(0) == "0"
    assert answer_text(None) == ""


class TestEscalate:
    def test_emergency_keyword(self):
        assert DEFAULT_RULESET.escalate(3, ["camper not breathing"]) == 1

    def test_urgent_keyword(self):
        assert DEFAULT_RULESET.escalate(4, ["back pain"]) == 2

    def test_most_urgent_hit_wins(self):
        assert DEFAULT_RULESET.escalate(4, ["back pain", "small fire"]) == 1

    def test_never_raises_number(self):
        assert DEFAULT_RULESET.escalate(1, ["back pain"]) == 1

    def test_no_keywords(self):
        assert DEFAULT_RULESET.escalate(3, ["yes", "building"]) == 3


class TestUnits:
    def test_base_units_first_without_duplicates(self):
        units = DEFAULT_RULESET.recommend_units(["EMS"], ["smoke in the cabin", "injury to hand"])
        assert units == ["EMS", "Fire"]

    def test_all_categories(self):
        units = DEFAULT_RULESET.recommend_units([], ["lost hiker", "theft at canteen", "burn on arm"])
        assert units == ["Search_Rescue", "Security", "Fire"]

    def test_template_units(self):
        assert DEFAULT_RULESET.template_units("Dispatch Search and Rescue team. Security to check gates.") == [
            "Security", "Search_Rescue",
        ]
        assert DEFAULT_RULESET.template_units(None) == []


class TestPlan:
    def test_directives_appended_once_per_rule(self):
        plan = DEFAULT_RULESET.build_plan("Dispatch Fire.", ["fire in kitchen", "second fire"])
        assert plan == "Dispatch Fire.\n- Ensure scene safety\n- Establish fire perimeter"

    def test_empty_template(self):
        plan = DEFAULT_RULESET.build_plan(None, ["bleeding"])
        assert plan == "\n- Apply direct pressure to wound\n- Elevate if possible"


def test_custom_ruleset():
    rules = RuleSet(
        version="test",
        priority_rules=(PriorityRule("bear", ("bear",), 1),),
        unit_rules=(UnitRule("Rangers", ("bear",)),),
        plan_rules=(PlanRule("bear", ("bear",), ("Clear the area",)),),
        template_unit_rules=(),
    )
    texts = ["bear near the mess hall"]

    assert rules.escalate(4, texts) == 1
    assert rules.recommend_units([], texts) == ["Rangers"]
    assert rules.build_plan("Notify staff.", texts) == "Notify staff.\n- Clear the area"
