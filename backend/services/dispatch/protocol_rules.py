"""
Protocol rule table

Keyword rules applied to questionnaire answers. Matching is a
case-insensitive substring test against each answer's text form.

Changing any rule means bumping RULESET_VERSION; every stored evaluation
records the version it was computed with.
"""

from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

RULESET_VERSION = "1"


@dataclass(frozen=True)
class PriorityRule:
    """Any keyword hit caps priority at max_priority (never de-escalates)"""
    name: str
    keywords: Tuple[str, ...]
    max_priority: int


@dataclass(frozen=True)
class UnitRule:
    unit_category: str
    keywords: Tuple[str, ...]


@dataclass(frozen=True)
class PlanRule:
    name: str
    keywords: Tuple[str, ...]
    directives: Tuple[str, ...]


def answer_text(value) -> str:
    """Lower-case text form of an answer used for keyword matching"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(answer_text(v) for v in value)
    return str(value).lower()


def _matches(text: str, keywords: Iterable[str]) -> bool:
    return any(keyword in text for keyword in keywords)


@dataclass(frozen=True)
class RuleSet:
    version: str
    priority_rules: Tuple[PriorityRule, ...]
    unit_rules: Tuple[UnitRule, ...]
    plan_rules: Tuple[PlanRule, ...]
    # Unit categories mentioned in a call type's response plan template
    template_unit_rules: Tuple[UnitRule, ...]

    def escalate(self, base_priority: int, texts: Sequence[str]) -> int:
        priority = base_priority
        for text in texts:
            for rule in self.priority_rules:
                if _matches(text, rule.keywords):
                    priority = min(priority, rule.max_priority)
        return priority

    def recommend_units(self, base_units: Sequence[str], texts: Sequence[str]) -> List[str]:
        recommended = list(dict.fromkeys(base_units))
        for text in texts:
            for rule in self.unit_rules:
                if rule.unit_category not in recommended and _matches(text, rule.keywords):
                    recommended.append(rule.unit_category)
        return recommended

    def build_plan(self, template: str, texts: Sequence[str]) -> str:
        plan = template or ""
        applied = set()
        for text in texts:
            for rule in self.plan_rules:
                if rule.name in applied or not _matches(text, rule.keywords):
                    continue
                applied.add(rule.name)
                for directive in rule.directives:
                    plan += f"\n- {directive}"
        return plan

    def template_units(self, template: str) -> List[str]:
        text = (template or "").lower()
        return [rule.unit_category for rule in self.template_unit_rules if _matches(text, rule.keywords)]


DEFAULT_RULESET = RuleSet(
    version=RULESET_VERSION,
    priority_rules=(
        PriorityRule(
            name="emergency",
            keywords=("unconscious", "not breathing", "cardiac arrest", "bleeding", "fire", "explosion"),
            max_priority=1,
        ),
        PriorityRule(
            name="urgent",
            keywords=("pain", "injury", "accident", "fall", "medical"),
            max_priority=2,
        ),
    ),
    unit_rules=(
        UnitRule("EMS", ("medical", "injury", "pain")),
        UnitRule("Fire", ("fire", "smoke", "burn")),
        UnitRule("Security", ("fight", "assault", "theft")),
        UnitRule("Search_Rescue", ("lost", "missing", "trail")),
    ),
    plan_rules=(
        PlanRule(
            name="unconscious",
            keywords=("unconscious",),
            directives=("Check for responsiveness and breathing", "Begin CPR if necessary"),
        ),
        PlanRule(
            name="bleeding",
            keywords=("bleeding",),
            directives=("Apply direct pressure to wound", "Elevate if possible"),
        ),
        PlanRule(
            name="fire",
            keywords=("fire",),
            directives=("Ensure scene safety", "Establish fire perimeter"),
        ),
    ),
    template_unit_rules=(
        UnitRule("EMS", ("ems",)),
        UnitRule("Fire", ("fire",)),
        UnitRule("Security", ("security",)),
        UnitRule("Search_Rescue", ("search", "rescue")),
    ),
)
