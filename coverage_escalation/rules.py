from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, ConfigDict, model_validator

from coverage_escalation.logging_config import get_logger
from coverage_escalation.models import EscalationRule, RuleAction, Urgency

logger = get_logger(__name__)


DEFAULT_ESCALATION_RULES: tuple[EscalationRule, ...] = (
    EscalationRule(trigger_after_minutes=30, action=RuleAction.ESCALATE_TIER),
    EscalationRule(
        trigger_after_minutes=60,
        action=RuleAction.INCREASE_URGENCY,
        new_urgency=Urgency.URGENT,
    ),
    EscalationRule(trigger_after_minutes=120, action=RuleAction.ESCALATE_TIER),
    EscalationRule(
        trigger_after_minutes=180,
        action=RuleAction.INCREASE_URGENCY,
        new_urgency=Urgency.CRITICAL,
    ),
    EscalationRule(trigger_after_minutes=240, action=RuleAction.NOTIFY_SUPERVISOR),
)


class RuleSet(BaseModel):
    """Ordered escalation rules for one location.

    The evaluator scans rules in the order given, so a rule set is only
    accepted when its thresholds are already ascending.
    """

    model_config = ConfigDict(frozen=True)

    rules: tuple[EscalationRule, ...] = DEFAULT_ESCALATION_RULES

    @model_validator(mode="after")
    def _check_order(self) -> RuleSet:
        seen: set[str] = set()
        previous = -1
        for rule in self.rules:
            if rule.id in seen:
                raise ValueError(f"duplicate rule id: {rule.id}")
            seen.add(rule.id)
            if rule.trigger_after_minutes < previous:
                raise ValueError(
                    f"rule {rule.id} is out of order: thresholds must be ascending"
                )
            previous = rule.trigger_after_minutes
        return self


class RuleSetRegistry:
    """Per-location rule sets with a shared default."""

    def __init__(self, default: RuleSet | None = None) -> None:
        self.default = default or RuleSet()
        self._by_location: dict[str, RuleSet] = {}

    def set(self, location_id: str, rule_set: RuleSet) -> None:
        self._by_location[location_id] = rule_set

    def for_location(self, location_id: str) -> RuleSet:
        return self._by_location.get(location_id, self.default)

    def locations(self) -> list[str]:
        return sorted(self._by_location)

    def clear(self) -> None:
        """Drop every loaded rule set, including a default read from file."""
        self.default = RuleSet()
        self._by_location.clear()

    def load_file(self, path: Path) -> None:
        """Load rule sets from a JSON file.

        Expected shape::

            {"default": [...rules], "locations": {"loc-1": [...rules]}}
        """
        with open(path, "r") as f:
            data = json.load(f)

        if "default" in data:
            self.default = RuleSet(rules=data["default"])
        for location_id, rules in data.get("locations", {}).items():
            self.set(location_id, RuleSet(rules=rules))

        logger.info(
            "Loaded escalation rule sets",
            path=str(path),
            locations=len(self._by_location),
        )
