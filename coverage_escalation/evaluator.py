"""Rule selection for pending broadcasts.

Everything here is pure: the same record, rules and time always give the
same answer, so redundant evaluation passes are harmless.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta

from coverage_escalation.models import (
    BroadcastRecord,
    BroadcastStatus,
    EscalationRule,
    RuleAction,
    TierEscalateEvent,
    UrgencyIncreaseEvent,
)


def elapsed_minutes(record: BroadcastRecord, now: datetime) -> float:
    return (now - record.broadcasted_at).total_seconds() / 60


def is_rule_applied(record: BroadcastRecord, rule: EscalationRule) -> bool:
    """Whether ``rule`` already left a mark in the record's history.

    Events stamped with a rule id only match that rule. Unstamped events are
    matched on the state they produced: a tier escalation to the next tier,
    or an urgency increase to the rule's target urgency.
    """
    for event in record.escalation_history:
        if event.rule_id is not None:
            if event.rule_id == rule.id:
                return True
            continue

        if rule.action == RuleAction.ESCALATE_TIER and isinstance(event, TierEscalateEvent):
            if event.to_tier == record.current_tier + 1:
                return True
        elif rule.action == RuleAction.INCREASE_URGENCY and isinstance(
            event, UrgencyIncreaseEvent
        ):
            if event.to_urgency == rule.new_urgency:
                return True

    return False


def select_next_rule(
    record: BroadcastRecord,
    rules: Iterable[EscalationRule],
    now: datetime,
) -> EscalationRule | None:
    """Pick the first triggered rule that has not been applied yet.

    Rules are scanned in the order given; callers are expected to pass them
    sorted by ``trigger_after_minutes``. Only pending records are evaluated.
    """
    if record.status != BroadcastStatus.PENDING:
        return None

    elapsed = elapsed_minutes(record, now)
    for rule in rules:
        if elapsed >= rule.trigger_after_minutes and not is_rule_applied(record, rule):
            return rule
    return None


def next_trigger_at(
    record: BroadcastRecord,
    rules: Iterable[EscalationRule],
    now: datetime,
) -> datetime | None:
    """When the next not-yet-triggered, unapplied rule will fire."""
    if record.status != BroadcastStatus.PENDING:
        return None

    elapsed = elapsed_minutes(record, now)
    for rule in rules:
        if elapsed < rule.trigger_after_minutes and not is_rule_applied(record, rule):
            return record.broadcasted_at + timedelta(minutes=rule.trigger_after_minutes)
    return None
