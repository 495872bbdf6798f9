from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from coverage_escalation.models import (
    BroadcastRecord,
    DeadlineExtendEvent,
    EscalationEvent,
    EscalationRule,
    ManualEscalateEvent,
    RuleAction,
    TierCeilingEvent,
    TierEscalateEvent,
    UrgencyIncreaseEvent,
)


def new_event_id() -> str:
    return f"esc-{uuid.uuid4().hex[:12]}"


def apply_rule(
    record: BroadcastRecord,
    rule: EscalationRule,
    now: datetime,
) -> tuple[BroadcastRecord, EscalationEvent]:
    """Apply ``rule`` to ``record`` and return the new record and its event.

    Exactly one event is appended per call and the input record is left
    untouched. No applicability check happens here; that is the job of
    ``select_next_rule``. ``now`` only stamps the event.
    """
    common = {"id": new_event_id(), "timestamp": now, "rule_id": rule.id}
    event: EscalationEvent
    changes: dict = {}

    if rule.action == RuleAction.ESCALATE_TIER:
        if record.current_tier < record.max_tiers:
            to_tier = record.current_tier + 1
            event = TierEscalateEvent(
                **common,
                from_tier=record.current_tier,
                to_tier=to_tier,
                partners_notified=rule.notify_partners,
                reason=(
                    f"No response after {rule.trigger_after_minutes} minutes, "
                    f"escalating to tier {to_tier}"
                ),
            )
            changes["current_tier"] = to_tier
            changes["partners_notified"] = record.partners_notified + len(rule.notify_partners)
        else:
            event = TierCeilingEvent(
                **common,
                tier=record.current_tier,
                reason=(
                    f"No response after {rule.trigger_after_minutes} minutes, "
                    f"already at maximum tier {record.max_tiers}"
                ),
            )

    elif rule.action == RuleAction.INCREASE_URGENCY:
        # Forward-only ordering is a configuration contract, not checked here
        event = UrgencyIncreaseEvent(
            **common,
            from_urgency=record.urgency,
            to_urgency=rule.new_urgency,
            reason=(
                f"Urgency increased from {record.urgency} to {rule.new_urgency} "
                f"after {rule.trigger_after_minutes} minutes"
            ),
        )
        changes["urgency"] = rule.new_urgency

    elif rule.action == RuleAction.EXTEND_DEADLINE:
        to_deadline = record.response_deadline + timedelta(minutes=rule.extend_minutes)
        event = DeadlineExtendEvent(
            **common,
            extend_minutes=rule.extend_minutes,
            from_deadline=record.response_deadline,
            to_deadline=to_deadline,
            reason=f"Deadline extended by {rule.extend_minutes} minutes",
        )
        changes["response_deadline"] = to_deadline

    else:
        event = ManualEscalateEvent(
            **common,
            reason=(
                f"Supervisor notified for manual intervention after "
                f"{rule.trigger_after_minutes} minutes"
            ),
        )

    return record.with_event(event, **changes), event
