from datetime import UTC, datetime, timedelta

import pytest

from coverage_escalation.models import (
    BroadcastRecord,
    BroadcastStatus,
    EscalationRule,
    InitialBroadcastEvent,
    RuleAction,
    Urgency,
)

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def make_record():
    """Factory for a pending record broadcast at T0 with its initial event."""

    def _make(
        urgency: Urgency = Urgency.STANDARD,
        current_tier: int = 1,
        max_tiers: int = 3,
        status: BroadcastStatus = BroadcastStatus.PENDING,
        history: tuple = (),
        **overrides,
    ) -> BroadcastRecord:
        initial = InitialBroadcastEvent(
            id="esc-initial",
            timestamp=T0,
            tier=1,
            urgency=urgency,
            reason="Shift broadcast to tier 1 partners",
        )
        fields = dict(
            id="broadcast-1",
            shift_id="open-1",
            location_id="loc-1",
            broadcasted_at=T0,
            response_deadline=T0 + timedelta(hours=4),
            urgency=urgency,
            current_tier=current_tier,
            max_tiers=max_tiers,
            status=status,
            escalation_history=(initial, *history),
        )
        fields.update(overrides)
        return BroadcastRecord(**fields)

    return _make


@pytest.fixture
def scenario_rules() -> tuple[EscalationRule, ...]:
    return (
        EscalationRule(trigger_after_minutes=30, action=RuleAction.ESCALATE_TIER),
        EscalationRule(
            trigger_after_minutes=60,
            action=RuleAction.INCREASE_URGENCY,
            new_urgency=Urgency.CRITICAL,
        ),
        EscalationRule(trigger_after_minutes=120, action=RuleAction.ESCALATE_TIER),
        EscalationRule(trigger_after_minutes=180, action=RuleAction.NOTIFY_SUPERVISOR),
    )
