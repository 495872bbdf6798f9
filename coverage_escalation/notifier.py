"""Hand-off of escalation events to the notification dispatcher.

Delivery (push, SMS, email) happens elsewhere; these hooks only describe who
should hear about an event and log the request.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from coverage_escalation.logging_config import get_logger
from coverage_escalation.models import (
    BroadcastRecord,
    EscalationEvent,
    ManualEscalateEvent,
    TierCeilingEvent,
    TierEscalateEvent,
    UrgencyIncreaseEvent,
)

logger = get_logger(__name__)

Dispatcher = Callable[[BroadcastRecord, EscalationEvent], Awaitable[None]]


async def notify_tier_partners(record: BroadcastRecord, tier: int) -> None:
    logger.info(
        "Notify partners for tier",
        record_id=record.id,
        shift_id=record.shift_id,
        tier=tier,
        urgency=str(record.urgency),
    )


async def renotify_partners(record: BroadcastRecord, urgency: str) -> None:
    logger.info(
        "Re-notify partners with elevated urgency",
        record_id=record.id,
        shift_id=record.shift_id,
        tier=record.current_tier,
        urgency=urgency,
    )


async def alert_supervisor(record: BroadcastRecord, reason: str) -> None:
    logger.warning(
        "Supervisor alert",
        record_id=record.id,
        shift_id=record.shift_id,
        location_id=record.location_id,
        reason=reason,
    )


async def dispatch_event(record: BroadcastRecord, event: EscalationEvent) -> None:
    """Route an emitted event to its external reaction, if it has one."""
    if isinstance(event, TierEscalateEvent):
        await notify_tier_partners(record, event.to_tier)
    elif isinstance(event, ManualEscalateEvent) and event.to_tier is not None:
        await notify_tier_partners(record, event.to_tier)
    elif isinstance(event, UrgencyIncreaseEvent):
        await renotify_partners(record, str(event.to_urgency))
    elif isinstance(event, (ManualEscalateEvent, TierCeilingEvent)):
        await alert_supervisor(record, event.reason)
    else:
        logger.debug("No dispatch for event", record_id=record.id, kind=event.kind)
