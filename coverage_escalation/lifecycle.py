"""Transitions driven from outside the rule engine.

Starting a broadcast, recording partner responses, and the fill, cancel,
expire and manual-escalate actions. Each returns a new record version.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Sequence
from datetime import datetime

from coverage_escalation.applier import new_event_id
from coverage_escalation.evaluator import next_trigger_at
from coverage_escalation.logging_config import get_logger
from coverage_escalation.models import (
    BroadcastRecord,
    BroadcastStatus,
    CancelledEvent,
    EscalationRule,
    ExpiredEvent,
    FilledBy,
    FilledEvent,
    InitialBroadcastEvent,
    ManualEscalateEvent,
    PartnerResponse,
    Urgency,
)

logger = get_logger(__name__)


class InvalidTransitionError(Exception):
    def __init__(self, record: BroadcastRecord, action: str, detail: str | None = None):
        detail = detail or f"in status {record.status}"
        super().__init__(f"cannot {action} broadcast {record.id} {detail}")
        self.record_id = record.id
        self.status = record.status
        self.action = action


def _require_pending(record: BroadcastRecord, action: str) -> None:
    if record.status != BroadcastStatus.PENDING:
        raise InvalidTransitionError(record, action)


def start_broadcast(
    *,
    shift_id: str,
    location_id: str,
    now: datetime,
    response_deadline: datetime,
    rules: Iterable[EscalationRule] = (),
    urgency: Urgency = Urgency.STANDARD,
    max_tiers: int = 3,
    partner_ids: Sequence[str] = (),
    partners_notified: int | None = None,
    record_id: str | None = None,
    **display: str | None,
) -> BroadcastRecord:
    """Create the pending record for a shift that could not be filled internally.

    Raises pydantic ``ValidationError`` on malformed input.
    """
    record = BroadcastRecord(
        id=record_id or f"broadcast-{uuid.uuid4().hex[:12]}",
        shift_id=shift_id,
        location_id=location_id,
        broadcasted_at=now,
        response_deadline=response_deadline,
        urgency=urgency,
        current_tier=1,
        max_tiers=max_tiers,
        partners_notified=len(partner_ids) if partners_notified is None else partners_notified,
        escalation_history=(
            InitialBroadcastEvent(
                id=new_event_id(),
                timestamp=now,
                tier=1,
                urgency=urgency,
                partners_notified=tuple(partner_ids),
                reason=f"Shift broadcast to tier 1 partners with {urgency} urgency",
            ),
        ),
        **display,
    )
    record = record.model_copy(
        update={"auto_escalate_at": next_trigger_at(record, list(rules), now)}
    )
    logger.info(
        "Broadcast started",
        record_id=record.id,
        shift_id=shift_id,
        location_id=location_id,
        urgency=str(urgency),
    )
    return record


def record_response(record: BroadcastRecord, response: PartnerResponse) -> BroadcastRecord:
    """Add or replace a partner's response. Responses do not touch the history."""
    if record.is_terminal:
        raise InvalidTransitionError(record, "record a response for")

    responses = tuple(r for r in record.responses if r.partner_id != response.partner_id)
    responses = (*responses, response)
    return record.next_version(
        responses=responses,
        partners_responded=len(responses),
    )


def fill_broadcast(
    record: BroadcastRecord,
    filled_by: FilledBy,
    now: datetime,
) -> BroadcastRecord:
    _require_pending(record, "fill")
    event = FilledEvent(
        id=new_event_id(),
        timestamp=now,
        filled_by=filled_by,
        reason=f"Filled by {filled_by.candidate_name} from {filled_by.partner_name}",
    )
    logger.info("Broadcast filled", record_id=record.id, partner_id=filled_by.partner_id)
    return record.with_event(
        event,
        status=BroadcastStatus.FILLED,
        filled_at=now,
        filled_by=filled_by,
        auto_escalate_at=None,
    )


def cancel_broadcast(
    record: BroadcastRecord,
    now: datetime,
    reason: str = "Broadcast cancelled",
) -> BroadcastRecord:
    _require_pending(record, "cancel")
    event = CancelledEvent(id=new_event_id(), timestamp=now, reason=reason)
    logger.info("Broadcast cancelled", record_id=record.id)
    return record.with_event(
        event, status=BroadcastStatus.CANCELLED, auto_escalate_at=None
    )


def expire_broadcast(record: BroadcastRecord, now: datetime) -> BroadcastRecord:
    _require_pending(record, "expire")
    event = ExpiredEvent(
        id=new_event_id(),
        timestamp=now,
        deadline=record.response_deadline,
        reason="Response deadline passed without the shift being filled",
    )
    logger.info("Broadcast expired", record_id=record.id)
    return record.with_event(event, status=BroadcastStatus.EXPIRED, auto_escalate_at=None)


def manual_escalate(
    record: BroadcastRecord,
    now: datetime,
    reason: str = "Manually escalated to the next tier",
    partner_ids: Sequence[str] = (),
) -> tuple[BroadcastRecord, ManualEscalateEvent]:
    """Move a pending broadcast up one tier on request ("escalate now").

    Rejected once the broadcast is already at its last tier.
    """
    _require_pending(record, "escalate")
    if record.current_tier >= record.max_tiers:
        raise InvalidTransitionError(
            record, "escalate", f"already at maximum tier {record.max_tiers}"
        )

    to_tier = record.current_tier + 1
    event = ManualEscalateEvent(
        id=new_event_id(),
        timestamp=now,
        from_tier=record.current_tier,
        to_tier=to_tier,
        partners_notified=tuple(partner_ids),
        reason=reason,
    )
    logger.info(
        "Broadcast manually escalated",
        record_id=record.id,
        from_tier=record.current_tier,
        to_tier=to_tier,
    )
    updated = record.with_event(
        event,
        current_tier=to_tier,
        partners_notified=record.partners_notified + len(partner_ids),
    )
    return updated, event
