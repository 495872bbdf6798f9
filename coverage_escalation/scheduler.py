"""Escalation scheduler loop.

Each tick walks the pending broadcasts, applies at most one due rule per
record, writes the result back with compare-and-set and hands the emitted
event to the dispatcher. Runs periodically under APScheduler.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel

from coverage_escalation.applier import apply_rule
from coverage_escalation.clock import Clock, utc_now
from coverage_escalation.config import settings
from coverage_escalation.database import BroadcastRecordStore, ConcurrencyConflictError
from coverage_escalation.deadline import time_remaining
from coverage_escalation.evaluator import next_trigger_at, select_next_rule
from coverage_escalation.lifecycle import expire_broadcast
from coverage_escalation.logging_config import get_logger, tick_id_ctx
from coverage_escalation.models import (
    BroadcastRecord,
    EscalationEvent,
    EscalationRule,
    RuleAction,
)
from coverage_escalation.notifier import Dispatcher, dispatch_event
from coverage_escalation.rules import RuleSetRegistry
from coverage_escalation.state import broadcast_db, rule_sets

logger = get_logger(__name__)

scheduler: AsyncIOScheduler | None = None


class TickSummary(BaseModel):
    tick_id: str
    evaluated: int = 0
    escalated: int = 0
    expired: int = 0
    conflicts: int = 0
    errors: int = 0
    event_ids: list[str] = []


class EscalationOutcome(BaseModel):
    """What happened to one record during a tick."""

    record: BroadcastRecord
    event: EscalationEvent | None = None
    conflicts: int = 0


def is_past_deadline(record: BroadcastRecord, now: datetime) -> bool:
    # Same minute rounding as the countdown shown to users, so a record
    # reading "0m overdue" is also one that auto-expiry treats as overdue
    return time_remaining(record.response_deadline, now).is_overdue


def _next_version(
    record: BroadcastRecord,
    rules: tuple[EscalationRule, ...],
    now: datetime,
    auto_expire: bool,
) -> tuple[BroadcastRecord, EscalationEvent] | None:
    if auto_expire and is_past_deadline(record, now):
        # A due extension moves the deadline before expiry is considered
        extensions = [r for r in rules if r.action == RuleAction.EXTEND_DEADLINE]
        rule = select_next_rule(record, extensions, now)
        if rule is None:
            expired = expire_broadcast(record, now)
            return expired, expired.escalation_history[-1]
    else:
        rule = select_next_rule(record, rules, now)

    if rule is None:
        return None

    updated, event = apply_rule(record, rule, now)
    updated = updated.model_copy(
        update={"auto_escalate_at": next_trigger_at(updated, rules, now)}
    )
    logger.info(
        "Applying escalation rule",
        record_id=record.id,
        rule_id=rule.id,
        action=str(rule.action),
        version=updated.version,
    )
    return updated, event


def escalate_record(
    store: BroadcastRecordStore,
    record: BroadcastRecord,
    rules: tuple[EscalationRule, ...],
    now: datetime,
    *,
    auto_expire: bool = False,
    max_conflict_retries: int = 3,
) -> EscalationOutcome:
    """Evaluate one record and persist the resulting version, if any.

    A lost compare-and-set re-reads the record and evaluates again, so a rule
    that a concurrent worker already applied is seen in the history and not
    applied twice.
    """
    conflicts = 0
    while True:
        if record.is_terminal:
            return EscalationOutcome(record=record, conflicts=conflicts)

        result = _next_version(record, rules, now, auto_expire)
        if result is None:
            return EscalationOutcome(record=record, conflicts=conflicts)

        updated, event = result
        try:
            store.compare_and_set(updated, expected_version=record.version)
        except ConcurrencyConflictError as e:
            conflicts += 1
            logger.warning(
                "Concurrent update detected, re-evaluating",
                record_id=record.id,
                expected_version=e.expected_version,
                actual_version=e.actual_version,
                attempt=conflicts,
            )
            if conflicts > max_conflict_retries:
                raise
            record = store.require(record.id)
            continue

        return EscalationOutcome(record=updated, event=event, conflicts=conflicts)


async def run_escalation_tick(
    store: BroadcastRecordStore,
    registry: RuleSetRegistry,
    now: datetime | None = None,
    dispatcher: Dispatcher | None = None,
    *,
    auto_expire: bool | None = None,
    max_conflict_retries: int | None = None,
    clock: Clock = utc_now,
) -> TickSummary:
    """Run one pass over all pending broadcasts at ``now`` (default: ``clock()``)."""
    now = now or clock()
    dispatcher = dispatcher or dispatch_event
    if auto_expire is None:
        auto_expire = settings.auto_expire_on_deadline
    if max_conflict_retries is None:
        max_conflict_retries = settings.max_conflict_retries

    summary = TickSummary(tick_id=f"tick-{uuid.uuid4().hex[:8]}")
    token = tick_id_ctx.set(summary.tick_id)
    try:
        pending = store.pending()
        logger.info("Starting escalation tick", pending=len(pending))

        for record in pending:
            summary.evaluated += 1
            rules = registry.for_location(record.location_id).rules
            try:
                outcome = escalate_record(
                    store,
                    record,
                    rules,
                    now,
                    auto_expire=auto_expire,
                    max_conflict_retries=max_conflict_retries,
                )
            except Exception as e:
                logger.error(
                    "Escalation failed for record",
                    record_id=record.id,
                    error=str(e),
                )
                summary.errors += 1
                continue

            summary.conflicts += outcome.conflicts
            if outcome.event is None:
                continue

            summary.event_ids.append(outcome.event.id)
            if outcome.event.kind == "expired":
                summary.expired += 1
            else:
                summary.escalated += 1

            try:
                await dispatcher(outcome.record, outcome.event)
            except Exception as e:
                # The new version is already stored; only delivery failed
                logger.error(
                    "Dispatch failed for escalation event",
                    record_id=record.id,
                    event_id=outcome.event.id,
                    error=str(e),
                )
                summary.errors += 1

        logger.info(
            "Escalation tick completed",
            evaluated=summary.evaluated,
            escalated=summary.escalated,
            expired=summary.expired,
            conflicts=summary.conflicts,
            errors=summary.errors,
        )
        return summary
    finally:
        tick_id_ctx.reset(token)


async def run_scheduled_tick() -> None:
    await run_escalation_tick(broadcast_db, rule_sets)


def start_scheduler() -> AsyncIOScheduler:
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already running")
        return scheduler

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_scheduled_tick,
        trigger=IntervalTrigger(seconds=settings.scheduler_interval_seconds),
        id="escalation_tick",
        name="Shift Coverage Escalation",
        replace_existing=True,
        max_instances=1,
    )
    scheduler.start()
    logger.info(
        "Escalation scheduler started",
        interval_seconds=settings.scheduler_interval_seconds,
    )
    return scheduler


def stop_scheduler() -> None:
    global scheduler

    if scheduler is not None:
        scheduler.shutdown(wait=False)
        scheduler = None
        logger.info("Escalation scheduler stopped")


def get_scheduler() -> AsyncIOScheduler | None:
    return scheduler
