from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, ValidationError

from coverage_escalation.clock import utc_now
from coverage_escalation.config import settings
from coverage_escalation.database import ConcurrencyConflictError
from coverage_escalation.deadline import TimeRemaining, time_remaining
from coverage_escalation.lifecycle import (
    InvalidTransitionError,
    cancel_broadcast,
    fill_broadcast,
    manual_escalate,
    record_response,
    start_broadcast,
)
from coverage_escalation.logging_config import get_logger, setup_logging
from coverage_escalation.models import (
    BroadcastRecord,
    BroadcastStatus,
    EscalationRule,
    FilledBy,
    PartnerResponse,
    Urgency,
)
from coverage_escalation.notifier import dispatch_event
from coverage_escalation.scheduler import (
    TickSummary,
    run_escalation_tick,
    start_scheduler,
    stop_scheduler,
)
from coverage_escalation.state import broadcast_db, rule_sets

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_format, settings.log_level, settings.service_name)
    if settings.rules_path is not None:
        rule_sets.load_file(settings.rules_path)
    if settings.scheduler_enabled:
        start_scheduler()
    yield
    stop_scheduler()
    broadcast_db.clear()
    rule_sets.clear()


router = APIRouter()


# --- Models for Endpoints ---

class BroadcastRequest(BaseModel):
    shift_id: str
    location_id: str
    urgency: Urgency = Urgency.STANDARD
    max_tiers: int | None = None
    # Absolute deadline wins over the relative one
    response_deadline: datetime | None = None
    response_deadline_minutes: int | None = None
    partner_ids: list[str] = []
    # Defaults to the number of partner_ids
    partners_notified: int | None = None
    shift_date: str | None = None
    shift_time: str | None = None
    location_name: str | None = None
    department_name: str | None = None
    role: str | None = None


class BroadcastView(BaseModel):
    record: BroadcastRecord
    time_remaining: TimeRemaining


class CancelRequest(BaseModel):
    reason: str = "Broadcast cancelled"


class EscalateRequest(BaseModel):
    reason: str = "Manually escalated to the next tier"
    partner_ids: list[str] = []


class RuleSetView(BaseModel):
    location_id: str
    rules: list[EscalationRule]


# --- Helpers ---

def _view(record: BroadcastRecord) -> BroadcastView:
    return BroadcastView(
        record=record,
        time_remaining=time_remaining(record.response_deadline, utc_now()),
    )


def _get_or_404(record_id: str) -> BroadcastRecord:
    record = broadcast_db.get(record_id)
    if not record:
        raise HTTPException(status_code=404, detail="Broadcast not found")
    return record


def _save(previous: BroadcastRecord, updated: BroadcastRecord) -> None:
    try:
        broadcast_db.compare_and_set(updated, expected_version=previous.version)
    except ConcurrencyConflictError as e:
        logger.warning("Rejected stale broadcast update", record_id=previous.id)
        raise HTTPException(status_code=409, detail=str(e)) from e


# --- Endpoints ---

@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/broadcasts", status_code=201)
async def create_broadcast(req: BroadcastRequest) -> BroadcastView:
    now = utc_now()
    deadline_minutes = req.response_deadline_minutes
    if deadline_minutes is None:
        deadline_minutes = settings.default_response_deadline_minutes
    deadline = req.response_deadline or now + timedelta(minutes=deadline_minutes)
    max_tiers = req.max_tiers if req.max_tiers is not None else settings.default_max_tiers
    try:
        record = start_broadcast(
            shift_id=req.shift_id,
            location_id=req.location_id,
            now=now,
            response_deadline=deadline,
            rules=rule_sets.for_location(req.location_id).rules,
            urgency=req.urgency,
            max_tiers=max_tiers,
            partner_ids=req.partner_ids,
            partners_notified=req.partners_notified,
            shift_date=req.shift_date,
            shift_time=req.shift_time,
            location_name=req.location_name,
            department_name=req.department_name,
            role=req.role,
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail=e.errors(include_url=False, include_context=False, include_input=False),
        ) from e

    broadcast_db.add(record)
    return _view(record)


@router.get("/broadcasts")
async def list_broadcasts(status: BroadcastStatus | None = None) -> list[BroadcastView]:
    records = broadcast_db.all() if status is None else broadcast_db.with_status([status])
    return [_view(r) for r in sorted(records, key=lambda r: r.broadcasted_at)]


@router.get("/broadcasts/{record_id}")
async def get_broadcast(record_id: str) -> BroadcastView:
    return _view(_get_or_404(record_id))


@router.post("/broadcasts/{record_id}/responses")
async def add_response(record_id: str, response: PartnerResponse) -> BroadcastView:
    record = _get_or_404(record_id)
    try:
        updated = record_response(record, response)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    _save(record, updated)
    return _view(updated)


@router.post("/broadcasts/{record_id}/fill")
async def fill(record_id: str, filled_by: FilledBy) -> BroadcastView:
    record = _get_or_404(record_id)
    try:
        updated = fill_broadcast(record, filled_by, utc_now())
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    _save(record, updated)
    return _view(updated)


@router.post("/broadcasts/{record_id}/cancel")
async def cancel(record_id: str, req: CancelRequest | None = None) -> BroadcastView:
    record = _get_or_404(record_id)
    req = req or CancelRequest()
    try:
        updated = cancel_broadcast(record, utc_now(), reason=req.reason)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    _save(record, updated)
    return _view(updated)


@router.post("/broadcasts/{record_id}/escalate")
async def escalate(record_id: str, req: EscalateRequest | None = None) -> BroadcastView:
    record = _get_or_404(record_id)
    req = req or EscalateRequest()
    try:
        updated, event = manual_escalate(
            record, utc_now(), reason=req.reason, partner_ids=req.partner_ids
        )
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    _save(record, updated)
    await dispatch_event(updated, event)
    return _view(updated)


@router.post("/escalations/run")
async def run_escalations() -> TickSummary:
    return await run_escalation_tick(broadcast_db, rule_sets, utc_now())


@router.get("/locations/{location_id}/rules")
async def get_rules(location_id: str) -> RuleSetView:
    return RuleSetView(
        location_id=location_id,
        rules=list(rule_sets.for_location(location_id).rules),
    )


def create_app() -> FastAPI:
    app = FastAPI(title="Shift coverage escalation", lifespan=lifespan)
    app.include_router(router)
    return app
