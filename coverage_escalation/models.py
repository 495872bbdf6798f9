from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from coverage_escalation.clock import ensure_aware


class Urgency(StrEnum):
    STANDARD = "standard"
    URGENT = "urgent"
    CRITICAL = "critical"


class BroadcastStatus(StrEnum):
    PENDING = "pending"
    # Defined for display compatibility; nothing in the engine produces it.
    ESCALATED = "escalated"
    FILLED = "filled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {BroadcastStatus.FILLED, BroadcastStatus.EXPIRED, BroadcastStatus.CANCELLED}
)


class RuleAction(StrEnum):
    ESCALATE_TIER = "escalate_tier"
    INCREASE_URGENCY = "increase_urgency"
    EXTEND_DEADLINE = "extend_deadline"
    NOTIFY_SUPERVISOR = "notify_supervisor"


class EscalationRule(BaseModel):
    """A (time threshold, action) pair. Configuration only, never mutated."""

    model_config = ConfigDict(frozen=True)

    # Stable identifier stamped on every event this rule produces
    id: str
    trigger_after_minutes: int = Field(ge=0)
    action: RuleAction
    new_urgency: Urgency | None = None
    extend_minutes: int | None = Field(default=None, gt=0)
    # Partners reached when an escalate_tier rule fires
    notify_partners: tuple[str, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _default_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            action = data.get("action")
            action = action.value if isinstance(action, RuleAction) else action
            data = {**data, "id": f"{action}@{data.get('trigger_after_minutes')}m"}
        return data

    @model_validator(mode="after")
    def _check_action_params(self) -> EscalationRule:
        if self.action == RuleAction.INCREASE_URGENCY and self.new_urgency is None:
            raise ValueError("increase_urgency rules require new_urgency")
        if self.action == RuleAction.EXTEND_DEADLINE and self.extend_minutes is None:
            raise ValueError("extend_deadline rules require extend_minutes")
        return self


# --- Partner responses (carried, never evaluated by the engine) ---

class CandidateStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class ResponseStatus(StrEnum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


class CandidateSubmission(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    candidate_id: str
    candidate_name: str
    match_score: float = 0.0
    skill_match: float = 0.0
    proximity_match: float = 0.0
    reliability_score: float = 0.0
    pay_rate: float = 0.0
    status: CandidateStatus = CandidateStatus.PENDING
    submitted_at: datetime
    response_time_minutes: int = 0


class PartnerResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    partner_id: str
    partner_name: str
    responded_at: datetime
    candidates: tuple[CandidateSubmission, ...] = ()
    status: ResponseStatus = ResponseStatus.SUBMITTED

    @property
    def candidates_submitted(self) -> int:
        return len(self.candidates)


class FilledBy(BaseModel):
    model_config = ConfigDict(frozen=True)

    partner_id: str
    partner_name: str
    candidate_id: str
    candidate_name: str


# --- Escalation history events ---

class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    reason: str
    # Set when the event was produced by an escalation rule
    rule_id: str | None = None


class InitialBroadcastEvent(_EventBase):
    kind: Literal["initial_broadcast"] = "initial_broadcast"
    tier: int
    urgency: Urgency
    partners_notified: tuple[str, ...] = ()


class TierEscalateEvent(_EventBase):
    kind: Literal["tier_escalate"] = "tier_escalate"
    from_tier: int
    to_tier: int
    partners_notified: tuple[str, ...] = ()


class TierCeilingEvent(_EventBase):
    kind: Literal["tier_ceiling"] = "tier_ceiling"
    tier: int


class UrgencyIncreaseEvent(_EventBase):
    kind: Literal["urgency_increase"] = "urgency_increase"
    from_urgency: Urgency
    to_urgency: Urgency


class DeadlineExtendEvent(_EventBase):
    kind: Literal["deadline_extend"] = "deadline_extend"
    extend_minutes: int
    from_deadline: datetime
    to_deadline: datetime


class ManualEscalateEvent(_EventBase):
    kind: Literal["manual_escalate"] = "manual_escalate"
    # Set when a person moved the broadcast up a tier; rule-driven
    # supervisor alerts leave these empty
    from_tier: int | None = None
    to_tier: int | None = None
    partners_notified: tuple[str, ...] = ()


class FilledEvent(_EventBase):
    kind: Literal["filled"] = "filled"
    filled_by: FilledBy


class ExpiredEvent(_EventBase):
    kind: Literal["expired"] = "expired"
    deadline: datetime


class CancelledEvent(_EventBase):
    kind: Literal["cancelled"] = "cancelled"


EscalationEvent = Annotated[
    Union[
        InitialBroadcastEvent,
        TierEscalateEvent,
        TierCeilingEvent,
        UrgencyIncreaseEvent,
        DeadlineExtendEvent,
        ManualEscalateEvent,
        FilledEvent,
        ExpiredEvent,
        CancelledEvent,
    ],
    Field(discriminator="kind"),
]


class BroadcastRecord(BaseModel):
    """One shift's external-coverage lifecycle.

    Records are immutable values. Every transition returns a new record with
    ``version`` bumped, which is what the store's compare-and-set keys on.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    shift_id: str
    location_id: str
    # Display metadata passed through from the roster
    shift_date: str | None = None
    shift_time: str | None = None
    location_name: str | None = None
    department_name: str | None = None
    role: str | None = None

    broadcasted_at: datetime
    response_deadline: datetime
    # Informational hint for the UI; elapsed time vs. rule thresholds drives escalation
    auto_escalate_at: datetime | None = None

    urgency: Urgency = Urgency.STANDARD
    current_tier: int = 1
    max_tiers: int = Field(default=3, ge=1)
    status: BroadcastStatus = BroadcastStatus.PENDING

    partners_notified: int = Field(default=0, ge=0)
    partners_responded: int = Field(default=0, ge=0)
    responses: tuple[PartnerResponse, ...] = ()

    escalation_history: tuple[EscalationEvent, ...] = ()

    filled_at: datetime | None = None
    filled_by: FilledBy | None = None

    version: int = Field(default=1, ge=1)

    @field_validator("broadcasted_at", "response_deadline", "auto_escalate_at")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        return ensure_aware(value) if value is not None else None

    @model_validator(mode="after")
    def _check_tier_bounds(self) -> BroadcastRecord:
        if not 1 <= self.current_tier <= self.max_tiers:
            raise ValueError(
                f"current_tier ({self.current_tier}) must be within [1, {self.max_tiers}]"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def total_candidates_submitted(self) -> int:
        return sum(r.candidates_submitted for r in self.responses)

    def next_version(self, **changes: Any) -> BroadcastRecord:
        """Return a copy with ``changes`` applied and the version bumped."""
        return self.model_copy(update={**changes, "version": self.version + 1})

    def with_event(self, event: EscalationEvent, **changes: Any) -> BroadcastRecord:
        return self.next_version(
            escalation_history=(*self.escalation_history, event), **changes
        )
