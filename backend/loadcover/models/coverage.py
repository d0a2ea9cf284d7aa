"""Domain models for the load-coverage automation pipeline."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, Field, model_validator

from loadcover.core.clock import ensure_utc, utc_now

UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


class LoadStatus(str, Enum):
    """Lifecycle status for a load."""

    POSTED = "posted"
    TENDERED = "tendered"
    BOOKED = "booked"
    CONFIRMED = "confirmed"
    DISPATCHED = "dispatched"
    AT_PICKUP = "at_pickup"
    LOADED = "loaded"
    IN_TRANSIT = "in_transit"
    AT_DELIVERY = "at_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Canonical forward ordering used when a carrier reply may advance a load.
LOAD_STATUS_ORDER: tuple[LoadStatus, ...] = (
    LoadStatus.POSTED,
    LoadStatus.TENDERED,
    LoadStatus.BOOKED,
    LoadStatus.CONFIRMED,
    LoadStatus.DISPATCHED,
    LoadStatus.AT_PICKUP,
    LoadStatus.LOADED,
    LoadStatus.IN_TRANSIT,
    LoadStatus.AT_DELIVERY,
    LoadStatus.DELIVERED,
)

UNASSIGNED_STATUSES = frozenset({LoadStatus.POSTED, LoadStatus.TENDERED})

ACTIVE_LOAD_STATUSES: tuple[LoadStatus, ...] = (
    LoadStatus.POSTED,
    LoadStatus.TENDERED,
    LoadStatus.BOOKED,
    LoadStatus.CONFIRMED,
    LoadStatus.DISPATCHED,
    LoadStatus.AT_PICKUP,
    LoadStatus.LOADED,
    LoadStatus.IN_TRANSIT,
    LoadStatus.AT_DELIVERY,
)


# Statuses on which a carrier is considered busy with a load.
COMMITTED_LOAD_STATUSES: tuple[LoadStatus, ...] = (
    LoadStatus.BOOKED,
    LoadStatus.CONFIRMED,
    LoadStatus.DISPATCHED,
    LoadStatus.AT_PICKUP,
    LoadStatus.LOADED,
    LoadStatus.IN_TRANSIT,
    LoadStatus.AT_DELIVERY,
)

FINISHED_LOAD_STATUSES: tuple[LoadStatus, ...] = (LoadStatus.DELIVERED, LoadStatus.COMPLETED)


# Pickup is confirmed once the load is dispatched or further along.
PICKUP_CONFIRMED_STATUSES = frozenset(
    {
        LoadStatus.DISPATCHED,
        LoadStatus.AT_PICKUP,
        LoadStatus.LOADED,
        LoadStatus.IN_TRANSIT,
        LoadStatus.AT_DELIVERY,
        LoadStatus.DELIVERED,
        LoadStatus.COMPLETED,
    }
)


class LoyaltyTier(str, Enum):
    PLATINUM = "platinum"
    GOLD = "gold"
    SILVER = "silver"
    BRONZE = "bronze"
    GUEST = "guest"
    NONE = "none"


class CarrierSource(str, Enum):
    """Channel a carrier profile came from."""

    PLATFORM = "platform"
    IMPORTED = "imported"


class OnboardingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class CarrierStatus(str, Enum):
    NEW = "new"
    APPROVED = "approved"
    SUSPENDED = "suspended"
    DEACTIVATED = "deactivated"


class CheckCallType(str, Enum):
    PRE_PICKUP = "pre_pickup"
    PICKUP_30MIN = "pickup_30min"
    PICKUP_CONFIRM = "pickup_confirm"
    CARRIER_CHECK_AM = "carrier_check_am"
    TRANSIT_AM = "transit_am"
    CARRIER_CHECK_PM = "carrier_check_pm"
    TRANSIT_PM = "transit_pm"
    TRANSIT_DAILY = "transit_daily"
    PRE_DELIVERY = "pre_delivery"
    POD_REQUEST_30MIN = "pod_request_30min"
    POD_REQUEST_1HR = "pod_request_1hr"


class CheckCallStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    RESPONDED = "responded"
    ESCALATED = "escalated"


class RiskLevel(str, Enum):
    GREEN = "GREEN"
    AMBER = "AMBER"
    RED = "RED"


class FallOffStatus(str, Enum):
    ACTIVE = "active"
    RECOVERED = "recovered"


class NotificationType(str, Enum):
    LOAD_UPDATE = "load_update"
    LOAD_TENDERED = "load_tendered"
    POD_REQUEST = "pod_request"
    GENERAL = "general"


class AlertPriority(str, Enum):
    INFO = "info"
    HIGH = "high"
    URGENT = "urgent"


class Lane(BaseModel):
    """Origin-state / destination-state pair."""

    origin_state: str
    dest_state: str


class Load(BaseModel):
    """Shipment order as seen by the coverage pipeline."""

    load_id: str
    reference_number: str
    status: LoadStatus = LoadStatus.POSTED
    origin_city: str
    origin_state: str
    dest_city: str
    dest_state: str
    equipment_type: str
    pickup_at: UtcDatetime
    delivery_at: UtcDatetime
    carrier_id: Optional[str] = None
    owner_id: str
    customer_id: Optional[str] = None
    customer_rating: int = Field(default=0, ge=0, le=5)
    customer_rate: float = Field(default=0.0, ge=0)
    carrier_rate: Optional[float] = Field(default=None, ge=0)
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    truck_number: Optional[str] = None
    trailer_number: Optional[str] = None
    created_at: UtcDatetime = Field(default_factory=utc_now)
    status_updated_at: Optional[UtcDatetime] = None

    @model_validator(mode="after")
    def _carrier_requires_booking(self) -> "Load":
        if self.carrier_id and self.status in UNASSIGNED_STATUSES:
            raise ValueError(
                f"Load {self.load_id} has carrier {self.carrier_id} but status '{self.status.value}'"
            )
        return self

    @property
    def origin_label(self) -> str:
        return f"{self.origin_city}, {self.origin_state}"

    @property
    def destination_label(self) -> str:
        return f"{self.dest_city}, {self.dest_state}"

    @property
    def offer_rate(self) -> float:
        return self.carrier_rate or self.customer_rate


class CarrierCandidate(BaseModel):
    """Carrier profile snapshot used for scoring."""

    carrier_id: str
    company: str
    contact_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    mc_number: Optional[str] = None
    dot_number: Optional[str] = None
    equipment_types: List[str] = Field(default_factory=list)
    operating_regions: List[str] = Field(default_factory=list)
    preferred_lanes: List[Lane] = Field(default_factory=list)
    tier: LoyaltyTier = LoyaltyTier.NONE
    source: CarrierSource = CarrierSource.PLATFORM
    insurance_expiry: Optional[UtcDatetime] = None
    onboarding_status: OnboardingStatus = OnboardingStatus.PENDING
    status: CarrierStatus = CarrierStatus.NEW
    performance_score: Optional[float] = Field(default=None, ge=0, le=100)
    notes: str = ""


class StaffMember(BaseModel):
    """Owning staff member (account executive) for loads."""

    user_id: str
    email: str
    first_name: str = ""


class ScoreBreakdown(BaseModel):
    lane: int
    rate: int
    loyalty: int
    availability: int
    source: int
    details: Dict[str, str] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.lane + self.rate + self.loyalty + self.availability + self.source


class MatchCandidate(BaseModel):
    """One ranked carrier returned by a matching run."""

    carrier_id: str
    company: str
    contact_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    tier: LoyaltyTier
    source: CarrierSource
    rank: int
    total_score: int = Field(ge=0, le=100)
    scores: ScoreBreakdown


class MatchResult(BaseModel):
    """Persisted record of one scored candidate in one matching run."""

    result_id: str
    run_id: str
    load_id: str
    carrier_id: str
    total_score: int = Field(ge=0, le=100)
    lane_score: int
    rate_score: int
    loyalty_score: int
    availability_score: int
    source_score: int
    breakdown: Dict[str, str] = Field(default_factory=dict)
    rank: int
    was_assigned: bool = False
    was_completed: bool = False
    created_at: UtcDatetime = Field(default_factory=utc_now)


class MatchRun(BaseModel):
    load_id: str
    run_id: str
    matches: List[MatchCandidate] = Field(default_factory=list)
    total_candidates: int = 0
    filtered: int = 0
    excluded: int = 0
    skipped: int = 0


class CheckCallSchedule(BaseModel):
    """One planned carrier touchpoint."""

    schedule_id: str
    load_id: str
    call_type: CheckCallType
    scheduled_at: UtcDatetime
    status: CheckCallStatus = CheckCallStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    carrier_phone: Optional[str] = None
    sent_at: Optional[UtcDatetime] = None
    responded_at: Optional[UtcDatetime] = None
    escalated_at: Optional[UtcDatetime] = None
    response_code: Optional[str] = None
    response_label: Optional[str] = None


class CheckCallReply(BaseModel):
    """Outcome of an inbound check-call reply that matched a touchpoint."""

    load_id: str
    schedule_id: str
    status: LoadStatus
    label: str
    load_advanced: bool = False


class CheckCallSweepResult(BaseModel):
    sent: int = 0
    send_skipped: int = 0
    retried: int = 0
    escalated: int = 0
    failed: int = 0


class RiskFactor(BaseModel):
    factor: str
    points: int
    description: str


class RiskAssessment(BaseModel):
    load_id: str
    score: int
    level: RiskLevel
    factors: List[RiskFactor] = Field(default_factory=list)
    recovery_candidate: bool = False

    @property
    def has_unassigned_factor(self) -> bool:
        return any(f.factor.startswith("UNASSIGNED") for f in self.factors)


class RiskLog(BaseModel):
    log_id: str
    load_id: str
    score: int
    level: RiskLevel
    factors: List[RiskFactor] = Field(default_factory=list)
    notified: bool = False
    created_at: UtcDatetime = Field(default_factory=utc_now)


class RiskSweepResult(BaseModel):
    scanned: int = 0
    green: int = 0
    amber: int = 0
    red: int = 0
    failed: int = 0
    recovery_candidates: List[str] = Field(default_factory=list)


class FallOffEvent(BaseModel):
    """One carrier fall-off recovery episode."""

    event_id: str
    load_id: str
    original_carrier_id: Optional[str] = None
    reason: str = "Carrier cancelled/removed"
    status: FallOffStatus = FallOffStatus.ACTIVE
    backups_sent: int = 0
    backups_accepted: int = 0
    contacted_carrier_ids: List[str] = Field(default_factory=list)
    new_carrier_id: Optional[str] = None
    recovery_method: Optional[str] = None
    recovery_minutes: Optional[float] = None
    created_at: UtcDatetime = Field(default_factory=utc_now)
    resolved_at: Optional[UtcDatetime] = None


class SchedulerLock(BaseModel):
    job_name: str
    holder_id: str
    acquired_at: UtcDatetime
    expires_at: UtcDatetime


class Notification(BaseModel):
    """In-app alert; doubles as the alert dedup ledger."""

    notification_id: str
    user_id: str
    load_id: Optional[str] = None
    notif_type: NotificationType = NotificationType.LOAD_UPDATE
    priority: AlertPriority = AlertPriority.INFO
    title: str
    message: str
    action_url: Optional[str] = None
    is_read: bool = False
    created_at: UtcDatetime = Field(default_factory=utc_now)


class CheckCallReplyRequest(BaseModel):
    from_phone: str = Field(min_length=1)
    text: str


class FallOffRequest(BaseModel):
    reason: Optional[str] = None


class FallOffAcceptanceRequest(BaseModel):
    load_id: str
    carrier_id: str


class JobToggleRequest(BaseModel):
    enabled: bool
