"""Attribution data models: enums and API schemas shared across services."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class TouchType(str, Enum):
    CLICK = "CLICK"
    IMPRESSION = "IMPRESSION"
    POSTBACK = "POSTBACK"  # intake form submission carrying a code


class AttributionModel(str, Enum):
    FIRST_CLICK = "FIRST_CLICK"
    LAST_CLICK = "LAST_CLICK"
    LINEAR = "LINEAR"
    TIME_DECAY = "TIME_DECAY"
    POSITION = "POSITION"


# Model labels for attribution that did not come from the weighting engine
MODEL_INTAKE_DIRECT = "INTAKE_DIRECT"
MODEL_INTAKE_TOUCH_ONLY = "INTAKE_TOUCH_ONLY"
MODEL_STORED = "STORED"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class AffiliateStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    PAUSED = "PAUSED"
    SUSPENDED = "SUSPENDED"
    INACTIVE = "INACTIVE"


class FailureReason(str, Enum):
    """Why an intake attribution did not (fully) happen.

    Each member is a distinct operational diagnosis. ALREADY_ATTRIBUTED is
    reported together with success=True.
    """
    PATIENT_NOT_FOUND = "PATIENT_NOT_FOUND"
    CODE_NOT_FOUND = "CODE_NOT_FOUND"
    CLINIC_MISMATCH = "CLINIC_MISMATCH"
    CODE_INACTIVE = "CODE_INACTIVE"
    AFFILIATE_INACTIVE = "AFFILIATE_INACTIVE"
    ALREADY_ATTRIBUTED = "ALREADY_ATTRIBUTED"
    DATABASE_ERROR = "DATABASE_ERROR"


class CommissionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    PAID = "PAID"
    REVERSED = "REVERSED"


class CommissionPlanType(str, Enum):
    FLAT = "FLAT"
    PERCENT = "PERCENT"


class CommissionAppliesTo(str, Enum):
    FIRST_PAYMENT_ONLY = "FIRST_PAYMENT_ONLY"
    ALL_PAYMENTS = "ALL_PAYMENTS"


# ── API schemas ──────────────────────────────────────────────────────────────

class TouchIn(BaseModel):
    clinic_id: int
    ref_code: str = Field(min_length=1, max_length=100)
    visitor_fingerprint: Optional[str] = Field(default=None, max_length=64)
    cookie_id: Optional[str] = Field(default=None, max_length=100)
    landing_page: Optional[str] = Field(default=None, max_length=1000)
    referrer_url: Optional[str] = Field(default=None, max_length=2000)
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None


class TouchOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    clinic_id: int
    affiliate_id: Optional[int] = None
    ref_code: str
    touch_type: str
    visitor_fingerprint: Optional[str] = None
    created_at: datetime


class IntakeAttributionIn(BaseModel):
    patient_id: int
    clinic_id: int
    promo_code: str = Field(max_length=100)
    source: str = "intake"


class IntakeReferralIn(BaseModel):
    patient_id: int
    clinic_id: int
    source: str = "intake"
    payload: dict[str, Any]


class ResolveIn(BaseModel):
    clinic_id: int
    visitor_fingerprint: Optional[str] = None
    cookie_id: Optional[str] = None
    is_new_patient: bool = True


class WeightedTouchOut(BaseModel):
    touch_id: int
    affiliate_id: Optional[int] = None
    ref_code: str
    created_at: datetime
    weight: float


class AttributionResultOut(BaseModel):
    affiliate_id: int
    ref_code: str
    touch_id: Optional[int] = None
    model: str
    confidence: str
    weight: float
    all_touches: Optional[list[WeightedTouchOut]] = None


class AttributionOutcomeOut(BaseModel):
    """Structured result contract for intake attribution callers."""
    success: bool
    affiliate_id: Optional[int] = None
    ref_code: Optional[str] = None
    touch_id: Optional[int] = None
    model: Optional[str] = None
    confidence: Optional[str] = None
    weight: Optional[float] = None
    failure_reason: Optional[FailureReason] = None
    failure_message: Optional[str] = None
    touch_created: bool = False
    action: Optional[str] = None  # operator-facing next step


class DailyTrendOut(BaseModel):
    date: str
    conversions: Union[int, str]
    revenue_cents: Optional[int] = None
    commission_cents: Optional[int] = None


class StatusTotalsOut(BaseModel):
    count: int
    amount_cents: int


class CommissionTotalsOut(BaseModel):
    conversions: int
    commission_cents: int


class CommissionStatsOut(BaseModel):
    pending: StatusTotalsOut
    approved: StatusTotalsOut
    paid: StatusTotalsOut
    reversed: StatusTotalsOut
    totals: CommissionTotalsOut
    daily_trends: list[DailyTrendOut]
