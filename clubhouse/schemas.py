# clubhouse/schemas.py

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict
from datetime import datetime, date

from clubhouse.rates import DAY_TYPES, TIME_SLOTS

# ------------------------------------------------------------------
# IDENTITY TYPES
# ------------------------------------------------------------------

class IdentityTypeOut(BaseModel):
    id: int
    code: str
    name: str
    category: str
    member_level: Optional[int] = None
    status: str
    sort_order: int
    color: Optional[str] = None

    model_config = {"from_attributes": True}


# ------------------------------------------------------------------
# RATE SHEETS / TEAM PRICING
# ------------------------------------------------------------------

class ReducedPlayPolicyIn(BaseModel):
    type: str = "proportional"  # proportional | fixed_rate | no_refund
    rate: Optional[float] = None
    fixed_prices: Dict[str, float] = {}


class RateSheetCreate(BaseModel):
    rule_name: Optional[str] = None
    day_type: str
    time_slot: str
    course_id: Optional[str] = None
    holes: Optional[int] = None
    prices: Dict[str, float]
    add_on_prices: Optional[Dict[str, float]] = None
    reduced_play_policy: Optional[ReducedPlayPolicyIn] = None
    caddy_fee: float = 0.0
    cart_fee: float = 0.0
    insurance_fee: float = 0.0
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None
    priority: int = 0
    status: str = "active"

    @field_validator("day_type")
    @classmethod
    def _day_type(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in DAY_TYPES:
            raise ValueError("day_type must be weekday, weekend or holiday")
        return v

    @field_validator("time_slot")
    @classmethod
    def _time_slot(cls, v: str) -> str:
        v = (v or "").strip().lower()
        if v not in TIME_SLOTS:
            raise ValueError("time_slot must be morning, afternoon or twilight")
        return v


class RateSheetOut(BaseModel):
    id: int
    rule_name: Optional[str] = None
    day_type: str
    time_slot: str
    course_id: Optional[str] = None
    holes: Optional[int] = None
    prices: Dict[str, float]
    add_on_prices: Optional[Dict[str, float]] = None
    reduced_play_policy: Optional[dict] = None
    caddy_fee: float
    cart_fee: float
    insurance_fee: float
    valid_from: Optional[date] = None
    valid_to: Optional[date] = None
    priority: int
    status: str

    model_config = {"from_attributes": True}


class TeamTierIn(BaseModel):
    min_players: int
    max_players: Optional[int] = None
    discount_rate: float
    label: str = ""


class TeamPolicyIn(BaseModel):
    enabled: bool = True
    tiers: List[TeamTierIn] = []
    floor_price_rate: float = 0.6


class SpecialDateCreate(BaseModel):
    date: date
    date_type: str = "holiday"
    pricing_override: Optional[str] = None
    date_name: Optional[str] = None
    is_closed: bool = False


# ------------------------------------------------------------------
# BOOKINGS
# ------------------------------------------------------------------

class PlayerIn(BaseModel):
    name: str
    identity_code: str


def _check_tee_time(v: str) -> str:
    raw = (v or "").strip()
    parts = raw.split(":")
    if len(parts) != 2 or not all(p.isdigit() for p in parts):
        raise ValueError("tee_time must be HH:MM")
    hh, mm = int(parts[0]), int(parts[1])
    if hh < 0 or hh > 23 or mm < 0 or mm > 59:
        raise ValueError("tee_time must be HH:MM")
    return f"{hh:02d}:{mm:02d}"


class BookingCreate(BaseModel):
    date: date
    tee_time: str
    course_id: Optional[str] = None
    holes: int = 18
    players: List[PlayerIn] = Field(..., min_length=1, max_length=4)
    # Size of the whole group when several bookings travel together; drives team tiers.
    team_size: Optional[int] = Field(None, ge=1)
    need_caddy: bool = False
    need_cart: bool = False
    note: Optional[str] = None
    created_by: Optional[str] = None

    @field_validator("tee_time")
    @classmethod
    def _tee_time(cls, v: str) -> str:
        return _check_tee_time(v)

    @field_validator("holes")
    @classmethod
    def _holes(cls, v: int) -> int:
        if v not in (9, 18):
            raise ValueError("holes must be 9 or 18")
        return v


class BookingOut(BaseModel):
    id: int
    order_no: str
    date: date
    tee_time: str
    course_id: Optional[str] = None
    holes: int
    players: List[dict]
    team_size: Optional[int] = None
    need_caddy: bool
    need_cart: bool
    status: str
    status_history: List[dict] = []
    assigned_resources: Optional[dict] = None
    total_fee: float
    paid_fee: float
    pending_fee: float
    holes_played: Optional[int] = None
    note: Optional[str] = None
    version: int
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class TransitionRequest(BaseModel):
    expected_version: Optional[int] = None
    operator: Optional[str] = None
    reason: Optional[str] = None


class CheckInResources(BaseModel):
    caddy_id: Optional[int] = None
    cart_id: Optional[int] = None
    lockers: List[int] = []
    rooms: List[int] = []
    bag_storage: List[int] = []
    parking_id: Optional[int] = None
    temp_card_id: Optional[int] = None
    expected_version: Optional[int] = None
    operator: Optional[str] = None


class ResourceChange(BaseModel):
    """
    Only the slots present in the request change. An explicit null unbinds a
    single resource; a list replaces the slot's current list.
    """
    caddy_id: Optional[int] = None
    cart_id: Optional[int] = None
    lockers: Optional[List[int]] = None
    rooms: Optional[List[int]] = None
    bag_storage: Optional[List[int]] = None
    parking_id: Optional[int] = None
    temp_card_id: Optional[int] = None
    expected_version: Optional[int] = None
    operator: Optional[str] = None


class HolesPlayedRequest(BaseModel):
    holes_played: int = Field(..., ge=0, le=72)
    operator: Optional[str] = None


class QuoteRequest(BaseModel):
    date: date
    tee_time: str
    course_id: Optional[str] = None
    holes: int = 18
    players: List[PlayerIn] = Field(..., min_length=1)
    team_size: Optional[int] = Field(None, ge=1)
    need_caddy: bool = False
    need_cart: bool = False

    @field_validator("tee_time")
    @classmethod
    def _tee_time(cls, v: str) -> str:
        return _check_tee_time(v)


# ------------------------------------------------------------------
# FOLIOS
# ------------------------------------------------------------------

class FolioOpen(BaseModel):
    booking_id: Optional[int] = None
    guest_name: str = ""


class ChargeCreate(BaseModel):
    charge_type: str
    amount: float
    charge_source: Optional[str] = None
    description: Optional[str] = None


class ChargeBatch(BaseModel):
    items: List[ChargeCreate]


class VoidRequest(BaseModel):
    reason: Optional[str] = None


class PaymentCreate(BaseModel):
    amount: float
    pay_method: str = "cash"
    note: Optional[str] = None


class SettleRequest(BaseModel):
    force: bool = False
    operator: Optional[str] = None


class FolioStatsOut(BaseModel):
    open_count: int
    open_balance: float
    settled_today_count: int
    settled_today_amount: float


class ChargeOut(BaseModel):
    id: int
    charge_type: str
    charge_source: Optional[str] = None
    description: Optional[str] = None
    amount: float
    player_name: Optional[str] = None
    identity_code: Optional[str] = None
    warning: Optional[str] = None
    status: str
    void_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PaymentOut(BaseModel):
    id: int
    kind: str
    amount: float
    pay_method: str
    reference_no: Optional[str] = None
    note: Optional[str] = None
    paid_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class FolioOut(BaseModel):
    id: int
    folio_no: str
    booking_id: Optional[int] = None
    guest_name: Optional[str] = None
    status: str
    forced: bool
    settled_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    void_reason: Optional[str] = None
    total_charges: float
    total_payments: float
    balance: float
    credit: float
    charges: List[ChargeOut] = []
    payments: List[PaymentOut] = []


# ------------------------------------------------------------------
# RESOURCES
# ------------------------------------------------------------------

class ResourceCreate(BaseModel):
    resource_type: str
    code: str
    name: Optional[str] = None


class ResourceOut(BaseModel):
    id: int
    resource_type: str
    code: str
    name: Optional[str] = None
    status: str
    booking_id: Optional[int] = None

    model_config = {"from_attributes": True}
