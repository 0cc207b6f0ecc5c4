# clubhouse/models.py
from sqlalchemy import Column, Integer, String, DateTime, Date, ForeignKey, Enum, Float, Text, Boolean, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from clubhouse.database import Base


class IdentityCategory(str, enum.Enum):
    standard = "standard"
    member = "member"
    special = "special"


class IdentityType(Base):
    __tablename__ = "identity_types"
    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(40), unique=True, index=True, nullable=False)
    name = Column(String(120), nullable=False)
    category = Column(String(20), default=IdentityCategory.standard.value)
    member_level = Column(Integer, nullable=True)
    status = Column(String(20), default="active")  # active | inactive
    sort_order = Column(Integer, default=0)
    color = Column(String(20), nullable=True)  # display only
    is_default = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class RateSheet(Base):
    """
    One (day_type, time_slot) price row of the rate matrix.

    `prices` / `add_on_prices` map identity codes to amounts.
    `reduced_play_policy` is {"type": proportional|fixed_rate|no_refund, "rate": float, "fixed_prices": {...}}.
    """
    __tablename__ = "rate_sheets"
    id = Column(Integer, primary_key=True, index=True)
    rule_name = Column(String(120), nullable=True)
    day_type = Column(String(20), nullable=False, index=True)    # weekday | weekend | holiday
    time_slot = Column(String(20), nullable=False, index=True)   # morning | afternoon | twilight
    course_id = Column(String(50), nullable=True, index=True)    # null applies to every course
    holes = Column(Integer, nullable=True)                        # null applies to 9 and 18
    prices = Column(JSON, nullable=False, default=dict)
    add_on_prices = Column(JSON, nullable=True)
    reduced_play_policy = Column(JSON, nullable=True)
    caddy_fee = Column(Float, default=0.0)
    cart_fee = Column(Float, default=0.0)
    insurance_fee = Column(Float, default=0.0)
    valid_from = Column(Date, nullable=True)
    valid_to = Column(Date, nullable=True)
    priority = Column(Integer, default=0, index=True)
    status = Column(String(20), default="active", index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class TeamPricing(Base):
    __tablename__ = "team_pricing"
    id = Column(Integer, primary_key=True, index=True)
    enabled = Column(Boolean, default=True)
    tiers = Column(JSON, nullable=False, default=list)  # [{min_players, max_players, discount_rate, label}]
    floor_price_rate = Column(Float, default=0.6)
    updated_at = Column(DateTime, default=datetime.utcnow)


class SpecialDate(Base):
    __tablename__ = "special_dates"
    id = Column(Integer, primary_key=True, index=True)
    date = Column(Date, unique=True, index=True, nullable=False)
    date_type = Column(String(20), default="holiday")       # holiday | member_day | tournament | closed
    pricing_override = Column(String(20), nullable=True)    # day type to price this date as
    date_name = Column(String(120), nullable=True)
    is_closed = Column(Boolean, default=False)


class BookingStatus(str, enum.Enum):
    pending = "pending"
    confirmed = "confirmed"
    checked_in = "checked_in"
    completed = "completed"
    cancelled = "cancelled"


class Booking(Base):
    __tablename__ = "bookings"
    id = Column(Integer, primary_key=True, index=True)
    order_no = Column(String(30), unique=True, index=True, nullable=False)
    date = Column(Date, nullable=False, index=True)
    tee_time = Column(String(5), nullable=False)  # HH:MM
    course_id = Column(String(50), nullable=True)
    holes = Column(Integer, default=18)
    players = Column(JSON, nullable=False, default=list)  # [{name, identity_code}]
    team_size = Column(Integer, nullable=True)
    need_caddy = Column(Boolean, default=False)
    need_cart = Column(Boolean, default=False)
    status = Column(Enum(BookingStatus, name="booking_status"), default=BookingStatus.pending, index=True)
    status_history = Column(JSON, nullable=False, default=list)
    # Bound at check-in, changed only through change_resources: caddy_id, cart_id, lockers, rooms,
    # bag_storage, parking_id, temp_card_id, folio_id
    assigned_resources = Column(JSON, nullable=True)
    # Cache of folio totals for tee sheet display.
    total_fee = Column(Float, default=0.0)
    paid_fee = Column(Float, default=0.0)
    pending_fee = Column(Float, default=0.0)
    holes_played = Column(Integer, nullable=True)
    note = Column(Text, nullable=True)
    created_by = Column(String(120), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    folios = relationship("Folio", back_populates="booking")


class FolioStatus(str, enum.Enum):
    open = "open"
    settled = "settled"
    void = "void"


class Folio(Base):
    __tablename__ = "folios"
    id = Column(Integer, primary_key=True, index=True)
    folio_no = Column(String(30), unique=True, index=True, nullable=False)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True, index=True)
    guest_name = Column(String(200), nullable=True)
    status = Column(Enum(FolioStatus, name="folio_status"), default=FolioStatus.open, index=True)
    forced = Column(Boolean, default=False)
    settled_at = Column(DateTime, nullable=True)
    settled_by = Column(String(120), nullable=True)
    voided_at = Column(DateTime, nullable=True)
    void_reason = Column(String(255), nullable=True)
    opened_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    booking = relationship("Booking", back_populates="folios")
    charges = relationship(
        "FolioCharge", back_populates="folio", order_by="FolioCharge.id", cascade="all, delete-orphan"
    )
    payments = relationship(
        "FolioPayment", back_populates="folio", order_by="FolioPayment.id", cascade="all, delete-orphan"
    )


class ChargeStatus(str, enum.Enum):
    posted = "posted"
    voided = "voided"


class FolioCharge(Base):
    __tablename__ = "folio_charges"
    id = Column(Integer, primary_key=True, index=True)
    folio_id = Column(Integer, ForeignKey("folios.id"), nullable=False, index=True)
    charge_type = Column(String(30), nullable=False)  # green_fee | add_on | reduced_play | caddy_fee | cart_fee | insurance | pos | other
    charge_source = Column(String(50), nullable=True)
    description = Column(String(255), nullable=True)
    amount = Column(Float, nullable=False, default=0.0)
    player_name = Column(String(200), nullable=True)
    identity_code = Column(String(40), nullable=True)
    warning = Column(String(50), nullable=True)  # e.g. rate_not_configured
    status = Column(Enum(ChargeStatus, name="charge_status"), default=ChargeStatus.posted)
    void_reason = Column(String(255), nullable=True)
    voided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    folio = relationship("Folio", back_populates="charges")


class FolioPayment(Base):
    __tablename__ = "folio_payments"
    id = Column(Integer, primary_key=True, index=True)
    folio_id = Column(Integer, ForeignKey("folios.id"), nullable=False, index=True)
    kind = Column(String(20), default="payment")  # payment | refund
    amount = Column(Float, nullable=False)  # refunds are stored negative
    pay_method = Column(String(30), default="cash")
    reference_no = Column(String(40), nullable=True)
    note = Column(Text, nullable=True)
    paid_at = Column(DateTime, default=datetime.utcnow)

    folio = relationship("Folio", back_populates="payments")


class ResourceType(str, enum.Enum):
    caddy = "caddy"
    cart = "cart"
    locker = "locker"
    room = "room"
    temp_card = "temp_card"
    bag_slot = "bag_slot"
    parking = "parking"


class Resource(Base):
    __tablename__ = "resources"
    id = Column(Integer, primary_key=True, index=True)
    resource_type = Column(Enum(ResourceType, name="resource_type"), nullable=False, index=True)
    code = Column(String(50), nullable=False)  # locker no, cart no, room no ...
    name = Column(String(120), nullable=True)
    status = Column(String(20), default="available", index=True)  # available | occupied | maintenance
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class AuditEvent(Base):
    __tablename__ = "audit_events"
    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String(50), nullable=False, index=True)
    booking_id = Column(Integer, nullable=True, index=True)
    folio_id = Column(Integer, nullable=True, index=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class ClubSetting(Base):
    __tablename__ = "club_settings"
    key = Column(String(200), primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow)
