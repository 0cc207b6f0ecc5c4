from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from clubhouse import models
from clubhouse.club_settings import get_default_floor_price_rate, get_time_slot_hours
from clubhouse.rates import (
    DAY_TYPES,
    TIME_SLOTS,
    RateCell,
    RateConfig,
    ReducedPlayPolicy,
    TeamPricingPolicy,
    TeamTier,
    day_type_for_date,
    determine_time_slot,
    normalize_identity_code,
    select_active_rate_cell,
)


DEFAULT_IDENTITIES = [
    {"code": "walkin", "name": "Walk-in", "category": "standard", "member_level": None, "sort_order": 10, "color": "#6b7280"},
    {"code": "guest", "name": "Guest", "category": "standard", "member_level": None, "sort_order": 20, "color": "#3b82f6"},
    {"code": "member_1", "name": "Member", "category": "member", "member_level": 1, "sort_order": 30, "color": "#10b981"},
    {"code": "member_2", "name": "Gold Member", "category": "member", "member_level": 2, "sort_order": 40, "color": "#eab308"},
    {"code": "member_3", "name": "Diamond Member", "category": "member", "member_level": 3, "sort_order": 50, "color": "#8b5cf6"},
    {"code": "member_4", "name": "Platinum Member", "category": "member", "member_level": 4, "sort_order": 60, "color": "#f43f5e"},
    {"code": "junior", "name": "Junior", "category": "special", "member_level": None, "sort_order": 70, "color": "#06b6d4"},
    {"code": "senior", "name": "Senior", "category": "special", "member_level": None, "sort_order": 80, "color": "#f97316"},
    {"code": "coach", "name": "Coach", "category": "special", "member_level": None, "sort_order": 90, "color": "#14b8a6"},
    {"code": "courtesy", "name": "Courtesy", "category": "special", "member_level": None, "sort_order": 100, "color": "#a855f7"},
    {"code": "staff", "name": "Staff", "category": "special", "member_level": None, "sort_order": 110, "color": "#64748b"},
]


@dataclass(frozen=True)
class DayInfo:
    day_type: str
    date_name: Optional[str] = None
    is_closed: bool = False


def determine_day_type(db: Session, on_date: date) -> DayInfo:
    special = db.query(models.SpecialDate).filter(models.SpecialDate.date == on_date).first()
    if special:
        return DayInfo(
            day_type=special.pricing_override or special.date_type or "holiday",
            date_name=special.date_name,
            is_closed=bool(special.is_closed),
        )
    return DayInfo(day_type=day_type_for_date(on_date))


def time_slot_for(db: Session, tee_time: Optional[str]) -> str:
    hours = get_time_slot_hours(db)
    return determine_time_slot(tee_time, hours["afternoon"], hours["twilight"])


def get_active_identity_types(db: Session) -> List[models.IdentityType]:
    return (
        db.query(models.IdentityType)
        .filter(models.IdentityType.status == "active")
        .order_by(models.IdentityType.sort_order, models.IdentityType.id)
        .all()
    )


def seed_default_identity_types(db: Session) -> int:
    """Insert the default identity types that are missing. Returns how many were created."""
    existing = {code for (code,) in db.query(models.IdentityType.code).all()}
    created = 0
    for row in DEFAULT_IDENTITIES:
        if row["code"] in existing:
            continue
        db.add(models.IdentityType(status="active", is_default=True, **row))
        created += 1
    if created:
        db.commit()
    print(f"[PRICING] Seeded {created} identity types")
    return created


def _price_map(raw) -> dict:
    out = {}
    for key, value in (raw or {}).items():
        code = normalize_identity_code(key)
        if not code or value is None:
            continue
        out[code] = float(value)
    return out


def rate_cell_from_sheet(sheet: models.RateSheet) -> RateCell:
    return RateCell(
        id=sheet.id,
        name=sheet.rule_name,
        day_type=sheet.day_type,
        time_slot=sheet.time_slot,
        prices=_price_map(sheet.prices),
        add_on_prices=_price_map(sheet.add_on_prices),
        reduced_play_policy=ReducedPlayPolicy.from_dict(sheet.reduced_play_policy),
        caddy_fee=float(sheet.caddy_fee or 0.0),
        cart_fee=float(sheet.cart_fee or 0.0),
        insurance_fee=float(sheet.insurance_fee or 0.0),
        valid_from=sheet.valid_from,
        valid_to=sheet.valid_to,
        priority=int(sheet.priority or 0),
        status=sheet.status or "active",
        course_id=sheet.course_id,
        holes=sheet.holes,
    )


def team_policy_from_row(row: Optional[models.TeamPricing], default_floor: float = 0.6) -> TeamPricingPolicy:
    if row is None:
        return TeamPricingPolicy(tiers=(), floor_price_rate=default_floor, enabled=False)
    tiers = tuple(
        TeamTier(
            min_players=int(t["min_players"]),
            max_players=int(t["max_players"]) if t.get("max_players") is not None else None,
            discount_rate=float(t["discount_rate"]),
            label=str(t.get("label") or ""),
        )
        for t in sorted(row.tiers or [], key=lambda t: int(t.get("min_players") or 0))
    )
    return TeamPricingPolicy(
        tiers=tiers,
        floor_price_rate=float(row.floor_price_rate or default_floor),
        enabled=bool(row.enabled),
    )


def list_rate_cells(db: Session, day_type: Optional[str] = None, time_slot: Optional[str] = None) -> List[RateCell]:
    query = db.query(models.RateSheet).filter(models.RateSheet.status == "active")
    if day_type:
        query = query.filter(models.RateSheet.day_type == day_type)
    if time_slot:
        query = query.filter(models.RateSheet.time_slot == time_slot)
    return [rate_cell_from_sheet(s) for s in query.order_by(models.RateSheet.priority.desc()).all()]


def get_rate_cell(db: Session, day_type: str, time_slot: str, on_date: date, course_id=None, holes=None) -> Optional[RateCell]:
    return select_active_rate_cell(list_rate_cells(db, day_type, time_slot), day_type, time_slot, on_date, course_id, holes)


def get_team_pricing_policy(db: Session) -> TeamPricingPolicy:
    row = db.query(models.TeamPricing).order_by(models.TeamPricing.id).first()
    return team_policy_from_row(row, get_default_floor_price_rate(db))


def save_team_pricing_policy(db: Session, policy: TeamPricingPolicy) -> models.TeamPricing:
    policy.validate()
    row = db.query(models.TeamPricing).order_by(models.TeamPricing.id).first()
    if row is None:
        row = models.TeamPricing()
        db.add(row)
    row.enabled = bool(policy.enabled)
    row.floor_price_rate = float(policy.floor_price_rate)
    row.tiers = [
        {
            "min_players": t.min_players,
            "max_players": t.max_players,
            "discount_rate": t.discount_rate,
            "label": t.label,
        }
        for t in policy.tiers
    ]
    row.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(row)
    print(f"[PRICING] Team pricing updated: {len(policy.tiers)} tiers, floor={policy.floor_price_rate}")
    return row


def load_rate_config(db: Session) -> RateConfig:
    """Snapshot the live configuration; later edits never touch this object."""
    return RateConfig(
        rate_cells=tuple(list_rate_cells(db)),
        team_policy=get_team_pricing_policy(db),
        active_identities=frozenset(i.code for i in get_active_identity_types(db)),
    )


def build_matrix(cells: List[RateCell], on_date: date) -> dict:
    matrix = {}
    for day_type in DAY_TYPES:
        matrix[day_type] = {}
        for time_slot in TIME_SLOTS:
            cell = select_active_rate_cell(cells, day_type, time_slot, on_date)
            matrix[day_type][time_slot] = cell.id if cell else None
    return matrix
