# clubhouse/routers/rates.py
from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from clubhouse import models, schemas
from clubhouse.database import get_db
from clubhouse.errors import DayClosed
from clubhouse.rate_store import (
    build_matrix,
    determine_day_type,
    get_team_pricing_policy,
    list_rate_cells,
    load_rate_config,
    save_team_pricing_policy,
    time_slot_for,
)
from clubhouse.rates import TeamPricingPolicy, TeamTier, normalize_identity_code, quote_booking

router = APIRouter(prefix="/rates", tags=["rates"])


def _normalized_prices(raw: Optional[dict]) -> Optional[dict]:
    if raw is None:
        return None
    return {normalize_identity_code(k): float(v) for k, v in raw.items() if normalize_identity_code(k)}


@router.get("/sheets", response_model=List[schemas.RateSheetOut])
def list_sheets(
    day_type: Optional[str] = None,
    time_slot: Optional[str] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
):
    query = db.query(models.RateSheet)
    if day_type:
        query = query.filter(models.RateSheet.day_type == day_type)
    if time_slot:
        query = query.filter(models.RateSheet.time_slot == time_slot)
    if status:
        query = query.filter(models.RateSheet.status == status)
    return query.order_by(models.RateSheet.priority.desc(), models.RateSheet.id).all()


@router.post("/sheets", response_model=schemas.RateSheetOut)
def create_sheet(data: schemas.RateSheetCreate, db: Session = Depends(get_db)):
    sheet = models.RateSheet(
        rule_name=data.rule_name,
        day_type=data.day_type,
        time_slot=data.time_slot,
        course_id=data.course_id,
        holes=data.holes,
        prices=_normalized_prices(data.prices),
        add_on_prices=_normalized_prices(data.add_on_prices),
        reduced_play_policy=data.reduced_play_policy.model_dump() if data.reduced_play_policy else None,
        caddy_fee=data.caddy_fee,
        cart_fee=data.cart_fee,
        insurance_fee=data.insurance_fee,
        valid_from=data.valid_from,
        valid_to=data.valid_to,
        priority=data.priority,
        status=data.status,
        updated_at=datetime.utcnow(),
    )
    db.add(sheet)
    db.commit()
    db.refresh(sheet)
    print(f"[PRICING] Rate sheet {sheet.id} created for {sheet.day_type}/{sheet.time_slot} (priority {sheet.priority})")
    return sheet


@router.get("/matrix")
def rate_matrix(on_date: Optional[date] = Query(None, description="Date used for validity windows"), db: Session = Depends(get_db)):
    """Active rate sheet id per day type x time slot."""
    target = on_date or date.today()
    return {"date": target.isoformat(), "matrix": build_matrix(list_rate_cells(db), target)}


def _policy_payload(policy: TeamPricingPolicy) -> dict:
    return {
        "enabled": policy.enabled,
        "floor_price_rate": policy.floor_price_rate,
        "tiers": [
            {
                "min_players": t.min_players,
                "max_players": t.max_players,
                "discount_rate": t.discount_rate,
                "label": t.label,
            }
            for t in policy.tiers
        ],
    }


@router.get("/team-policy")
def get_team_policy(db: Session = Depends(get_db)):
    return _policy_payload(get_team_pricing_policy(db))


@router.put("/team-policy")
def put_team_policy(data: schemas.TeamPolicyIn, db: Session = Depends(get_db)):
    policy = TeamPricingPolicy(
        tiers=tuple(
            TeamTier(
                min_players=t.min_players,
                max_players=t.max_players,
                discount_rate=t.discount_rate,
                label=t.label,
            )
            for t in data.tiers
        ),
        floor_price_rate=data.floor_price_rate,
        enabled=data.enabled,
    )
    save_team_pricing_policy(db, policy)
    return _policy_payload(get_team_pricing_policy(db))


@router.post("/special-dates")
def mark_special_date(data: schemas.SpecialDateCreate, db: Session = Depends(get_db)):
    row = db.query(models.SpecialDate).filter(models.SpecialDate.date == data.date).first()
    if row is None:
        row = models.SpecialDate(date=data.date)
        db.add(row)
    row.date_type = data.date_type
    row.pricing_override = data.pricing_override
    row.date_name = data.date_name
    row.is_closed = data.is_closed
    db.commit()
    info = determine_day_type(db, data.date)
    return {"date": data.date.isoformat(), "day_type": info.day_type, "date_name": info.date_name, "is_closed": info.is_closed}


@router.post("/quote")
def quote(req: schemas.QuoteRequest, db: Session = Depends(get_db)):
    """
    Price a prospective booking without creating it.
    Unpriced identities come back as 0 with a warning instead of failing.
    """
    day_info = determine_day_type(db, req.date)
    if day_info.is_closed:
        raise DayClosed(f"{req.date.isoformat()} is closed", date=req.date.isoformat())

    time_slot = time_slot_for(db, req.tee_time)
    q = quote_booking(
        load_rate_config(db),
        day_info.day_type,
        time_slot,
        req.date,
        [p.model_dump() for p in req.players],
        holes=req.holes,
        team_size=req.team_size,
        need_caddy=req.need_caddy,
        need_cart=req.need_cart,
        course_id=req.course_id,
    )
    return {
        "day_type": q.day_type,
        "date_name": day_info.date_name,
        "time_slot": q.time_slot,
        "rate_cell_id": q.rate_cell_id,
        "players": [
            {
                "name": p.name,
                "identity_code": p.identity_code,
                "standard_fee": p.standard_fee,
                "green_fee": p.green_fee,
                "warning": p.warning,
            }
            for p in q.players
        ],
        "green_fee_subtotal": q.green_fee_subtotal,
        "green_fee_total": q.green_fee_total,
        "discount": q.discount,
        "team_tier": q.team_tier.label if q.team_tier else None,
        "caddy_fee": q.caddy_fee,
        "cart_fee": q.cart_fee,
        "insurance_fee": q.insurance_fee,
        "total": q.total,
        "has_warnings": q.has_warnings,
    }
