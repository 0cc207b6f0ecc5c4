# clubhouse/booking_flow.py
from __future__ import annotations

import math
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence, Set

from sqlalchemy.orm import Session

from clubhouse import models, schemas
from clubhouse.errors import (
    BookingNotFound,
    DayClosed,
    FolioNotSettled,
    InvalidTransition,
    ResourceUnavailable,
    UnknownIdentity,
    VersionConflict,
)
from clubhouse.events import (
    BOOKING_CANCELLED,
    BOOKING_CHECKED_IN,
    BOOKING_COMPLETED,
    BOOKING_CONFIRMED,
    BOOKING_RESOURCES_CHANGED,
    CHARGE_POSTED,
    CHARGE_VOIDED,
    event_sink,
)
from clubhouse.folio import (
    commit_or_conflict,
    find_open_folio_for_booking,
    get_folio,
    is_settled,
    open_folio,
    post_charge,
    sync_booking_pricing,
    void_charge,
)
from clubhouse.rate_store import determine_day_type, get_active_identity_types, load_rate_config, time_slot_for
from clubhouse.rates import (
    RATE_NOT_CONFIGURED,
    normalize_identity_code,
    quote_booking,
    reduce_price,
    resolve_add_on_price,
    select_active_rate_cell,
)
from clubhouse.resources import ResourceCatalog

S = models.BookingStatus

ALLOWED_TRANSITIONS: Dict[S, Set[S]] = {
    S.pending: {S.confirmed, S.cancelled},
    S.confirmed: {S.checked_in, S.cancelled},
    S.checked_in: {S.completed},
    S.completed: set(),
    S.cancelled: set(),
}

# assigned_resources key -> resource type, single resources first
SINGLE_RESOURCE_SLOTS = {
    "caddy_id": "caddy",
    "cart_id": "cart",
    "parking_id": "parking",
    "temp_card_id": "temp_card",
}
MULTI_RESOURCE_SLOTS = {
    "lockers": "locker",
    "rooms": "room",
    "bag_storage": "bag_slot",
}


def can_transition(current: S, target: S) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def transition(booking: models.Booking, target: S, by: Optional[str] = None, note: Optional[str] = None) -> None:
    current = booking.status or S.pending
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot move booking from {current.value} to {target.value}",
            booking_id=booking.id,
            status=current.value,
            target=target.value,
        )
    history = list(booking.status_history or [])
    history.append({
        "status": target.value,
        "from": current.value,
        "at": datetime.utcnow().isoformat(),
        "by": by or "",
        "note": note or "",
    })
    booking.status_history = history
    booking.status = target
    booking.updated_at = datetime.utcnow()


def get_booking(db: Session, booking_id: int, lock: bool = False) -> models.Booking:
    query = db.query(models.Booking).filter(models.Booking.id == booking_id)
    if lock:
        query = query.with_for_update()
    booking = query.first()
    if not booking:
        raise BookingNotFound("Booking not found", booking_id=booking_id)
    return booking


def _check_version(booking: models.Booking, expected_version: Optional[int]) -> None:
    if expected_version is not None and int(expected_version) != int(booking.version or 0):
        raise VersionConflict(
            "Booking was modified by another request; reload and retry",
            booking_id=booking.id,
            expected_version=expected_version,
            current_version=booking.version,
        )


def generate_order_no(db: Session, on_date: date) -> str:
    prefix = f"ORD{on_date.strftime('%Y%m%d')}"
    count = db.query(models.Booking).filter(models.Booking.order_no.like(f"{prefix}%")).count()
    return f"{prefix}{count + 1:03d}"


def _abort(db: Session):
    db.rollback()


# ------------------------------------------------------------------
# CREATE / CONFIRM / CANCEL
# ------------------------------------------------------------------

def create_booking(db: Session, booking_in: schemas.BookingCreate) -> models.Booking:
    day_info = determine_day_type(db, booking_in.date)
    if day_info.is_closed:
        raise DayClosed(
            f"{booking_in.date.isoformat()} is closed{' (' + day_info.date_name + ')' if day_info.date_name else ''}",
            date=booking_in.date.isoformat(),
        )

    active_codes = {i.code for i in get_active_identity_types(db)}
    players = []
    for p in booking_in.players:
        code = normalize_identity_code(p.identity_code)
        if not code or code not in active_codes:
            raise UnknownIdentity(
                f"Identity '{p.identity_code}' is not an active identity type",
                identity_code=p.identity_code,
            )
        players.append({"name": p.name.strip(), "identity_code": code})

    booking = models.Booking(
        order_no=generate_order_no(db, booking_in.date),
        date=booking_in.date,
        tee_time=booking_in.tee_time,
        course_id=booking_in.course_id,
        holes=booking_in.holes or 18,
        players=players,
        team_size=booking_in.team_size,
        need_caddy=bool(booking_in.need_caddy),
        need_cart=bool(booking_in.need_cart),
        status=S.pending,
        status_history=[{
            "status": S.pending.value,
            "from": None,
            "at": datetime.utcnow().isoformat(),
            "by": booking_in.created_by or "",
            "note": "Booking created",
        }],
        note=booking_in.note,
        created_by=booking_in.created_by,
    )
    db.add(booking)
    db.commit()
    db.refresh(booking)
    print(f"[BOOKING] Created {booking.order_no} ({len(players)} players, {booking.date} {booking.tee_time})")
    return booking


def confirm_booking(db: Session, booking_id: int, by: Optional[str] = None, expected_version: Optional[int] = None) -> models.Booking:
    try:
        booking = get_booking(db, booking_id, lock=True)
        _check_version(booking, expected_version)
        transition(booking, S.confirmed, by=by, note="Confirmed")
        event_sink.emit(db, BOOKING_CONFIRMED, booking_id=booking.id)
        commit_or_conflict(db)
    except Exception:
        _abort(db)
        raise
    db.refresh(booking)
    return booking


def cancel_booking(
    db: Session,
    booking_id: int,
    reason: Optional[str] = None,
    by: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> models.Booking:
    try:
        booking = get_booking(db, booking_id, lock=True)
        _check_version(booking, expected_version)
        transition(booking, S.cancelled, by=by, note=reason or "Cancelled")
        event_sink.emit(db, BOOKING_CANCELLED, booking_id=booking.id, reason=reason or "")
        commit_or_conflict(db)
    except Exception:
        _abort(db)
        raise
    db.refresh(booking)
    print(f"[BOOKING] Cancelled {booking.order_no}: {reason or '-'}")
    return booking


# ------------------------------------------------------------------
# CHECK-IN
# ------------------------------------------------------------------

def _staged_resources(assigned: dict) -> List[tuple]:
    staged = []
    for slot, rtype in SINGLE_RESOURCE_SLOTS.items():
        if assigned.get(slot) is not None:
            staged.append((slot, int(assigned[slot]), rtype))
    for slot, rtype in MULTI_RESOURCE_SLOTS.items():
        for rid in assigned.get(slot) or []:
            staged.append((slot, int(rid), rtype))
    return staged


def _stage_resources(catalog: ResourceCatalog, booking_id: int, staged: Sequence[tuple]) -> None:
    seen = set()
    for _, rid, rtype in staged:
        if rid in seen:
            raise ResourceUnavailable("Resource requested twice in one check-in", resource_id=rid)
        seen.add(rid)
        catalog.check_available(rid, booking_id, rtype)


def _post_initial_charges(db: Session, booking: models.Booking, folio: models.Folio, assigned: dict) -> List[models.FolioCharge]:
    config = load_rate_config(db)
    day_info = determine_day_type(db, booking.date)
    time_slot = time_slot_for(db, booking.tee_time)
    quote = quote_booking(
        config,
        day_info.day_type,
        time_slot,
        booking.date,
        booking.players or [],
        holes=booking.holes or 18,
        team_size=booking.team_size,
        need_caddy=assigned.get("caddy_id") is not None,
        need_cart=assigned.get("cart_id") is not None,
        course_id=booking.course_id,
    )
    if quote.has_warnings:
        flagged = ", ".join(f"{p.name}: {p.warning}" for p in quote.players if p.warning)
        print(f"[PRICING] Booking {booking.order_no} checked in with flagged players ({flagged})")

    label = f" ({quote.team_tier.label})" if quote.team_tier and quote.discount > 0 and quote.team_tier.label else ""
    charges = [
        post_charge(
            folio,
            "green_fee",
            pq.green_fee,
            source="check_in",
            description=f"Green fee - {pq.name}{label}",
            player_name=pq.name,
            identity_code=pq.identity_code,
            warning=pq.warning,
        )
        for pq in quote.players
    ]
    if quote.caddy_fee > 0:
        charges.append(post_charge(folio, "caddy_fee", quote.caddy_fee, source="check_in", description="Caddy fee"))
    if quote.cart_fee > 0:
        charges.append(post_charge(folio, "cart_fee", quote.cart_fee, source="check_in", description="Cart fee"))
    if quote.insurance_fee > 0:
        charges.append(post_charge(folio, "insurance", quote.insurance_fee, source="check_in", description="Insurance"))
    return charges


def check_in_booking(
    db: Session,
    booking_id: int,
    resources: Optional[schemas.CheckInResources] = None,
    by: Optional[str] = None,
) -> models.Booking:
    resources = resources or schemas.CheckInResources()
    try:
        booking = get_booking(db, booking_id, lock=True)
        _check_version(booking, resources.expected_version)
        if booking.status != S.confirmed:
            raise InvalidTransition(
                f"Only confirmed bookings can be checked in (status is {booking.status.value})",
                booking_id=booking.id,
                status=booking.status.value,
            )

        catalog = ResourceCatalog(db)
        staged = _staged_resources(resources.model_dump())
        # Verify everything before reserving anything.
        _stage_resources(catalog, booking.id, staged)
        for _, rid, _ in staged:
            catalog.reserve(rid, booking.id)

        assigned = {slot: None for slot in SINGLE_RESOURCE_SLOTS}
        assigned.update({slot: [] for slot in MULTI_RESOURCE_SLOTS})
        for slot, rid, _ in staged:
            if slot in MULTI_RESOURCE_SLOTS:
                assigned[slot].append(rid)
            else:
                assigned[slot] = rid

        folio = find_open_folio_for_booking(db, booking.id)
        if folio is None:
            guest = (booking.players or [{}])[0].get("name", "")
            folio = open_folio(db, booking_id=booking.id, guest_name=guest)
        assigned["folio_id"] = folio.id
        booking.assigned_resources = assigned

        new_charges = []
        if not any(c.charge_type == "green_fee" for c in folio.charges):
            new_charges = _post_initial_charges(db, booking, folio, assigned)

        transition(booking, S.checked_in, by=by, note="Checked in")
        db.flush()
        for charge in new_charges:
            event_sink.emit(
                db, CHARGE_POSTED, booking_id=booking.id, folio_id=folio.id,
                charge_id=charge.id, charge_type=charge.charge_type, amount=charge.amount,
            )
        sync_booking_pricing(folio)
        event_sink.emit(db, BOOKING_CHECKED_IN, booking_id=booking.id, folio_id=folio.id, resources=assigned)
        commit_or_conflict(db)
    except Exception:
        _abort(db)
        raise

    db.refresh(booking)
    print(f"[BOOKING] Checked in {booking.order_no}, folio {folio.folio_no}, total {booking.total_fee:.2f}")
    return booking


def booking_folio(db: Session, booking: models.Booking) -> Optional[models.Folio]:
    folio_id = (booking.assigned_resources or {}).get("folio_id")
    if folio_id is None:
        return None
    return get_folio(db, int(folio_id))


def bound_resource_ids(booking: models.Booking) -> List[int]:
    return [rid for _, rid, _ in _staged_resources(booking.assigned_resources or {})]


def change_resources(db: Session, booking_id: int, change: schemas.ResourceChange, by: Optional[str] = None) -> models.Booking:
    """
    Swap resources on a checked-in booking. Newly requested resources are
    all verified before anything is released or reserved; charges are left
    as they are.
    """
    try:
        booking = get_booking(db, booking_id, lock=True)
        _check_version(booking, change.expected_version)
        if booking.status != S.checked_in:
            raise InvalidTransition(
                f"Resources can only be changed on checked-in bookings (status is {booking.status.value})",
                booking_id=booking.id,
                status=booking.status.value,
            )

        updated = dict(booking.assigned_resources or {})
        for slot in change.model_fields_set:
            value = getattr(change, slot)
            if slot in MULTI_RESOURCE_SLOTS:
                updated[slot] = [int(v) for v in value or []]
            elif slot in SINGLE_RESOURCE_SLOTS:
                updated[slot] = int(value) if value is not None else None

        staged = _staged_resources(updated)
        held = set(bound_resource_ids(booking))
        wanted = {rid for _, rid, _ in staged}

        catalog = ResourceCatalog(db)
        _stage_resources(catalog, booking.id, staged)
        released = sorted(held - wanted)
        acquired = [rid for _, rid, _ in staged if rid not in held]
        for rid in released:
            catalog.release(rid)
        for rid in acquired:
            catalog.reserve(rid, booking.id)

        booking.assigned_resources = updated
        booking.updated_at = datetime.utcnow()
        event_sink.emit(
            db, BOOKING_RESOURCES_CHANGED, booking_id=booking.id,
            released=released, acquired=acquired, by=by or "",
        )
        commit_or_conflict(db)
    except Exception:
        _abort(db)
        raise

    db.refresh(booking)
    print(f"[BOOKING] {booking.order_no} resources changed (released {released}, acquired {acquired})")
    return booking


# ------------------------------------------------------------------
# HOLES PLAYED (add-on / reduced play)
# ------------------------------------------------------------------

def _reduced_green_fee(cell, charge: models.FolioCharge, holes_booked: int, holes_played: int) -> Optional[float]:
    """
    Reduced-play amount for one posted green fee, never above what was charged.

    Fees the rate sheet cannot price (hand-posted lines, retired identities)
    are reduced from their own amount. Returns None when there is nothing to
    reduce from.
    """
    charged = float(charge.amount or 0)
    full = cell.price_for(charge.identity_code)
    if full is None:
        full = charged
    if full <= 0:
        return None
    reduced = reduce_price(cell.reduced_play_policy, full, holes_booked, holes_played, charge.identity_code)
    return min(reduced, charged)


def record_holes_played(db: Session, booking_id: int, holes_played: int, by: Optional[str] = None) -> models.Booking:
    try:
        booking = get_booking(db, booking_id, lock=True)
        if booking.status != S.checked_in:
            raise InvalidTransition("Holes played can only be recorded for checked-in bookings", booking_id=booking.id)
        if booking.holes_played is not None:
            raise InvalidTransition("Holes played already recorded for this booking", booking_id=booking.id)
        if holes_played is None or int(holes_played) < 0:
            raise ValueError("holes_played cannot be negative")

        holes_booked = int(booking.holes or 18)
        holes_played = int(holes_played)
        folio = get_folio(db, int((booking.assigned_resources or {})["folio_id"]), lock=True)

        config = load_rate_config(db)
        day_info = determine_day_type(db, booking.date)
        time_slot = time_slot_for(db, booking.tee_time)
        cell = select_active_rate_cell(
            config.rate_cells, day_info.day_type, time_slot, booking.date, booking.course_id, holes_booked
        )

        voided, posted = [], []
        if holes_played < holes_booked:
            if cell is None:
                print(f"[PRICING] No rate sheet for reduced play on {booking.order_no}; keeping booked green fees")
            else:
                green_fees = [
                    c for c in folio.charges
                    if c.charge_type == "green_fee" and c.status == models.ChargeStatus.posted
                ]
                for charge in green_fees:
                    amount = _reduced_green_fee(cell, charge, holes_booked, holes_played)
                    if amount is None:
                        print(
                            f"[PRICING] Green fee {charge.id} on {booking.order_no} has no price to reduce; "
                            f"left at {float(charge.amount or 0):.2f}"
                        )
                        continue
                    voided.append(void_charge(folio, charge.id, f"Reduced play: {holes_played}/{holes_booked} holes"))
                    posted.append(post_charge(
                        folio, "reduced_play", amount, source="holes_played",
                        description=f"Reduced play {holes_played}/{holes_booked} - {charge.player_name or ''}".strip(),
                        player_name=charge.player_name, identity_code=charge.identity_code,
                    ))
        elif holes_played > holes_booked:
            rounds = math.ceil((holes_played - holes_booked) / 9)
            for player in booking.players or []:
                code = player.get("identity_code")
                amount = resolve_add_on_price(cell, code) * rounds if cell else 0.0
                posted.append(post_charge(
                    folio, "add_on", amount, source="holes_played",
                    description=f"Add-on {rounds * 9} holes - {player.get('name', '')}",
                    player_name=player.get("name"), identity_code=code,
                    warning=None if cell else RATE_NOT_CONFIGURED,
                ))

        booking.holes_played = holes_played
        booking.updated_at = datetime.utcnow()
        db.flush()
        for charge in voided:
            event_sink.emit(db, CHARGE_VOIDED, booking_id=booking.id, folio_id=folio.id,
                            charge_id=charge.id, amount=charge.amount, reason=charge.void_reason)
        for charge in posted:
            event_sink.emit(db, CHARGE_POSTED, booking_id=booking.id, folio_id=folio.id,
                            charge_id=charge.id, charge_type=charge.charge_type, amount=charge.amount)
        sync_booking_pricing(folio)
        commit_or_conflict(db)
    except Exception:
        _abort(db)
        raise

    db.refresh(booking)
    print(f"[BOOKING] {booking.order_no} played {holes_played}/{holes_booked} holes")
    return booking


# ------------------------------------------------------------------
# COMPLETE
# ------------------------------------------------------------------

def complete_booking(db: Session, booking_id: int, by: Optional[str] = None, expected_version: Optional[int] = None) -> models.Booking:
    try:
        booking = get_booking(db, booking_id, lock=True)
        _check_version(booking, expected_version)
        if booking.status != S.checked_in:
            raise InvalidTransition(
                f"Only checked-in bookings can be completed (status is {booking.status.value})",
                booking_id=booking.id,
                status=booking.status.value,
            )
        folio = booking_folio(db, booking)
        if not is_settled(folio):
            raise FolioNotSettled(
                "Folio must be settled before the booking can be completed",
                booking_id=booking.id,
                folio_id=folio.id if folio else None,
            )

        transition(booking, S.completed, by=by, note="Completed")
        catalog = ResourceCatalog(db)
        for rid in bound_resource_ids(booking):
            catalog.release(rid)
        sync_booking_pricing(folio)
        event_sink.emit(db, BOOKING_COMPLETED, booking_id=booking.id, folio_id=folio.id, forced=bool(folio.forced))
        commit_or_conflict(db)
    except Exception:
        _abort(db)
        raise

    db.refresh(booking)
    print(f"[BOOKING] Completed {booking.order_no}")
    return booking
