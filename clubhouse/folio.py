from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from clubhouse import models
from clubhouse.club_settings import DEFAULT_SETTLE_TOLERANCE, get_settle_tolerance
from clubhouse.errors import (
    AlreadyVoided,
    ChargeNotFound,
    FolioClosed,
    FolioHasPayments,
    FolioNotFound,
    InvalidAmount,
    UnsettledBalance,
    VersionConflict,
)
from clubhouse.events import (
    CHARGE_POSTED,
    CHARGE_VOIDED,
    FOLIO_REOPENED,
    FOLIO_SETTLED,
    FOLIO_VOIDED,
    PAYMENT_ADDED,
    REFUND_ADDED,
    event_sink,
)
from clubhouse.rates import money


PAY_METHODS = {
    "cash": "Cash",
    "wechat": "WeChat Pay",
    "alipay": "Alipay",
    "bank_card": "Bank card",
    "member_card": "Member card",
    "transfer": "Transfer",
    "house_account": "House account",
    "mixed": "Mixed",
}


@dataclass(frozen=True)
class FolioTotals:
    total_charges: float
    total_payments: float
    balance: float
    credit: float


# ------------------------------------------------------------------
# LEDGER RULES (operate on an in-memory folio, no commits)
# ------------------------------------------------------------------

def folio_totals(folio: models.Folio) -> FolioTotals:
    total_charges = money(sum(float(c.amount or 0) for c in folio.charges if c.status == models.ChargeStatus.posted))
    total_payments = money(sum(float(p.amount or 0) for p in folio.payments))
    net = money(total_charges - total_payments)
    return FolioTotals(
        total_charges=total_charges,
        total_payments=total_payments,
        balance=max(0.0, net),
        credit=max(0.0, -net),
    )


def _ensure_not_void(folio: models.Folio) -> None:
    if folio.status == models.FolioStatus.void:
        raise FolioClosed("Folio has been voided", folio_id=folio.id)


def post_charge(
    folio: models.Folio,
    charge_type: str,
    amount: float,
    source: Optional[str] = None,
    description: Optional[str] = None,
    player_name: Optional[str] = None,
    identity_code: Optional[str] = None,
    warning: Optional[str] = None,
) -> models.FolioCharge:
    if amount is None or float(amount) < 0:
        raise InvalidAmount("Charge amount must be zero or positive", amount=amount)
    if not charge_type:
        raise InvalidAmount("charge_type is required")
    _ensure_not_void(folio)

    if folio.status == models.FolioStatus.settled:
        folio.status = models.FolioStatus.open
        folio.settled_at = None
        folio.settled_by = None
        folio.forced = False

    charge = models.FolioCharge(
        charge_type=charge_type,
        charge_source=source or "",
        description=description or "",
        amount=money(amount),
        player_name=player_name,
        identity_code=identity_code,
        warning=warning,
        status=models.ChargeStatus.posted,
        created_at=datetime.utcnow(),
    )
    folio.charges.append(charge)
    folio.updated_at = datetime.utcnow()
    return charge


def find_charge(folio: models.Folio, charge_id: int) -> models.FolioCharge:
    for charge in folio.charges:
        if charge.id == charge_id:
            return charge
    raise ChargeNotFound("Charge not found on this folio", charge_id=charge_id, folio_id=folio.id)


def void_charge(folio: models.Folio, charge_id: int, reason: Optional[str] = None) -> models.FolioCharge:
    _ensure_not_void(folio)
    charge = find_charge(folio, charge_id)
    if charge.status == models.ChargeStatus.voided:
        raise AlreadyVoided("Charge is already voided", charge_id=charge_id)
    if folio.status == models.FolioStatus.settled:
        raise FolioClosed("Settled folios cannot be voided against", folio_id=folio.id)
    charge.status = models.ChargeStatus.voided
    charge.void_reason = reason or "Manual void"
    charge.voided_at = datetime.utcnow()
    folio.updated_at = charge.voided_at
    return charge


def _reference_no() -> str:
    return f"PAY{datetime.utcnow().strftime('%Y%m%d%H%M%S')}{random.randint(0, 999):03d}"


def add_payment(folio: models.Folio, amount: float, pay_method: str = "cash", note: Optional[str] = None) -> models.FolioPayment:
    if amount is None or float(amount) <= 0:
        raise InvalidAmount("Payment amount must be greater than 0", amount=amount)
    _ensure_not_void(folio)
    payment = models.FolioPayment(
        kind="payment",
        amount=money(amount),
        pay_method=pay_method or "cash",
        reference_no=_reference_no(),
        note=note or "",
        paid_at=datetime.utcnow(),
    )
    folio.payments.append(payment)
    folio.updated_at = datetime.utcnow()
    return payment


def add_refund(folio: models.Folio, amount: float, pay_method: str = "cash", note: Optional[str] = None) -> models.FolioPayment:
    if amount is None or float(amount) <= 0:
        raise InvalidAmount("Refund amount must be greater than 0", amount=amount)
    _ensure_not_void(folio)
    totals = folio_totals(folio)
    if money(amount) > totals.total_payments:
        raise InvalidAmount(
            "Refund exceeds the net amount paid on this folio",
            amount=amount,
            total_payments=totals.total_payments,
        )
    refund = models.FolioPayment(
        kind="refund",
        amount=-money(amount),
        pay_method=pay_method or "cash",
        reference_no=_reference_no(),
        note=note or "",
        paid_at=datetime.utcnow(),
    )
    folio.payments.append(refund)
    folio.updated_at = datetime.utcnow()
    return refund


def settle(folio: models.Folio, force: bool = False, tolerance: float = DEFAULT_SETTLE_TOLERANCE, settled_by: Optional[str] = None) -> FolioTotals:
    _ensure_not_void(folio)
    totals = folio_totals(folio)
    if folio.status == models.FolioStatus.settled:
        return totals
    if totals.balance > tolerance and not force:
        raise UnsettledBalance(totals.balance)
    folio.status = models.FolioStatus.settled
    folio.forced = totals.balance > tolerance
    folio.settled_at = datetime.utcnow()
    folio.settled_by = settled_by
    folio.updated_at = folio.settled_at
    return totals


def void_folio(folio: models.Folio, reason: Optional[str] = None) -> List[models.FolioCharge]:
    """
    Close an open folio without collecting it. Every posted charge is voided
    so the folio nets to zero. Money already taken must be refunded first,
    and a checked-in booking keeps its folio until it is settled.
    """
    _ensure_not_void(folio)
    if folio.status != models.FolioStatus.open:
        raise FolioClosed("Only open folios can be voided", folio_id=folio.id, status=folio.status.value)
    booking = folio.booking
    if booking is not None and booking.status == models.BookingStatus.checked_in:
        raise FolioClosed(
            "Folio belongs to a checked-in booking; settle it instead",
            folio_id=folio.id,
            booking_id=booking.id,
        )
    totals = folio_totals(folio)
    if totals.total_payments > 0:
        raise FolioHasPayments(
            "Refund the payments on this folio before voiding it",
            folio_id=folio.id,
            total_payments=totals.total_payments,
        )

    now = datetime.utcnow()
    voided = []
    for charge in folio.charges:
        if charge.status != models.ChargeStatus.posted:
            continue
        charge.status = models.ChargeStatus.voided
        charge.void_reason = f"Folio voided: {reason}" if reason else "Folio voided"
        charge.voided_at = now
        voided.append(charge)
    folio.status = models.FolioStatus.void
    folio.voided_at = now
    folio.void_reason = reason or ""
    folio.updated_at = now
    return voided


def is_settled(folio: Optional[models.Folio]) -> bool:
    return folio is not None and folio.status == models.FolioStatus.settled


@dataclass(frozen=True)
class FolioStats:
    open_count: int
    open_balance: float
    settled_today_count: int
    settled_today_amount: float


def folio_stats(db: Session, on_date: Optional[date] = None) -> FolioStats:
    """Cashier summary. settled_at is stored in UTC, so `on_date` is a UTC day."""
    on_date = on_date or datetime.utcnow().date()
    start = datetime.combine(on_date, time.min)
    end = start + timedelta(days=1)

    open_folios = db.query(models.Folio).filter(models.Folio.status == models.FolioStatus.open).all()
    settled = (
        db.query(models.Folio)
        .filter(
            models.Folio.status == models.FolioStatus.settled,
            models.Folio.settled_at >= start,
            models.Folio.settled_at < end,
        )
        .all()
    )
    return FolioStats(
        open_count=len(open_folios),
        open_balance=money(sum(folio_totals(f).balance for f in open_folios)),
        settled_today_count=len(settled),
        settled_today_amount=money(sum(folio_totals(f).total_charges for f in settled)),
    )


def sync_booking_pricing(folio: models.Folio) -> None:
    booking = folio.booking
    if booking is None:
        return
    totals = folio_totals(folio)
    booking.total_fee = totals.total_charges
    booking.paid_fee = totals.total_payments
    booking.pending_fee = totals.balance
    booking.updated_at = datetime.utcnow()


# ------------------------------------------------------------------
# PERSISTENCE WRAPPERS (one commit per ledger action)
# ------------------------------------------------------------------

def commit_or_conflict(db: Session) -> None:
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        print(f"[FOLIO] Concurrent update rejected: {str(e)[:160]}")
        raise VersionConflict("Record was modified by another request; reload and retry")


def generate_folio_no(db: Session) -> str:
    prefix = f"F{datetime.utcnow().strftime('%Y%m%d')}"
    count = db.query(models.Folio).filter(models.Folio.folio_no.like(f"{prefix}%")).count()
    return f"{prefix}{count + 1:03d}"


def get_folio(db: Session, folio_id: int, lock: bool = False) -> models.Folio:
    query = db.query(models.Folio).filter(models.Folio.id == folio_id)
    if lock:
        query = query.with_for_update()
    folio = query.first()
    if not folio:
        raise FolioNotFound("Folio not found", folio_id=folio_id)
    return folio


def find_open_folio_for_booking(db: Session, booking_id: int) -> Optional[models.Folio]:
    return (
        db.query(models.Folio)
        .filter(models.Folio.booking_id == booking_id, models.Folio.status == models.FolioStatus.open)
        .order_by(models.Folio.id.desc())
        .first()
    )


def open_folio(db: Session, booking_id: Optional[int] = None, guest_name: str = "") -> models.Folio:
    folio = models.Folio(
        folio_no=generate_folio_no(db),
        booking_id=booking_id,
        guest_name=guest_name,
        status=models.FolioStatus.open,
        opened_at=datetime.utcnow(),
    )
    db.add(folio)
    db.flush()
    print(f"[FOLIO] Opened {folio.folio_no} for booking {booking_id}")
    return folio


def _run(db: Session, action):
    try:
        result = action()
        commit_or_conflict(db)
        return result
    except StaleDataError as e:
        db.rollback()
        print(f"[FOLIO] Concurrent update rejected: {str(e)[:160]}")
        raise VersionConflict("Record was modified by another request; reload and retry")
    except Exception:
        db.rollback()
        raise


def record_charge(db: Session, folio_id: int, charge_type: str, amount: float, source: Optional[str] = None, **extra) -> models.FolioCharge:
    def action():
        folio = get_folio(db, folio_id, lock=True)
        reopening = folio.status == models.FolioStatus.settled
        charge = post_charge(folio, charge_type, amount, source, **extra)
        db.flush()
        if reopening:
            event_sink.emit(db, FOLIO_REOPENED, booking_id=folio.booking_id, folio_id=folio.id, charge_id=charge.id)
        event_sink.emit(
            db, CHARGE_POSTED, booking_id=folio.booking_id, folio_id=folio.id,
            charge_id=charge.id, charge_type=charge.charge_type, amount=charge.amount,
        )
        sync_booking_pricing(folio)
        return charge

    charge = _run(db, action)
    print(f"[FOLIO] Charge {charge.charge_type} {charge.amount:.2f} posted to folio {folio_id}")
    return charge


def record_charges(db: Session, folio_id: int, items: Iterable[Mapping]) -> List[models.FolioCharge]:
    items = list(items)
    if not items:
        raise InvalidAmount("No charges supplied")

    def action():
        folio = get_folio(db, folio_id, lock=True)
        reopening = folio.status == models.FolioStatus.settled
        posted = [
            post_charge(
                folio,
                item.get("charge_type") or "other",
                item.get("amount"),
                item.get("charge_source"),
                description=item.get("description"),
            )
            for item in items
        ]
        db.flush()
        if reopening:
            event_sink.emit(db, FOLIO_REOPENED, booking_id=folio.booking_id, folio_id=folio.id, charge_id=posted[0].id)
        for charge in posted:
            event_sink.emit(
                db, CHARGE_POSTED, booking_id=folio.booking_id, folio_id=folio.id,
                charge_id=charge.id, charge_type=charge.charge_type, amount=charge.amount,
            )
        sync_booking_pricing(folio)
        return posted

    return _run(db, action)


def record_void(db: Session, folio_id: int, charge_id: int, reason: Optional[str] = None) -> models.FolioCharge:
    def action():
        folio = get_folio(db, folio_id, lock=True)
        charge = void_charge(folio, charge_id, reason)
        event_sink.emit(
            db, CHARGE_VOIDED, booking_id=folio.booking_id, folio_id=folio.id,
            charge_id=charge.id, amount=charge.amount, reason=charge.void_reason,
        )
        sync_booking_pricing(folio)
        return charge

    charge = _run(db, action)
    print(f"[FOLIO] Charge {charge_id} voided on folio {folio_id}")
    return charge


def record_payment(db: Session, folio_id: int, amount: float, pay_method: str = "cash", note: Optional[str] = None) -> models.FolioPayment:
    def action():
        folio = get_folio(db, folio_id, lock=True)
        payment = add_payment(folio, amount, pay_method, note)
        db.flush()
        event_sink.emit(
            db, PAYMENT_ADDED, booking_id=folio.booking_id, folio_id=folio.id,
            payment_id=payment.id, amount=payment.amount, pay_method=payment.pay_method,
        )
        sync_booking_pricing(folio)
        return payment

    payment = _run(db, action)
    print(f"[FOLIO] Payment {payment.amount:.2f} ({payment.pay_method}) on folio {folio_id}")
    return payment


def record_refund(db: Session, folio_id: int, amount: float, pay_method: str = "cash", note: Optional[str] = None) -> models.FolioPayment:
    def action():
        folio = get_folio(db, folio_id, lock=True)
        refund = add_refund(folio, amount, pay_method, note)
        db.flush()
        event_sink.emit(
            db, REFUND_ADDED, booking_id=folio.booking_id, folio_id=folio.id,
            payment_id=refund.id, amount=refund.amount, pay_method=refund.pay_method,
        )
        sync_booking_pricing(folio)
        return refund

    return _run(db, action)


def settle_folio(db: Session, folio_id: int, force: bool = False, settled_by: Optional[str] = None) -> FolioTotals:
    def action():
        folio = get_folio(db, folio_id, lock=True)
        already = folio.status == models.FolioStatus.settled
        totals = settle(folio, force=force, tolerance=get_settle_tolerance(db), settled_by=settled_by)
        if not already:
            event_sink.emit(
                db, FOLIO_SETTLED, booking_id=folio.booking_id, folio_id=folio.id,
                forced=bool(folio.forced), balance=totals.balance,
            )
        sync_booking_pricing(folio)
        return totals

    totals = _run(db, action)
    print(f"[FOLIO] Folio {folio_id} settled (force={force}, balance={totals.balance:.2f})")
    return totals


def record_folio_void(db: Session, folio_id: int, reason: Optional[str] = None) -> List[models.FolioCharge]:
    def action():
        folio = get_folio(db, folio_id, lock=True)
        voided = void_folio(folio, reason)
        event_sink.emit(
            db, FOLIO_VOIDED, booking_id=folio.booking_id, folio_id=folio.id,
            charge_ids=[c.id for c in voided], reason=folio.void_reason,
        )
        sync_booking_pricing(folio)
        return voided

    voided = _run(db, action)
    print(f"[FOLIO] Folio {folio_id} voided ({len(voided)} charges)")
    return voided
