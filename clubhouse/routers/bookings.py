# clubhouse/routers/bookings.py
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date

from clubhouse import models, schemas
from clubhouse import booking_flow
from clubhouse.database import get_db

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _to_status_str(status) -> str:
    return str(getattr(status, "value", status) or models.BookingStatus.pending.value)


def _booking_payload(b: models.Booking) -> dict:
    # Older rows may carry NULLs in the pricing cache; keep the response model happy.
    return {
        "id": b.id,
        "order_no": b.order_no,
        "date": b.date,
        "tee_time": b.tee_time,
        "course_id": b.course_id,
        "holes": int(b.holes or 18),
        "players": list(b.players or []),
        "team_size": b.team_size,
        "need_caddy": bool(b.need_caddy),
        "need_cart": bool(b.need_cart),
        "status": _to_status_str(b.status),
        "status_history": list(b.status_history or []),
        "assigned_resources": b.assigned_resources,
        "total_fee": float(b.total_fee or 0.0),
        "paid_fee": float(b.paid_fee or 0.0),
        "pending_fee": float(b.pending_fee or 0.0),
        "holes_played": b.holes_played,
        "note": b.note,
        "version": int(b.version or 1),
        "created_at": b.created_at,
    }


@router.post("/", response_model=schemas.BookingOut)
def create_booking(data: schemas.BookingCreate, db: Session = Depends(get_db)):
    return _booking_payload(booking_flow.create_booking(db, data))


@router.get("/", response_model=List[schemas.BookingOut])
def list_bookings(on_date: Optional[date] = None, status: Optional[str] = None, db: Session = Depends(get_db)):
    query = db.query(models.Booking)
    if on_date:
        query = query.filter(models.Booking.date == on_date)
    if status:
        try:
            wanted = models.BookingStatus(status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown booking status '{status}'")
        query = query.filter(models.Booking.status == wanted)
    return [_booking_payload(b) for b in query.order_by(models.Booking.date, models.Booking.tee_time).all()]


@router.get("/{booking_id}", response_model=schemas.BookingOut)
def get_booking(booking_id: int, db: Session = Depends(get_db)):
    return _booking_payload(booking_flow.get_booking(db, booking_id))


@router.post("/{booking_id}/confirm", response_model=schemas.BookingOut)
def confirm_booking(booking_id: int, req: Optional[schemas.TransitionRequest] = None, db: Session = Depends(get_db)):
    req = req or schemas.TransitionRequest()
    booking = booking_flow.confirm_booking(db, booking_id, by=req.operator, expected_version=req.expected_version)
    return _booking_payload(booking)


@router.post("/{booking_id}/cancel", response_model=schemas.BookingOut)
def cancel_booking(booking_id: int, req: Optional[schemas.TransitionRequest] = None, db: Session = Depends(get_db)):
    req = req or schemas.TransitionRequest()
    booking = booking_flow.cancel_booking(
        db, booking_id, reason=req.reason, by=req.operator, expected_version=req.expected_version
    )
    return _booking_payload(booking)


@router.post("/{booking_id}/check-in", response_model=schemas.BookingOut)
def check_in_booking(booking_id: int, req: Optional[schemas.CheckInResources] = None, db: Session = Depends(get_db)):
    req = req or schemas.CheckInResources()
    booking = booking_flow.check_in_booking(db, booking_id, req, by=req.operator)
    return _booking_payload(booking)


@router.post("/{booking_id}/holes-played", response_model=schemas.BookingOut)
def record_holes_played(booking_id: int, req: schemas.HolesPlayedRequest, db: Session = Depends(get_db)):
    booking = booking_flow.record_holes_played(db, booking_id, req.holes_played, by=req.operator)
    return _booking_payload(booking)


@router.post("/{booking_id}/complete", response_model=schemas.BookingOut)
def complete_booking(booking_id: int, req: Optional[schemas.TransitionRequest] = None, db: Session = Depends(get_db)):
    req = req or schemas.TransitionRequest()
    booking = booking_flow.complete_booking(db, booking_id, by=req.operator, expected_version=req.expected_version)
    return _booking_payload(booking)


@router.put("/{booking_id}/resources", response_model=schemas.BookingOut)
def change_resources(booking_id: int, req: schemas.ResourceChange, db: Session = Depends(get_db)):
    booking = booking_flow.change_resources(db, booking_id, req, by=req.operator)
    return _booking_payload(booking)
