# clubhouse/routers/folios.py
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import date

from clubhouse import models, schemas
from clubhouse import folio as ledger
from clubhouse.booking_flow import get_booking
from clubhouse.database import get_db
from clubhouse.statement import XLSX_MEDIA_TYPE, build_statement_workbook

router = APIRouter(prefix="/folios", tags=["folios"])


def _str(v) -> str:
    return str(getattr(v, "value", v) or "")


def _folio_payload(f: models.Folio) -> dict:
    totals = ledger.folio_totals(f)
    return {
        "id": f.id,
        "folio_no": f.folio_no,
        "booking_id": f.booking_id,
        "guest_name": f.guest_name,
        "status": _str(f.status),
        "forced": bool(f.forced),
        "settled_at": f.settled_at,
        "voided_at": f.voided_at,
        "void_reason": f.void_reason,
        "total_charges": totals.total_charges,
        "total_payments": totals.total_payments,
        "balance": totals.balance,
        "credit": totals.credit,
        "charges": [
            {
                "id": c.id,
                "charge_type": c.charge_type,
                "charge_source": c.charge_source,
                "description": c.description,
                "amount": float(c.amount or 0),
                "player_name": c.player_name,
                "identity_code": c.identity_code,
                "warning": c.warning,
                "status": _str(c.status),
                "void_reason": c.void_reason,
                "created_at": c.created_at,
            }
            for c in f.charges
        ],
        "payments": [
            {
                "id": p.id,
                "kind": p.kind or "payment",
                "amount": float(p.amount or 0),
                "pay_method": p.pay_method or "cash",
                "reference_no": p.reference_no,
                "note": p.note,
                "paid_at": p.paid_at,
            }
            for p in f.payments
        ],
    }


def _reload(db: Session, folio_id: int) -> dict:
    db.expire_all()
    return _folio_payload(ledger.get_folio(db, folio_id))


@router.post("/", response_model=schemas.FolioOut)
def open_folio(data: schemas.FolioOpen, db: Session = Depends(get_db)):
    if data.booking_id is not None:
        get_booking(db, data.booking_id)
    f = ledger.open_folio(db, booking_id=data.booking_id, guest_name=data.guest_name)
    db.commit()
    db.refresh(f)
    return _folio_payload(f)


@router.get("/", response_model=List[schemas.FolioOut])
def list_folios(booking_id: Optional[int] = None, status: Optional[str] = None, db: Session = Depends(get_db)):
    query = db.query(models.Folio)
    if booking_id is not None:
        query = query.filter(models.Folio.booking_id == booking_id)
    if status in {s.value for s in models.FolioStatus}:
        query = query.filter(models.Folio.status == models.FolioStatus(status))
    return [_folio_payload(f) for f in query.order_by(models.Folio.id.desc()).all()]


@router.get("/stats", response_model=schemas.FolioStatsOut)
def folio_stats(on_date: Optional[date] = None, db: Session = Depends(get_db)):
    stats = ledger.folio_stats(db, on_date)
    return {
        "open_count": stats.open_count,
        "open_balance": stats.open_balance,
        "settled_today_count": stats.settled_today_count,
        "settled_today_amount": stats.settled_today_amount,
    }


@router.get("/{folio_id}", response_model=schemas.FolioOut)
def get_folio(folio_id: int, db: Session = Depends(get_db)):
    return _folio_payload(ledger.get_folio(db, folio_id))


@router.post("/{folio_id}/charges", response_model=schemas.FolioOut)
def post_charge(folio_id: int, data: schemas.ChargeCreate, db: Session = Depends(get_db)):
    ledger.record_charge(db, folio_id, data.charge_type, data.amount, data.charge_source, description=data.description)
    return _reload(db, folio_id)


@router.post("/{folio_id}/charges/batch", response_model=schemas.FolioOut)
def post_charges(folio_id: int, data: schemas.ChargeBatch, db: Session = Depends(get_db)):
    ledger.record_charges(db, folio_id, [item.model_dump() for item in data.items])
    return _reload(db, folio_id)


@router.post("/{folio_id}/charges/{charge_id}/void", response_model=schemas.FolioOut)
def void_charge(folio_id: int, charge_id: int, data: Optional[schemas.VoidRequest] = None, db: Session = Depends(get_db)):
    ledger.record_void(db, folio_id, charge_id, data.reason if data else None)
    return _reload(db, folio_id)


@router.post("/{folio_id}/payments", response_model=schemas.FolioOut)
def add_payment(folio_id: int, data: schemas.PaymentCreate, db: Session = Depends(get_db)):
    ledger.record_payment(db, folio_id, data.amount, data.pay_method, data.note)
    return _reload(db, folio_id)


@router.post("/{folio_id}/refunds", response_model=schemas.FolioOut)
def add_refund(folio_id: int, data: schemas.PaymentCreate, db: Session = Depends(get_db)):
    ledger.record_refund(db, folio_id, data.amount, data.pay_method, data.note)
    return _reload(db, folio_id)


@router.post("/{folio_id}/settle", response_model=schemas.FolioOut)
def settle_folio(folio_id: int, data: Optional[schemas.SettleRequest] = None, db: Session = Depends(get_db)):
    data = data or schemas.SettleRequest()
    ledger.settle_folio(db, folio_id, force=data.force, settled_by=data.operator)
    return _reload(db, folio_id)


@router.post("/{folio_id}/void", response_model=schemas.FolioOut)
def void_folio(folio_id: int, data: Optional[schemas.VoidRequest] = None, db: Session = Depends(get_db)):
    ledger.record_folio_void(db, folio_id, data.reason if data else None)
    return _reload(db, folio_id)


@router.get("/{folio_id}/statement.xlsx")
def export_statement(folio_id: int, db: Session = Depends(get_db)):
    f = ledger.get_folio(db, folio_id)
    excel_file = build_statement_workbook(f)
    filename = f"Folio_{f.folio_no}.xlsx"
    return StreamingResponse(
        iter([excel_file.getvalue()]),
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )
