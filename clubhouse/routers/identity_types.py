# clubhouse/routers/identity_types.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List

from clubhouse import models, schemas
from clubhouse.database import get_db
from clubhouse.rate_store import seed_default_identity_types

router = APIRouter(prefix="/identity-types", tags=["identity-types"])


@router.get("/", response_model=List[schemas.IdentityTypeOut])
def list_identity_types(include_inactive: bool = False, db: Session = Depends(get_db)):
    query = db.query(models.IdentityType)
    if not include_inactive:
        query = query.filter(models.IdentityType.status == "active")
    return query.order_by(models.IdentityType.sort_order, models.IdentityType.id).all()


@router.post("/seed")
def seed_identity_types(db: Session = Depends(get_db)):
    """Create the default identity types (idempotent)."""
    return {"created": seed_default_identity_types(db)}
