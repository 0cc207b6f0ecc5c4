# clubhouse/routers/resources.py
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional

from clubhouse import models, schemas
from clubhouse.database import get_db
from clubhouse.resources import ResourceCatalog

router = APIRouter(prefix="/resources", tags=["resources"])


def _resource_payload(r: models.Resource) -> dict:
    return {
        "id": r.id,
        "resource_type": str(getattr(r.resource_type, "value", r.resource_type)),
        "code": r.code,
        "name": r.name,
        "status": r.status or "available",
        "booking_id": r.booking_id,
    }


@router.post("/", response_model=schemas.ResourceOut)
def create_resource(data: schemas.ResourceCreate, db: Session = Depends(get_db)):
    try:
        resource_type = models.ResourceType(data.resource_type.strip().lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown resource type '{data.resource_type}'")
    r = models.Resource(resource_type=resource_type, code=data.code.strip(), name=data.name, status="available")
    db.add(r)
    db.commit()
    db.refresh(r)
    return _resource_payload(r)


@router.get("/available", response_model=List[schemas.ResourceOut])
def available_resources(resource_type: Optional[str] = None, db: Session = Depends(get_db)):
    if resource_type and resource_type not in {t.value for t in models.ResourceType}:
        raise HTTPException(status_code=400, detail=f"Unknown resource type '{resource_type}'")
    return [_resource_payload(r) for r in ResourceCatalog(db).list_available(resource_type)]
