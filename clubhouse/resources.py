# clubhouse/resources.py
"""
Resource catalog for caddies, carts, lockers, rooms, temp cards, bag slots and parking.

A resource is bound to at most one active booking at a time. Every write path
loads the row FOR UPDATE and refreshes it, so two check-ins racing for the
same locker serialize on the row lock; the version column catches writers
that skipped the lock.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from clubhouse import models
from clubhouse.errors import ResourceNotFound, ResourceUnavailable


class ResourceCatalog:
    def __init__(self, db: Session):
        self.db = db

    def get(self, resource_id: int, lock: bool = False) -> models.Resource:
        query = self.db.query(models.Resource).filter(models.Resource.id == resource_id)
        if lock:
            # pending writes go out before the row is re-read
            self.db.flush()
            query = query.with_for_update().populate_existing()
        resource = query.first()
        if not resource:
            raise ResourceNotFound("Resource not found", resource_id=resource_id)
        return resource

    def list_available(self, resource_type: Optional[str] = None) -> List[models.Resource]:
        query = self.db.query(models.Resource).filter(models.Resource.status == "available")
        if resource_type:
            query = query.filter(models.Resource.resource_type == models.ResourceType(resource_type))
        return query.order_by(models.Resource.resource_type, models.Resource.code).all()

    def check_available(self, resource_id: int, booking_id: int, expected_type: Optional[str] = None) -> models.Resource:
        resource = self.get(resource_id, lock=True)
        if expected_type and resource.resource_type != models.ResourceType(expected_type):
            raise ResourceUnavailable(
                f"Resource {resource.code} is a {resource.resource_type.value}, not a {expected_type}",
                resource_id=resource_id,
            )
        if resource.status == "occupied" and resource.booking_id == booking_id:
            return resource
        if resource.status != "available":
            raise ResourceUnavailable(
                f"{resource.resource_type.value} {resource.code} is {resource.status}",
                resource_id=resource_id,
                resource_type=resource.resource_type.value,
                holder_booking_id=resource.booking_id,
            )
        return resource

    def reserve(self, resource_id: int, booking_id: int) -> models.Resource:
        resource = self.check_available(resource_id, booking_id)
        resource.status = "occupied"
        resource.booking_id = booking_id
        resource.updated_at = datetime.utcnow()
        print(f"[RESOURCES] {resource.resource_type.value} {resource.code} reserved for booking {booking_id}")
        return resource

    def release(self, resource_id: int) -> None:
        resource = self.get(resource_id, lock=True)
        if resource.status == "occupied":
            resource.status = "available"
        resource.booking_id = None
        resource.updated_at = datetime.utcnow()
        print(f"[RESOURCES] {resource.resource_type.value} {resource.code} released")
