"""The only writer of vehicle availability.

Held by the reconciliation engine alone; checkout never receives a reference.
Both operations run inside the caller's DB transaction so the vehicle write
commits or rolls back together with the ledger transition that caused it.
"""

from datetime import datetime, timezone

from sqlalchemy import update

from vehiclepay.common.logging import logger
from vehiclepay.common.metrics import vehicle_status_writes_total
from vehiclepay.services.payments.models import Vehicle, VehicleStatus


class VehicleAvailabilityGate:
    def __init__(self, service_name: str = "vehicle-payments") -> None:
        self.service_name = service_name

    def mark_sold(self, db, vehicle_id: str) -> bool:
        """Move an approved vehicle to sold.

        Returns True when this call performed the write. A vehicle that is
        already sold (duplicate webhook, webhook/poll race) matches zero rows
        and is a no-op rather than an error.
        """

        result = db.execute(
            update(Vehicle)
            .where(Vehicle.id == vehicle_id, Vehicle.status == VehicleStatus.APPROVED.value)
            .values(status=VehicleStatus.SOLD.value, updated_at=datetime.now(timezone.utc))
        )
        if result.rowcount != 1:
            current = db.get(Vehicle, vehicle_id)
            logger.info(
                "vehicle_mark_sold_noop vehicle_id=%s current_status=%s",
                vehicle_id,
                current.status if current else None,
            )
            return False
        vehicle_status_writes_total.labels(service=self.service_name, status=VehicleStatus.SOLD.value).inc()
        logger.info("vehicle_marked_sold vehicle_id=%s", vehicle_id)
        return True

    def mark_booked(self, db, vehicle_id: str) -> bool:
        """Record a confirmed booking against an approved vehicle.

        The vehicle stays `approved`; the hold itself is the confirmed,
        unsettled booking row in the ledger.
        """

        result = db.execute(
            update(Vehicle)
            .where(Vehicle.id == vehicle_id, Vehicle.status == VehicleStatus.APPROVED.value)
            .values(updated_at=datetime.now(timezone.utc))
        )
        if result.rowcount != 1:
            logger.warning("vehicle_mark_booked_not_available vehicle_id=%s", vehicle_id)
            return False
        vehicle_status_writes_total.labels(service=self.service_name, status="booked").inc()
        logger.info("vehicle_marked_booked vehicle_id=%s", vehicle_id)
        return True
