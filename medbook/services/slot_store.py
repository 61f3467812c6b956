"""SQLAlchemy-backed store operations used by the booking flow.

Every write commits on its own. Claiming a slot and inserting the appointment
are two separate commits, so the booking coordinator compensates when the
second one fails.
"""

from datetime import datetime

from sqlalchemy import exists, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from medbook.core import config
from medbook.models.appointment import STATUS_CANCELLED, STATUS_PENDING, Appointment
from medbook.models.availability_slot import AvailabilitySlot


class SlotStoreError(Exception):
    """Raised when the database fails while serving a store operation."""

    def __init__(self, operation: str, slot_id: int | None = None):
        self.operation = operation
        self.slot_id = slot_id
        super().__init__(f'Slot store operation {operation!r} failed for slot {slot_id}.')


def live_appointment_exists():
    """Correlated EXISTS matching a non-cancelled appointment on the outer slot row."""
    return exists().where(
        Appointment.slot_id == AvailabilitySlot.id,
        Appointment.status != STATUS_CANCELLED,
    )


class SlotStore:
    def __init__(self, db: Session):
        self.db = db

    def get_slot(self, slot_id: int) -> AvailabilitySlot | None:
        try:
            return self.db.query(AvailabilitySlot).filter(AvailabilitySlot.id == slot_id).first()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise SlotStoreError('get_slot', slot_id) from exc

    def claim_slot(self, slot_id: int) -> int:
        """Flip ``is_available`` to false only if it is still true.

        Returns the number of rows changed. Zero means someone else holds the
        slot (or it does not exist) and is not an error.
        """
        statement = (
            update(AvailabilitySlot)
            .where(
                AvailabilitySlot.id == slot_id,
                AvailabilitySlot.is_available.is_(True),
            )
            .values(is_available=False, updated_at=datetime.now())
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(statement)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise SlotStoreError('claim_slot', slot_id) from exc

        return result.rowcount

    def create_appointment(
        self,
        patient_id: int,
        doctor_id: int,
        slot_id: int,
        start_time: datetime,
        end_time: datetime,
        status: str = STATUS_PENDING,
    ) -> Appointment:
        appointment = Appointment(
            patient_id=patient_id,
            doctor_id=doctor_id,
            slot_id=slot_id,
            start_time=start_time,
            end_time=end_time,
            status=status,
        )
        try:
            self.db.add(appointment)
            self.db.commit()
            self.db.refresh(appointment)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise SlotStoreError('create_appointment', slot_id) from exc

        return appointment

    def release_slot(self, slot_id: int) -> None:
        # Unconditional: only the owner of a pending claim calls this.
        statement = (
            update(AvailabilitySlot)
            .where(AvailabilitySlot.id == slot_id)
            .values(is_available=True, updated_at=datetime.now())
            .execution_options(synchronize_session=False)
        )
        try:
            self.db.execute(statement)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise SlotStoreError('release_slot', slot_id) from exc

    def list_available_slots(
        self,
        provider_id: int,
        since: datetime | None = None,
        limit: int | None = config.SLOT_LISTING_LIMIT,
    ) -> list[AvailabilitySlot]:
        """Slots a patient can still book for ``provider_id``, earliest first."""
        since = since or datetime.now()
        query = self.db.query(AvailabilitySlot).filter(
            AvailabilitySlot.doctor_id == provider_id,
            AvailabilitySlot.is_available.is_(True),
            AvailabilitySlot.start_time >= since,
            ~live_appointment_exists(),
        ).order_by(AvailabilitySlot.start_time.asc(), AvailabilitySlot.id.asc())

        if limit is not None:
            query = query.limit(limit)

        try:
            return query.all()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise SlotStoreError('list_available_slots') from exc
