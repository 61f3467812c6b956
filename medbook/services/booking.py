"""Booking coordinator: claim a slot, create the appointment, compensate.

The claim is a conditional update on ``availability_slots.is_available``.
Claim and insert are not wrapped in one transaction, so a failed insert is
followed by a best-effort release of the slot. A release that fails leaves
the slot unavailable with no appointment; reconciling those rows happens
outside this service.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime

from medbook.core import config
from medbook.models.availability_slot import AvailabilitySlot
from medbook.services.slot_store import SlotStore, SlotStoreError

logger = logging.getLogger(__name__)


class BookingOutcome(str, enum.Enum):
    BOOKED = 'booked'
    REJECTED_TAKEN = 'rejected_taken'
    REJECTED_SYSTEM_ERROR = 'rejected_system_error'
    REJECTED_BOOKING_FAILED = 'rejected_booking_failed'


OUTCOME_MESSAGES = {
    BookingOutcome.BOOKED: 'Appointment booked. It is waiting for confirmation from the doctor.',
    BookingOutcome.REJECTED_TAKEN: 'This time slot was just booked by someone else. Please choose another one.',
    BookingOutcome.REJECTED_SYSTEM_ERROR: 'The booking service is unavailable right now. Please try again.',
    BookingOutcome.REJECTED_BOOKING_FAILED: 'The appointment could not be booked and the time slot was released. Please try again.',
}


@dataclass
class BookingSelection:
    """What a patient is currently looking at: a doctor and that doctor's open slots."""

    patient_id: int
    provider_id: int | None = None
    slots: list[AvailabilitySlot] = field(default_factory=list)


@dataclass
class BookingResult:
    outcome: BookingOutcome
    message: str
    slots: list[AvailabilitySlot]
    selection: BookingSelection
    appointment_id: int | None = None

    @property
    def is_booked(self) -> bool:
        return self.outcome is BookingOutcome.BOOKED


class BookingCoordinator:
    def __init__(self, store: SlotStore, slot_limit: int | None = config.SLOT_LISTING_LIMIT):
        self.store = store
        self.slot_limit = slot_limit

    def list_slots_for(self, provider_id: int, since: datetime | None = None) -> list[AvailabilitySlot]:
        # Slots that already started are never offered, whatever ``since`` says.
        now = datetime.now()
        if since is not None and since.tzinfo is not None:
            # Columns hold naive local time.
            since = since.astimezone().replace(tzinfo=None)
        since = max(since, now) if since else now
        return self.store.list_available_slots(provider_id, since=since, limit=self.slot_limit)

    def select_provider(
        self,
        patient_id: int,
        provider_id: int,
        since: datetime | None = None,
    ) -> BookingSelection:
        return BookingSelection(
            patient_id=patient_id,
            provider_id=provider_id,
            slots=self.list_slots_for(provider_id, since=since),
        )

    def book(self, patient_id: int, slot_id: int, selection: BookingSelection | None = None) -> BookingResult:
        """Try to reserve ``slot_id`` for ``patient_id``.

        Store failures never escape; each path ends in exactly one
        ``BookingResult`` carrying the user message and a fresh slot list.
        """
        selection = selection or BookingSelection(patient_id=patient_id)
        provider_id = selection.provider_id

        try:
            slot = self.store.get_slot(slot_id)
        except SlotStoreError:
            logger.exception('Could not load slot %s for patient %s.', slot_id, patient_id)
            return self._finish(BookingOutcome.REJECTED_SYSTEM_ERROR, provider_id, selection)

        if slot is None:
            logger.info('Patient %s tried to book missing slot %s.', patient_id, slot_id)
            return self._finish(BookingOutcome.REJECTED_TAKEN, provider_id, selection)

        provider_id = slot.doctor_id
        start_time = slot.start_time
        end_time = slot.end_time

        try:
            rows_changed = self.store.claim_slot(slot_id)
        except SlotStoreError:
            logger.exception('Claim of slot %s failed for patient %s.', slot_id, patient_id)
            return self._finish(BookingOutcome.REJECTED_SYSTEM_ERROR, provider_id, selection)

        if rows_changed == 0:
            logger.info('Slot %s was already taken when patient %s tried to claim it.', slot_id, patient_id)
            return self._finish(BookingOutcome.REJECTED_TAKEN, provider_id, selection)

        try:
            appointment = self.store.create_appointment(
                patient_id=patient_id,
                doctor_id=provider_id,
                slot_id=slot_id,
                start_time=start_time,
                end_time=end_time,
            )
        except SlotStoreError:
            logger.exception('Appointment insert failed for slot %s and patient %s.', slot_id, patient_id)
            self._release(slot_id, patient_id)
            return self._finish(BookingOutcome.REJECTED_BOOKING_FAILED, provider_id, selection)

        logger.info('Patient %s booked slot %s as appointment %s.', patient_id, slot_id, appointment.id)
        return self._finish(
            BookingOutcome.BOOKED,
            provider_id,
            BookingSelection(patient_id=patient_id),
            appointment_id=appointment.id,
        )

    def _release(self, slot_id: int, patient_id: int) -> None:
        try:
            self.store.release_slot(slot_id)
        except SlotStoreError:
            logger.exception(
                'Could not release slot %s after failed booking by patient %s; slot needs reconciliation.',
                slot_id,
                patient_id,
            )

    def _refresh(self, provider_id: int | None) -> list[AvailabilitySlot]:
        if provider_id is None:
            return []
        try:
            return self.list_slots_for(provider_id)
        except SlotStoreError:
            logger.exception('Could not refresh available slots for doctor %s.', provider_id)
            return []

    def _finish(
        self,
        outcome: BookingOutcome,
        provider_id: int | None,
        selection: BookingSelection,
        appointment_id: int | None = None,
    ) -> BookingResult:
        slots = self._refresh(provider_id)
        if outcome is not BookingOutcome.BOOKED:
            selection = BookingSelection(
                patient_id=selection.patient_id,
                provider_id=provider_id,
                slots=slots,
            )
        return BookingResult(
            outcome=outcome,
            message=OUTCOME_MESSAGES[outcome],
            slots=slots,
            selection=selection,
            appointment_id=appointment_id,
        )
