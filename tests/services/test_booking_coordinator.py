import logging
from datetime import datetime, timedelta

import pytest

from conftest import tomorrow_at
from medbook.models.appointment import STATUS_PENDING, Appointment
from medbook.models.user import ROLE_PATIENT, User
from medbook.services.booking import (
    OUTCOME_MESSAGES,
    BookingCoordinator,
    BookingOutcome,
    BookingSelection,
)
from medbook.services.slot_store import SlotStore, SlotStoreError


@pytest.fixture
def coordinator(booking_db) -> BookingCoordinator:
    return BookingCoordinator(SlotStore(booking_db))


@pytest.fixture
def second_patient(booking_db) -> User:
    user = User(email='bruno@example.com', full_name='Bruno Lima', role=ROLE_PATIENT)
    booking_db.add(user)
    booking_db.commit()
    booking_db.refresh(user)
    return user


def _fail(operation: str):
    def raiser(slot_id, *_args, **_kwargs):
        raise SlotStoreError(operation, slot_id)

    return raiser


def test_book_creates_pending_appointment_with_slot_times(booking_db, coordinator, make_slot, patient, doctor) -> None:
    slot = make_slot()
    slot_id, start_time, end_time = slot.id, slot.start_time, slot.end_time

    result = coordinator.book(patient.id, slot_id)

    assert result.outcome is BookingOutcome.BOOKED
    assert result.is_booked
    assert result.message == OUTCOME_MESSAGES[BookingOutcome.BOOKED]

    appointment = booking_db.query(Appointment).filter(Appointment.id == result.appointment_id).one()
    assert appointment.patient_id == patient.id
    assert appointment.doctor_id == doctor.id
    assert appointment.slot_id == slot_id
    assert appointment.status == STATUS_PENDING
    assert appointment.start_time == start_time
    assert appointment.end_time == end_time


def test_book_clears_selection_and_refreshes_slots(coordinator, make_slot, patient, doctor) -> None:
    booked = make_slot(tomorrow_at(9))
    remaining = make_slot(tomorrow_at(10))
    selection = coordinator.select_provider(patient.id, doctor.id)
    assert [slot.id for slot in selection.slots] == [booked.id, remaining.id]

    result = coordinator.book(patient.id, booked.id, selection=selection)

    assert result.selection == BookingSelection(patient_id=patient.id)
    assert [slot.id for slot in result.slots] == [remaining.id]


def test_two_patients_booking_same_slot_only_one_succeeds(
    booking_db,
    coordinator,
    make_slot,
    patient,
    second_patient,
) -> None:
    slot = make_slot()
    slot_id = slot.id

    first = coordinator.book(patient.id, slot_id)
    second = coordinator.book(second_patient.id, slot_id)

    assert first.outcome is BookingOutcome.BOOKED
    assert second.outcome is BookingOutcome.REJECTED_TAKEN
    assert second.appointment_id is None
    assert booking_db.query(Appointment).filter(Appointment.slot_id == slot_id).count() == 1


def test_book_rejects_slot_already_unavailable(booking_db, coordinator, make_slot, patient, doctor) -> None:
    slot = make_slot(is_available=False)
    open_slot = make_slot(tomorrow_at(15))

    result = coordinator.book(patient.id, slot.id)

    assert result.outcome is BookingOutcome.REJECTED_TAKEN
    assert result.message == OUTCOME_MESSAGES[BookingOutcome.REJECTED_TAKEN]
    assert booking_db.query(Appointment).count() == 0
    assert [listed.id for listed in result.slots] == [open_slot.id]
    assert result.selection.provider_id == doctor.id


def test_book_rejects_unknown_slot_as_taken(booking_db, coordinator, patient) -> None:
    result = coordinator.book(patient.id, 404)

    assert result.outcome is BookingOutcome.REJECTED_TAKEN
    assert result.slots == []
    assert booking_db.query(Appointment).count() == 0


def test_claim_error_is_system_error_and_leaves_slot_open(
    booking_db,
    coordinator,
    make_slot,
    patient,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    slot = make_slot()
    slot_id = slot.id
    monkeypatch.setattr(coordinator.store, 'claim_slot', _fail('claim_slot'))

    with caplog.at_level(logging.ERROR, logger='medbook.services.booking'):
        result = coordinator.book(patient.id, slot_id)

    assert result.outcome is BookingOutcome.REJECTED_SYSTEM_ERROR
    assert booking_db.query(Appointment).count() == 0
    assert [listed.id for listed in result.slots] == [slot_id]
    assert f'Claim of slot {slot_id} failed for patient {patient.id}.' in caplog.text


def test_slot_lookup_error_is_system_error(coordinator, patient, doctor, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(coordinator.store, 'get_slot', _fail('get_slot'))
    selection = BookingSelection(patient_id=patient.id, provider_id=doctor.id)

    result = coordinator.book(patient.id, 1, selection=selection)

    assert result.outcome is BookingOutcome.REJECTED_SYSTEM_ERROR
    assert result.selection.provider_id == doctor.id


def test_failed_appointment_insert_releases_slot(
    booking_db,
    coordinator,
    make_slot,
    patient,
    doctor,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    slot = make_slot()
    slot_id = slot.id
    monkeypatch.setattr(coordinator.store, 'create_appointment', lambda **kwargs: _fail('create_appointment')(kwargs['slot_id']))

    result = coordinator.book(patient.id, slot_id)

    assert result.outcome is BookingOutcome.REJECTED_BOOKING_FAILED
    assert result.message == OUTCOME_MESSAGES[BookingOutcome.REJECTED_BOOKING_FAILED]
    assert booking_db.query(Appointment).count() == 0
    assert [listed.id for listed in result.slots] == [slot_id]
    assert [listed.id for listed in coordinator.list_slots_for(doctor.id)] == [slot_id]


def test_failed_release_is_logged_and_still_reports_booking_failed(
    booking_db,
    coordinator,
    make_slot,
    patient,
    doctor,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    slot = make_slot()
    slot_id = slot.id
    monkeypatch.setattr(coordinator.store, 'create_appointment', lambda **kwargs: _fail('create_appointment')(kwargs['slot_id']))
    monkeypatch.setattr(coordinator.store, 'release_slot', _fail('release_slot'))

    with caplog.at_level(logging.ERROR, logger='medbook.services.booking'):
        result = coordinator.book(patient.id, slot_id)

    assert result.outcome is BookingOutcome.REJECTED_BOOKING_FAILED
    assert 'needs reconciliation' in caplog.text
    # The claim stays in place, so the slot is stuck until reconciled.
    assert coordinator.list_slots_for(doctor.id) == []


def test_refresh_failure_does_not_change_outcome(
    coordinator,
    make_slot,
    patient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    slot = make_slot()
    monkeypatch.setattr(coordinator.store, 'list_available_slots', lambda *args, **kwargs: _fail('list')(None))

    result = coordinator.book(patient.id, slot.id)

    assert result.outcome is BookingOutcome.BOOKED
    assert result.slots == []


def test_list_slots_for_never_returns_started_slots(coordinator, make_slot, doctor) -> None:
    make_slot(datetime.now() - timedelta(minutes=30))
    upcoming = make_slot(tomorrow_at(9))

    slots = coordinator.list_slots_for(doctor.id, since=datetime.now() - timedelta(days=2))

    assert [slot.id for slot in slots] == [upcoming.id]


def test_list_slots_for_respects_slot_limit(booking_db, make_slot, doctor) -> None:
    for hour in range(8, 12):
        make_slot(tomorrow_at(hour))

    coordinator = BookingCoordinator(SlotStore(booking_db), slot_limit=2)

    assert [slot.start_time.hour for slot in coordinator.list_slots_for(doctor.id)] == [8, 9]


def test_select_provider_returns_explicit_selection(coordinator, make_slot, patient, doctor) -> None:
    slot = make_slot()

    selection = coordinator.select_provider(patient.id, doctor.id)

    assert selection.patient_id == patient.id
    assert selection.provider_id == doctor.id
    assert [listed.id for listed in selection.slots] == [slot.id]
