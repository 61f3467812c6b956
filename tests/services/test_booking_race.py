import threading
from datetime import timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from conftest import TABLES, tomorrow_at
from medbook.database import Base
from medbook.models.appointment import Appointment
from medbook.models.availability_slot import AvailabilitySlot
from medbook.models.user import ROLE_DOCTOR, ROLE_PATIENT, User
from medbook.services.booking import BookingCoordinator, BookingOutcome
from medbook.services.slot_store import SlotStore

PATIENT_COUNT = 4


def test_concurrent_bookings_for_one_slot_yield_a_single_appointment(tmp_path) -> None:
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={'check_same_thread': False, 'timeout': 30},
    )
    Base.metadata.create_all(bind=engine, tables=TABLES)
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    with session_factory() as db:
        doctor = User(email='grey@clinic.example', full_name='Meredith Grey', role=ROLE_DOCTOR)
        patients = [
            User(email=f'patient{index}@example.com', full_name=f'Patient {index}', role=ROLE_PATIENT)
            for index in range(PATIENT_COUNT)
        ]
        db.add_all([doctor, *patients])
        db.commit()

        start_time = tomorrow_at(10)
        slot = AvailabilitySlot(
            doctor_id=doctor.id,
            start_time=start_time,
            end_time=start_time + timedelta(hours=1),
            is_available=True,
        )
        db.add(slot)
        db.commit()
        slot_id = slot.id
        patient_ids = [patient.id for patient in patients]

    barrier = threading.Barrier(PATIENT_COUNT)
    outcomes: dict[int, BookingOutcome] = {}

    def attempt(patient_id: int) -> None:
        with session_factory() as db:
            coordinator = BookingCoordinator(SlotStore(db))
            barrier.wait()
            outcomes[patient_id] = coordinator.book(patient_id, slot_id).outcome

    threads = [threading.Thread(target=attempt, args=(patient_id,)) for patient_id in patient_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes.values()) == sorted(
        [BookingOutcome.BOOKED] + [BookingOutcome.REJECTED_TAKEN] * (PATIENT_COUNT - 1)
    )

    with session_factory() as db:
        appointments = db.query(Appointment).filter(Appointment.slot_id == slot_id).all()
        assert len(appointments) == 1
        winner = next(patient_id for patient_id, outcome in outcomes.items() if outcome is BookingOutcome.BOOKED)
        assert appointments[0].patient_id == winner
        assert db.query(AvailabilitySlot).filter(AvailabilitySlot.id == slot_id).one().is_available is False

    engine.dispose()
