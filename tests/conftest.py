import os
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')
os.environ.setdefault('JWT_SECRET_KEY', 'test-secret-key-with-enough-length-for-hs256')

from medbook.database import Base  # noqa: E402
from medbook.models.appointment import Appointment  # noqa: E402
from medbook.models.availability_slot import AvailabilitySlot  # noqa: E402
from medbook.models.user import ROLE_DOCTOR, ROLE_PATIENT, User  # noqa: E402

TABLES = [User.__table__, AvailabilitySlot.__table__, Appointment.__table__]


def tomorrow_at(hour: int, minute: int = 0) -> datetime:
    return (datetime.now() + timedelta(days=1)).replace(hour=hour, minute=minute, second=0, microsecond=0)


@pytest.fixture
def booking_db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine, tables=TABLES)

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine, tables=list(reversed(TABLES)))


@pytest.fixture
def doctor(booking_db) -> User:
    user = User(email='house@clinic.example', full_name='Gregory House', role=ROLE_DOCTOR)
    booking_db.add(user)
    booking_db.commit()
    booking_db.refresh(user)
    return user


@pytest.fixture
def patient(booking_db) -> User:
    user = User(email='ana@example.com', full_name='Ana Souza', role=ROLE_PATIENT)
    booking_db.add(user)
    booking_db.commit()
    booking_db.refresh(user)
    return user


@pytest.fixture
def make_slot(booking_db, doctor):
    def factory(start_time: datetime | None = None, is_available: bool = True, doctor_id: int | None = None):
        start_time = start_time or tomorrow_at(9)
        slot = AvailabilitySlot(
            doctor_id=doctor_id or doctor.id,
            start_time=start_time,
            end_time=start_time + timedelta(hours=1),
            is_available=is_available,
        )
        booking_db.add(slot)
        booking_db.commit()
        booking_db.refresh(slot)
        return slot

    return factory


@pytest.fixture(autouse=True)
def skip_schema_checks(monkeypatch: pytest.MonkeyPatch) -> None:
    for module in ('appointment_routes', 'availability_routes', 'doctor_routes'):
        monkeypatch.setattr(f'medbook.routes.{module}.ensure_database_ready', lambda: None)
