import os
from dotenv import load_dotenv
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from medbook.core import config


load_dotenv()
DATABASE_URL = os.getenv("DATABASE_URL")

engine = create_engine(DATABASE_URL, echo=config.SQL_ECHO)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_availability_slot_schema_checked = False
_appointment_schema_checked = False


def _apply_migration_steps(table_name: str, migration_steps: list[tuple[str, str]], index_statements: list[str]) -> None:
    inspector = inspect(engine)

    if table_name not in inspector.get_table_names():
        return

    existing_columns = {column['name'] for column in inspector.get_columns(table_name)}

    with engine.begin() as connection:
        for column_name, statement in migration_steps:
            if column_name not in existing_columns:
                connection.execute(text(statement))
        for statement in index_statements:
            connection.execute(text(statement))


def ensure_availability_slot_schema() -> None:
    global _availability_slot_schema_checked

    if _availability_slot_schema_checked:
        return

    with _schema_lock:
        if _availability_slot_schema_checked:
            return

        _apply_migration_steps(
            'availability_slots',
            [
                ('created_at', 'ALTER TABLE availability_slots ADD COLUMN created_at TIMESTAMP'),
                ('updated_at', 'ALTER TABLE availability_slots ADD COLUMN updated_at TIMESTAMP'),
            ],
            [
                'CREATE INDEX IF NOT EXISTS idx_availability_slots_doctor_start '
                'ON availability_slots(doctor_id, start_time)',
                'CREATE INDEX IF NOT EXISTS idx_availability_slots_available_start '
                'ON availability_slots(is_available, start_time)',
            ],
        )

        _availability_slot_schema_checked = True


def ensure_appointment_schema() -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked:
        return

    with _schema_lock:
        if _appointment_schema_checked:
            return

        _apply_migration_steps(
            'appointments',
            [
                ('slot_id', 'ALTER TABLE appointments ADD COLUMN slot_id INTEGER'),
                ('notes', 'ALTER TABLE appointments ADD COLUMN notes VARCHAR'),
                ('created_at', 'ALTER TABLE appointments ADD COLUMN created_at TIMESTAMP'),
                ('updated_at', 'ALTER TABLE appointments ADD COLUMN updated_at TIMESTAMP'),
            ],
            [
                'CREATE INDEX IF NOT EXISTS idx_appointments_patient_start ON appointments(patient_id, start_time)',
                'CREATE INDEX IF NOT EXISTS idx_appointments_doctor_start ON appointments(doctor_id, start_time)',
                'CREATE INDEX IF NOT EXISTS idx_appointments_slot ON appointments(slot_id)',
            ],
        )

        _appointment_schema_checked = True


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
