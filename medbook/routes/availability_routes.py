from datetime import date, datetime, time, timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from medbook.auth.dependencies import get_current_doctor
from medbook.core import config
from medbook.database import get_db
from medbook.models.availability_slot import AvailabilitySlot
from medbook.models.user import User
from medbook.routes.common import database_unavailable, ensure_database_ready
from medbook.routes.schemas import AvailableSlotResponse
from medbook.services.slot_store import live_appointment_exists

router = APIRouter(tags=['availability'])

MIN_SLOT_DURATION_MINUTES = 15
MAX_SLOT_DURATION_MINUTES = 240


class CreateSlotsRequest(BaseModel):
    date: date
    start_hour: int = config.WORKDAY_START_HOUR
    end_hour: int = config.WORKDAY_END_HOUR
    duration_minutes: int = config.DEFAULT_SLOT_DURATION_MINUTES

    @field_validator('start_hour', 'end_hour')
    @classmethod
    def validate_hour(cls, value: int) -> int:
        if not 0 <= value <= 24:
            raise ValueError('Hours must be between 0 and 24.')
        return value

    @field_validator('duration_minutes')
    @classmethod
    def validate_duration(cls, value: int) -> int:
        if not MIN_SLOT_DURATION_MINUTES <= value <= MAX_SLOT_DURATION_MINUTES:
            raise ValueError(
                f'Slot duration must be between {MIN_SLOT_DURATION_MINUTES} and {MAX_SLOT_DURATION_MINUTES} minutes.'
            )
        return value

    @model_validator(mode='after')
    def validate_window(self) -> 'CreateSlotsRequest':
        if self.start_hour >= self.end_hour:
            raise ValueError('The working window must end after it starts.')
        return self


class UpdateSlotRequest(BaseModel):
    is_available: bool


def build_slot_windows(
    slot_date: date,
    start_hour: int,
    end_hour: int,
    duration_minutes: int,
) -> list[tuple[datetime, datetime]]:
    """Split a working window into back-to-back slots; a trailing partial slot is dropped."""
    day_start = datetime.combine(slot_date, time(0, 0))
    current = day_start + timedelta(hours=start_hour)
    window_end = day_start + timedelta(hours=end_hour)
    step = timedelta(minutes=duration_minutes)

    windows: list[tuple[datetime, datetime]] = []
    while current + step <= window_end:
        windows.append((current, current + step))
        current += step

    return windows


@router.post('/slots', response_model=list[AvailableSlotResponse], status_code=status.HTTP_201_CREATED)
def create_slots(
    data: CreateSlotsRequest,
    current_user: User = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    if data.date < date.today():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Slots cannot be created for past dates.',
        )

    ensure_database_ready()

    now = datetime.now()
    windows = [
        (start_time, end_time)
        for start_time, end_time in build_slot_windows(data.date, data.start_hour, data.end_hour, data.duration_minutes)
        if start_time > now
    ]

    try:
        existing_starts = {
            start_time
            for (start_time,) in db.query(AvailabilitySlot.start_time).filter(
                AvailabilitySlot.doctor_id == current_user.id,
                AvailabilitySlot.start_time >= datetime.combine(data.date, time(0, 0)),
                AvailabilitySlot.start_time < datetime.combine(data.date + timedelta(days=1), time(0, 0)),
            ).all()
        }

        created_slots = [
            AvailabilitySlot(
                doctor_id=current_user.id,
                start_time=start_time,
                end_time=end_time,
                is_available=True,
            )
            for start_time, end_time in windows
            if start_time not in existing_starts
        ]

        db.add_all(created_slots)
        db.commit()
        for slot in created_slots:
            db.refresh(slot)

        return created_slots
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc


@router.get('/slots', response_model=list[AvailableSlotResponse])
def list_my_slots(
    current_user: User = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return db.query(AvailabilitySlot).filter(
            AvailabilitySlot.doctor_id == current_user.id,
            AvailabilitySlot.start_time >= datetime.now(),
        ).order_by(AvailabilitySlot.start_time.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.patch('/slots/{slot_id}', response_model=AvailableSlotResponse)
def update_slot_availability(
    slot_id: int,
    data: UpdateSlotRequest,
    current_user: User = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    """Open or close one of the caller's slots.

    The live-appointment check only sees committed appointments. A claim whose
    appointment insert has not committed yet is not covered, so reopening in
    that window can let the slot be claimed twice.
    """
    ensure_database_ready()

    try:
        slot = db.query(AvailabilitySlot).filter(AvailabilitySlot.id == slot_id).first()

        if not slot:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Slot not found.',
            )

        if slot.doctor_id != current_user.id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Only the doctor who owns this slot can change it.',
            )

        if data.is_available and not slot.is_available:
            has_live_appointment = db.query(AvailabilitySlot.id).filter(
                AvailabilitySlot.id == slot_id,
                live_appointment_exists(),
            ).first()
            if has_live_appointment:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail='This slot has an active appointment and cannot be reopened.',
                )

        slot.is_available = data.is_available
        db.commit()
        db.refresh(slot)

        return slot
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
