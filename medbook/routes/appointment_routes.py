from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from medbook.auth.dependencies import get_current_doctor, get_current_patient, get_current_staff
from medbook.database import get_db
from medbook.models.appointment import (
    ALLOWED_STATUS_TRANSITIONS,
    APPOINTMENT_STATUSES,
    Appointment,
)
from medbook.models.user import ROLE_ADMIN, User
from medbook.routes.common import database_unavailable, ensure_database_ready
from medbook.routes.schemas import AvailableSlotResponse
from medbook.services.booking import BookingCoordinator, BookingOutcome, BookingSelection
from medbook.services.slot_store import SlotStore

router = APIRouter(tags=['appointments'])

BOOKING_STATUS_CODES = {
    BookingOutcome.BOOKED: status.HTTP_201_CREATED,
    BookingOutcome.REJECTED_TAKEN: status.HTTP_409_CONFLICT,
    BookingOutcome.REJECTED_SYSTEM_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
    BookingOutcome.REJECTED_BOOKING_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class BookAppointmentRequest(BaseModel):
    slot_id: int
    doctor_id: int | None = None


class BookingResponse(BaseModel):
    outcome: BookingOutcome
    message: str
    appointment_id: int | None = None
    slots: list[AvailableSlotResponse]


class UpdateAppointmentStatusRequest(BaseModel):
    status: str

    @field_validator('status')
    @classmethod
    def validate_status(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in APPOINTMENT_STATUSES:
            raise ValueError('Invalid appointment status.')
        return normalized


class AppointmentResponse(BaseModel):
    id: int
    patient_id: int
    doctor_id: int
    slot_id: int | None = None
    start_time: datetime
    end_time: datetime
    status: str
    notes: str | None = None
    doctor_name: str | None = None
    patient_name: str | None = None


def to_appointment_response(
    appointment: Appointment,
    doctor_name: str | None = None,
    patient_name: str | None = None,
) -> AppointmentResponse:
    return AppointmentResponse(
        id=appointment.id,
        patient_id=appointment.patient_id,
        doctor_id=appointment.doctor_id,
        slot_id=appointment.slot_id,
        start_time=appointment.start_time,
        end_time=appointment.end_time,
        status=appointment.status,
        notes=appointment.notes,
        doctor_name=doctor_name,
        patient_name=patient_name,
    )


@router.post('', response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def book_appointment(
    data: BookAppointmentRequest,
    response: Response,
    current_user: User = Depends(get_current_patient),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    coordinator = BookingCoordinator(SlotStore(db))
    selection = BookingSelection(patient_id=current_user.id, provider_id=data.doctor_id)
    result = coordinator.book(current_user.id, data.slot_id, selection=selection)

    response.status_code = BOOKING_STATUS_CODES[result.outcome]
    return BookingResponse(
        outcome=result.outcome,
        message=result.message,
        appointment_id=result.appointment_id,
        slots=[AvailableSlotResponse.model_validate(slot) for slot in result.slots],
    )


@router.get('/mine', response_model=list[AppointmentResponse])
def list_my_appointments(
    current_user: User = Depends(get_current_patient),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    doctor = aliased(User)
    try:
        rows = db.query(Appointment, doctor.full_name).outerjoin(
            doctor, doctor.id == Appointment.doctor_id,
        ).filter(
            Appointment.patient_id == current_user.id,
        ).order_by(Appointment.start_time.asc()).all()

        return [to_appointment_response(appointment, doctor_name=doctor_name) for appointment, doctor_name in rows]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/doctor', response_model=list[AppointmentResponse])
def list_doctor_appointments(
    current_user: User = Depends(get_current_doctor),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    patient = aliased(User)
    try:
        rows = db.query(Appointment, patient.full_name).outerjoin(
            patient, patient.id == Appointment.patient_id,
        ).filter(
            Appointment.doctor_id == current_user.id,
        ).order_by(Appointment.start_time.asc()).all()

        return [to_appointment_response(appointment, patient_name=patient_name) for appointment, patient_name in rows]
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.patch('/{appointment_id}/status', response_model=AppointmentResponse)
def update_appointment_status(
    appointment_id: int,
    data: UpdateAppointmentStatusRequest,
    current_user: User = Depends(get_current_staff),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()

        if not appointment:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Appointment not found.',
            )

        if current_user.role != ROLE_ADMIN and appointment.doctor_id != current_user.id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Only the doctor of this appointment can change its status.',
            )

        if data.status not in ALLOWED_STATUS_TRANSITIONS.get(appointment.status, set()):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f'Cannot change an appointment from {appointment.status} to {data.status}.',
            )

        appointment.status = data.status
        db.commit()
        db.refresh(appointment)

        return to_appointment_response(appointment)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
