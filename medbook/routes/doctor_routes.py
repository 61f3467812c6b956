from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from medbook.auth.dependencies import get_current_user
from medbook.database import get_db
from medbook.models.user import ROLE_DOCTOR, User
from medbook.routes.common import database_unavailable, ensure_database_ready
from medbook.routes.schemas import AvailableSlotResponse
from medbook.services.booking import BookingCoordinator
from medbook.services.slot_store import SlotStore, SlotStoreError

router = APIRouter(tags=['doctors'])

MAX_SLOT_LISTING_LIMIT = 100


class DoctorResponse(BaseModel):
    id: int
    full_name: str | None = None

    class Config:
        from_attributes = True


def get_doctor_or_404(doctor_id: int, db: Session) -> User:
    doctor = db.query(User).filter(User.id == doctor_id, User.role == ROLE_DOCTOR).first()
    if not doctor:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Doctor not found.',
        )
    return doctor


@router.get('', response_model=list[DoctorResponse])
def list_doctors(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    del current_user
    ensure_database_ready()

    try:
        return db.query(User).filter(User.role == ROLE_DOCTOR).order_by(User.full_name.asc(), User.id.asc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{doctor_id}/slots', response_model=list[AvailableSlotResponse])
def list_doctor_slots(
    doctor_id: int,
    since: datetime | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=MAX_SLOT_LISTING_LIMIT),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        get_doctor_or_404(doctor_id, db)
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    store = SlotStore(db)
    coordinator = BookingCoordinator(store) if limit is None else BookingCoordinator(store, slot_limit=limit)
    try:
        selection = coordinator.select_provider(current_user.id, doctor_id, since=since)
    except SlotStoreError as exc:
        raise database_unavailable() from exc

    return selection.slots
