from datetime import date, datetime, time

from fastapi import APIRouter, Depends, Query
from sqlalchemy import func
from sqlmodel import Session, select

from database import get_session
from models import Patient, User, Visit, VisitEvent
from services.access import AUDIT_ROLES
from services.auth import Caller, require_roles
from services.directory import patient_map

router = APIRouter(tags=["audit"])


def _day_bound(value: date, bound: time) -> datetime:
    # A bare date covers the whole day.
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, bound)


@router.get("/audit-log")
def list_audit_log(
    start_date: date | datetime | None = Query(default=None),
    end_date: date | datetime | None = Query(default=None),
    actor_id: int | None = Query(default=None),
    visit_id: int | None = Query(default=None),
    patient_id: int | None = Query(default=None),
    transition: str = Query(default="", max_length=64),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    session: Session = Depends(get_session),
    caller: Caller = Depends(require_roles(*AUDIT_ROLES)),
):
    visit_query = select(Visit.id).where(Visit.hospital_id == caller.hospital_id)
    if visit_id is not None:
        visit_query = visit_query.where(Visit.id == visit_id)
    if patient_id is not None:
        visit_query = visit_query.where(Visit.patient_id == patient_id)

    visit_ids = session.exec(visit_query).all()
    if not visit_ids:
        return {
            "events": [],
            "total": 0,
            "page": page,
            "page_size": page_size,
        }

    event_query = select(VisitEvent).where(VisitEvent.visit_id.in_(visit_ids))  # type: ignore[union-attr]
    if start_date is not None:
        event_query = event_query.where(VisitEvent.timestamp >= _day_bound(start_date, time.min))
    if end_date is not None:
        event_query = event_query.where(VisitEvent.timestamp <= _day_bound(end_date, time.max))
    if actor_id is not None:
        event_query = event_query.where(VisitEvent.actor_id == actor_id)
    if transition.strip():
        event_query = event_query.where(VisitEvent.transition == transition.strip().lower())

    total = session.exec(select(func.count()).select_from(event_query.subquery())).one()
    event_query = event_query.order_by(VisitEvent.timestamp.desc(), VisitEvent.id.desc())  # type: ignore[union-attr]

    events = session.exec(
        event_query.offset((page - 1) * page_size).limit(page_size)
    ).all()

    page_visit_ids = sorted({event.visit_id for event in events})
    visit_map: dict[int, Visit] = {}
    if page_visit_ids:
        visits = session.exec(
            select(Visit).where(Visit.id.in_(page_visit_ids))  # type: ignore[union-attr]
        ).all()
        visit_map = {visit.id: visit for visit in visits if visit.id is not None}

    patients: dict[int, Patient] = patient_map(session, [visit.patient_id for visit in visit_map.values()])

    actor_ids = sorted({event.actor_id for event in events if event.actor_id is not None})
    actor_map: dict[int, User] = {}
    if actor_ids:
        actors = session.exec(
            select(User).where(User.id.in_(actor_ids))  # type: ignore[union-attr]
        ).all()
        actor_map = {actor.id: actor for actor in actors if actor.id is not None}

    payload = []
    for event in events:
        row = event.model_dump()
        visit = visit_map.get(event.visit_id)
        actor = actor_map.get(event.actor_id) if event.actor_id is not None else None

        if visit:
            row["patient_id"] = visit.patient_id
            patient = patients.get(visit.patient_id)
            row["patient_name"] = patient.name if patient else None
        else:
            row["patient_id"] = None
            row["patient_name"] = None

        row["actor_name"] = actor.name if actor else None
        payload.append(row)

    return {
        "events": payload,
        "total": total,
        "page": page,
        "page_size": page_size,
    }
