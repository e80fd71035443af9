from __future__ import annotations

from datetime import date

from models import Visit, VisitStatus
from services.visit_store import VisitStore

NURSE_QUEUE_STATUSES = (VisitStatus.PENDING, VisitStatus.WITH_NURSE)
DOCTOR_QUEUE_STATUSES = (VisitStatus.READY_FOR_DOCTOR, VisitStatus.WITH_DOCTOR)


def nurse_queue(store: VisitStore, hospital_id: int) -> list[Visit]:
    visits = store.list_for_hospital(hospital_id, NURSE_QUEUE_STATUSES)
    return sorted(visits, key=lambda visit: (visit.created_at, visit.id))


def doctor_queue(store: VisitStore, hospital_id: int) -> list[Visit]:
    visits = store.list_for_hospital(hospital_id, DOCTOR_QUEUE_STATUSES)
    return sorted(visits, key=lambda visit: (visit.nurse_completed_at or visit.created_at, visit.id))


def patient_visits(store: VisitStore, patient_id: int, hospital_id: int) -> list[Visit]:
    visits = [v for v in store.list_for_patient(patient_id) if v.hospital_id == hospital_id]
    return sorted(visits, key=lambda visit: (visit.visit_date, visit.created_at), reverse=True)


def hospital_visits(
    store: VisitStore,
    hospital_id: int,
    status: VisitStatus | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    nurse_id: int | None = None,
    doctor_id: int | None = None,
) -> list[Visit]:
    statuses = [status] if status is not None else None
    results = []
    for visit in store.list_for_hospital(hospital_id, statuses):
        if start_date is not None and visit.visit_date < start_date:
            continue
        if end_date is not None and visit.visit_date > end_date:
            continue
        if nurse_id is not None and nurse_id not in (visit.assigned_nurse_id, visit.entered_by_nurse_id):
            continue
        if doctor_id is not None and doctor_id not in (visit.assigned_doctor_id, visit.entered_by_doctor_id):
            continue
        results.append(visit)
    results.sort(key=lambda visit: (visit.visit_date, visit.created_at), reverse=True)
    return results
