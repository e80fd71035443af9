from __future__ import annotations

from collections.abc import Iterable

from sqlmodel import Session, select

from models import Patient, User


def get_patient(session: Session, patient_id: int) -> Patient | None:
    return session.get(Patient, patient_id)


def patient_summary(patient: Patient | None) -> dict | None:
    if patient is None:
        return None
    return {
        "id": patient.id,
        "name": patient.name,
        "age": patient.age,
        "gender": patient.gender,
        "phone_number": patient.phone_number,
    }


def patient_map(session: Session, patient_ids: Iterable[int]) -> dict[int, Patient]:
    ids = sorted(set(patient_ids))
    if not ids:
        return {}
    patients = session.exec(select(Patient).where(Patient.id.in_(ids))).all()  # type: ignore[union-attr]
    return {patient.id: patient for patient in patients if patient.id is not None}


def staff_names(session: Session, user_ids: Iterable[int | None]) -> dict[int, str]:
    ids = sorted({user_id for user_id in user_ids if user_id is not None})
    if not ids:
        return {}
    users = session.exec(select(User).where(User.id.in_(ids))).all()  # type: ignore[union-attr]
    return {user.id: user.name for user in users if user.id is not None}
