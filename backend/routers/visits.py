from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlmodel import Session

from database import get_session
from errors import NotFound
from models import ConsultationPayload, PreConsultationPayload, UserRole, Visit, VisitStatus
from services.access import can_access_queue
from services.auth import Caller, get_caller, require_roles
from services.directory import get_patient, patient_map, patient_summary, staff_names
from services.queues import doctor_queue, hospital_visits, nurse_queue, patient_visits
from services.visit_store import VisitStore
from services.visit_workflow import WorkflowEngine
from state_machine import active_claim, available_transitions, is_terminal

router = APIRouter(prefix="/visits", tags=["visits"])

requires_visit_creator = require_roles(UserRole.RECEPTIONIST, UserRole.NURSE, UserRole.DOCTOR)


def get_workflow(session: Session = Depends(get_session)) -> WorkflowEngine:
    return WorkflowEngine(VisitStore(session))


class VisitCreate(BaseModel):
    patient_id: int
    visit_date: Optional[date] = None
    start_immediately: bool = False


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


def visit_response(visit: Visit) -> dict:
    data = visit.model_dump()
    claim = active_claim(visit)
    data["audit"] = {
        "entered_by": {
            "nurse_id": visit.entered_by_nurse_id,
            "nurse_name": visit.entered_by_nurse_name,
            "doctor_id": visit.entered_by_doctor_id,
            "doctor_name": visit.entered_by_doctor_name,
        },
        "timestamps": {
            "created_at": visit.created_at,
            "nurse_completed_at": visit.nurse_completed_at,
            "doctor_completed_at": visit.doctor_completed_at,
            "updated_at": visit.updated_at,
        },
        "is_nurse_assisted_visit": visit.is_nurse_assisted_visit,
    }
    data["active_owner_id"] = claim[1] if claim else None
    data["is_terminal"] = is_terminal(visit.status)
    data["allowed_transitions"] = available_transitions(visit)
    return data


def _visit_rows(visits: list[Visit], session: Session) -> list[dict]:
    patients = patient_map(session, [visit.patient_id for visit in visits])
    names = staff_names(
        session,
        [visit.assigned_nurse_id for visit in visits] + [visit.assigned_doctor_id for visit in visits],
    )

    rows = []
    for visit in visits:
        data = visit_response(visit)
        data["patient"] = patient_summary(patients.get(visit.patient_id))
        data["assigned_nurse_name"] = names.get(visit.assigned_nurse_id) if visit.assigned_nurse_id else None
        data["assigned_doctor_name"] = names.get(visit.assigned_doctor_id) if visit.assigned_doctor_id else None
        rows.append(data)
    return rows


def _ensure_queue_access(caller: Caller, queue: str):
    if not can_access_queue(caller.role, queue):
        raise HTTPException(
            status_code=403,
            detail=f"Role '{caller.role.value}' cannot access the {queue} queue",
        )


@router.post("", status_code=201)
def create_visit(
    body: VisitCreate,
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(requires_visit_creator),
):
    visit = workflow.create_visit(
        body.patient_id,
        caller,
        visit_date=body.visit_date,
        start_immediately=body.start_immediately,
    )
    return visit_response(visit)


@router.get("")
def list_hospital_visits(
    status: Optional[VisitStatus] = Query(default=None),
    start_date: Optional[date] = Query(default=None),
    end_date: Optional[date] = Query(default=None),
    nurse_id: Optional[int] = Query(default=None),
    doctor_id: Optional[int] = Query(default=None),
    session: Session = Depends(get_session),
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(get_caller),
):
    visits = hospital_visits(
        workflow.store,
        caller.hospital_id,
        status=status,
        start_date=start_date,
        end_date=end_date,
        nurse_id=nurse_id,
        doctor_id=doctor_id,
    )
    return _visit_rows(visits, session)


@router.get("/nurse/queue")
def get_nurse_queue(
    session: Session = Depends(get_session),
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(get_caller),
):
    _ensure_queue_access(caller, "nurse")
    return _visit_rows(nurse_queue(workflow.store, caller.hospital_id), session)


@router.get("/doctor/queue")
def get_doctor_queue(
    session: Session = Depends(get_session),
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(get_caller),
):
    _ensure_queue_access(caller, "doctor")
    return _visit_rows(doctor_queue(workflow.store, caller.hospital_id), session)


@router.get("/patient/{patient_id}")
def get_patient_visits(
    patient_id: int,
    session: Session = Depends(get_session),
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(get_caller),
):
    patient = get_patient(session, patient_id)
    if not patient or patient.hospital_id != caller.hospital_id:
        raise NotFound("Patient", patient_id)
    visits = patient_visits(workflow.store, patient_id, caller.hospital_id)
    return [visit_response(visit) for visit in visits]


@router.get("/{visit_id}")
def get_visit(
    visit_id: int,
    session: Session = Depends(get_session),
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(get_caller),
):
    visit = workflow.get_visit(visit_id, caller)
    return _visit_rows([visit], session)[0]


@router.get("/{visit_id}/events")
def get_visit_events(
    visit_id: int,
    session: Session = Depends(get_session),
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(get_caller),
):
    events = workflow.visit_events(visit_id, caller)
    names = staff_names(session, [event.actor_id for event in events])

    results = []
    for event in events:
        data = event.model_dump()
        data["actor_name"] = names.get(event.actor_id) if event.actor_id is not None else None
        results.append(data)
    return results


# --- Nurse stage ---


@router.post("/{visit_id}/nurse/start")
def start_pre_consultation(
    visit_id: int,
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(get_caller),
):
    return visit_response(workflow.start_pre_consultation(visit_id, caller))


@router.put("/{visit_id}/nurse")
def update_pre_consultation(
    visit_id: int,
    body: PreConsultationPayload,
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(get_caller),
):
    return visit_response(workflow.update_pre_consultation(visit_id, caller, body))


@router.post("/{visit_id}/nurse/complete")
def complete_pre_consultation(
    visit_id: int,
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(get_caller),
):
    return visit_response(workflow.complete_pre_consultation(visit_id, caller))


# --- Doctor stage ---


@router.post("/{visit_id}/doctor/start")
def start_consultation(
    visit_id: int,
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(get_caller),
):
    return visit_response(workflow.start_consultation(visit_id, caller))


@router.post("/{visit_id}/doctor/start-direct")
def start_direct_consultation(
    visit_id: int,
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(get_caller),
):
    return visit_response(workflow.start_direct_consultation(visit_id, caller))


@router.put("/{visit_id}/doctor")
def update_consultation(
    visit_id: int,
    body: ConsultationPayload,
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(get_caller),
):
    return visit_response(workflow.update_consultation(visit_id, caller, body))


@router.post("/{visit_id}/doctor/finalize")
def finalize_visit(
    visit_id: int,
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(get_caller),
):
    return visit_response(workflow.finalize_visit(visit_id, caller))


@router.post("/{visit_id}/cancel")
def cancel_visit(
    visit_id: int,
    body: CancelRequest,
    workflow: WorkflowEngine = Depends(get_workflow),
    caller: Caller = Depends(get_caller),
):
    return visit_response(workflow.cancel_visit(visit_id, caller, body.reason))
