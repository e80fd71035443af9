from __future__ import annotations

from datetime import date, datetime
import logging
from typing import Any, Callable, Mapping

from pydantic import BaseModel

from errors import ConflictError, NotFound, OwnershipViolation, RoleViolation, ValidationFailed
from models import ConsultationPayload, PreConsultationPayload, Visit, VisitEvent, VisitStatus
from services.auth import Caller
from services.directory import get_patient
from services.visit_store import VisitStore
from state_machine import (
    VALID_TRANSITIONS,
    TransitionRule,
    active_claim,
    initial_status,
    missing_consultation_fields,
    missing_pre_consultation_fields,
    validate_transition,
)

logger = logging.getLogger("opdflow.workflow")

JSON_FIELDS = {"vitals", "general_examination", "blood_investigations", "systemic_examination"}

ChangeBuilder = Callable[[Visit], Mapping[str, Any]]


def _deep_merge(current: dict, incoming: dict) -> dict:
    merged = dict(current)
    for key, value in incoming.items():
        if isinstance(value, dict) and value and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_payload(visit: Visit, payload: BaseModel) -> dict[str, Any]:
    """Column changes for the fields present in ``payload``.

    Omitted fields are left alone and explicit nulls overwrite. Nested objects
    merge key by key, except that an empty object replaces the stored one.
    Lists replace the stored list.
    """
    raw = payload.model_dump(exclude_unset=True)
    as_json = payload.model_dump(mode="json", exclude_unset=True)
    changes: dict[str, Any] = {}
    for field, value in raw.items():
        if field in JSON_FIELDS:
            value = as_json[field]
            current = getattr(visit, field)
            if isinstance(value, dict) and value and isinstance(current, dict):
                value = _deep_merge(current, value)
        changes[field] = value
    return changes


class WorkflowEngine:
    """Two-stage visit state machine: nurse pre-consultation, then doctor consultation.

    Every transition re-reads the visit, checks role, status and ownership,
    and commits through the store's compare-and-swap keyed on the status and
    version it read, so gates and merges never apply to a row that changed
    underneath them. Stage-start transitions retry once after losing a race;
    the retry re-validates and normally ends in an OwnershipViolation. Every
    other transition surfaces ConflictError for the caller to reload.
    """

    def __init__(self, store: VisitStore):
        self.store = store

    # --- reads ---

    def get_visit(self, visit_id: int, caller: Caller) -> Visit:
        visit = self.store.get(visit_id)
        if visit.hospital_id != caller.hospital_id:
            raise NotFound("Visit", visit_id)
        return visit

    def visit_events(self, visit_id: int, caller: Caller) -> list[VisitEvent]:
        self.get_visit(visit_id, caller)
        return self.store.events_for(visit_id)

    # --- creation ---

    def create_visit(
        self,
        patient_id: int,
        caller: Caller,
        visit_date: date | None = None,
        start_immediately: bool = False,
    ) -> Visit:
        status, nurse_assisted = initial_status(caller.role, start_immediately)
        patient = get_patient(self.store.session, patient_id)
        if patient is None or patient.hospital_id != caller.hospital_id:
            raise NotFound("Patient", patient_id)

        visit = Visit(
            patient_id=patient_id,
            hospital_id=caller.hospital_id,
            status=status,
            visit_date=visit_date or date.today(),
            created_by_id=caller.id,
            is_nurse_assisted_visit=nurse_assisted,
        )
        event = VisitEvent(
            transition="create",
            actor_id=caller.id,
            actor_role=caller.role,
            previous_status="",
            new_status=status.value,
        )
        visit = self.store.create(visit, event)
        logger.info(
            "[VISIT] Created #%s for patient #%s in '%s' by %s #%s",
            visit.id,
            patient_id,
            status.value,
            caller.role.value,
            caller.id,
        )
        return visit

    # --- nurse stage ---

    def start_pre_consultation(self, visit_id: int, caller: Caller) -> Visit:
        return self._apply(
            "start_pre_consultation",
            visit_id,
            caller,
            lambda visit: {"assigned_nurse_id": caller.id},
        )

    def update_pre_consultation(self, visit_id: int, caller: Caller, payload: PreConsultationPayload) -> Visit:
        return self._apply(
            "update_pre_consultation",
            visit_id,
            caller,
            lambda visit: merge_payload(visit, payload),
        )

    def complete_pre_consultation(self, visit_id: int, caller: Caller) -> Visit:
        def _changes(visit: Visit) -> dict:
            missing = missing_pre_consultation_fields(visit)
            if missing:
                raise ValidationFailed("Pre-consultation is incomplete", missing)
            return {
                "nurse_completed_at": datetime.utcnow(),
                "entered_by_nurse_id": caller.id,
                "entered_by_nurse_name": caller.name,
            }

        return self._apply("complete_pre_consultation", visit_id, caller, _changes)

    # --- doctor stage ---

    def start_consultation(self, visit_id: int, caller: Caller) -> Visit:
        return self._apply(
            "start_consultation",
            visit_id,
            caller,
            lambda visit: {"assigned_doctor_id": caller.id},
        )

    def start_direct_consultation(self, visit_id: int, caller: Caller) -> Visit:
        return self._apply(
            "start_direct_consultation",
            visit_id,
            caller,
            lambda visit: {"assigned_doctor_id": caller.id},
        )

    def update_consultation(self, visit_id: int, caller: Caller, payload: ConsultationPayload) -> Visit:
        return self._apply(
            "update_consultation",
            visit_id,
            caller,
            lambda visit: merge_payload(visit, payload),
        )

    def finalize_visit(self, visit_id: int, caller: Caller) -> Visit:
        def _changes(visit: Visit) -> dict:
            missing = missing_consultation_fields(visit)
            if missing:
                raise ValidationFailed("Diagnosis and treatment are required to finalize", missing)
            return {
                "doctor_completed_at": datetime.utcnow(),
                "entered_by_doctor_id": caller.id,
                "entered_by_doctor_name": caller.name,
            }

        return self._apply("finalize_visit", visit_id, caller, _changes)

    # --- any stage ---

    def cancel_visit(self, visit_id: int, caller: Caller, reason: str) -> Visit:
        reason = (reason or "").strip()

        def _changes(visit: Visit) -> dict:
            if not reason:
                raise ValidationFailed("A cancellation reason is required", ["reason"])
            return {
                "cancel_reason": reason,
                "cancelled_by_id": caller.id,
                "cancelled_at": datetime.utcnow(),
                "assigned_nurse_id": None,
                "assigned_doctor_id": None,
            }

        return self._apply("cancel_visit", visit_id, caller, _changes, notes=reason)

    # --- internals ---

    def _authorize(self, transition: str, rule: TransitionRule, visit: Visit, caller: Caller) -> None:
        if caller.role not in rule.roles:
            raise RoleViolation(
                f"Role '{caller.role.value}' cannot {transition.replace('_', ' ')}",
                transition=transition,
                role=caller.role.value,
            )

        if rule.claims:
            claim = active_claim(visit)
            if claim and claim[0] == rule.claims and claim[1] != caller.id:
                raise OwnershipViolation(
                    f"Visit #{visit.id} is already claimed by {claim[0]} #{claim[1]}",
                    visit_id=visit.id,
                    owner_id=claim[1],
                )

        validate_transition(transition, visit)

        if rule.claims and visit.status == VisitStatus.DRAFT and visit.created_by_id != caller.id:
            raise OwnershipViolation(
                f"Draft visit #{visit.id} can only be started by its creator",
                visit_id=visit.id,
                owner_id=visit.created_by_id,
            )

        if rule.owner:
            owner_id = visit.assigned_nurse_id if rule.owner == "nurse" else visit.assigned_doctor_id
            if owner_id != caller.id:
                raise OwnershipViolation(
                    f"Visit #{visit.id} is assigned to {rule.owner} #{owner_id}",
                    visit_id=visit.id,
                    owner_id=owner_id,
                )

    def _apply(
        self,
        transition: str,
        visit_id: int,
        caller: Caller,
        build_changes: ChangeBuilder,
        notes: str = "",
    ) -> Visit:
        rule = VALID_TRANSITIONS[transition]
        retries_left = 1 if rule.claims else 0

        while True:
            visit = self.get_visit(visit_id, caller)
            self._authorize(transition, rule, visit, caller)

            previous_status = visit.status
            expected_version = visit.version
            changes = dict(build_changes(visit))
            new_status = rule.target or previous_status
            if rule.target is not None:
                changes["status"] = rule.target

            event = VisitEvent(
                transition=transition,
                actor_id=caller.id,
                actor_role=caller.role,
                previous_status=previous_status.value,
                new_status=new_status.value,
                notes=notes,
            )
            try:
                updated = self.store.compare_and_swap(
                    visit_id,
                    previous_status,
                    changes,
                    event=event,
                    expected_version=expected_version,
                )
            except ConflictError:
                if not retries_left:
                    raise
                retries_left -= 1
                logger.warning("[RETRY] %s on visit #%s after concurrent change", transition, visit_id)
                continue

            logger.info(
                "[TRANSITION] Visit #%s: %s -> %s (%s by %s #%s)",
                visit_id,
                previous_status.value,
                new_status.value,
                transition,
                caller.role.value,
                caller.id,
            )
            return updated
