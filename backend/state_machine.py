from __future__ import annotations

from dataclasses import dataclass

from errors import InvalidTransition, RoleViolation
from models import UserRole, Visit, VisitStatus


@dataclass(frozen=True)
class TransitionRule:
    sources: tuple[VisitStatus, ...]
    target: VisitStatus | None  # None keeps the current status
    roles: frozenset[UserRole]
    claims: str | None = None  # stage claimed by the caller
    owner: str | None = None  # stage whose assignee must be the caller


NURSE = frozenset({UserRole.NURSE})
DOCTOR = frozenset({UserRole.DOCTOR})

TERMINAL_STATES: set[VisitStatus] = {VisitStatus.COMPLETED, VisitStatus.CANCELLED}

NON_TERMINAL_STATES: tuple[VisitStatus, ...] = tuple(s for s in VisitStatus if s not in TERMINAL_STATES)

VALID_TRANSITIONS: dict[str, TransitionRule] = {
    "start_pre_consultation": TransitionRule(
        sources=(VisitStatus.PENDING, VisitStatus.DRAFT),
        target=VisitStatus.WITH_NURSE,
        roles=NURSE,
        claims="nurse",
    ),
    "update_pre_consultation": TransitionRule(
        sources=(VisitStatus.WITH_NURSE,),
        target=None,
        roles=NURSE,
        owner="nurse",
    ),
    "complete_pre_consultation": TransitionRule(
        sources=(VisitStatus.WITH_NURSE,),
        target=VisitStatus.READY_FOR_DOCTOR,
        roles=NURSE,
        owner="nurse",
    ),
    "start_consultation": TransitionRule(
        sources=(VisitStatus.READY_FOR_DOCTOR,),
        target=VisitStatus.WITH_DOCTOR,
        roles=DOCTOR,
        claims="doctor",
    ),
    "start_direct_consultation": TransitionRule(
        sources=(VisitStatus.DRAFT,),
        target=VisitStatus.WITH_DOCTOR,
        roles=DOCTOR,
        claims="doctor",
    ),
    "update_consultation": TransitionRule(
        sources=(VisitStatus.WITH_DOCTOR,),
        target=None,
        roles=DOCTOR,
        owner="doctor",
    ),
    "finalize_visit": TransitionRule(
        sources=(VisitStatus.WITH_DOCTOR,),
        target=VisitStatus.COMPLETED,
        roles=DOCTOR,
        owner="doctor",
    ),
    "cancel_visit": TransitionRule(
        sources=NON_TERMINAL_STATES,
        target=VisitStatus.CANCELLED,
        roles=frozenset({UserRole.NURSE, UserRole.DOCTOR, UserRole.ADMIN}),
    ),
}

# The only transition allowed to leave a draft, keyed by is_nurse_assisted_visit.
DRAFT_EXITS: dict[bool, str] = {
    True: "start_pre_consultation",
    False: "start_direct_consultation",
}

# Status in which each stage's claim is active.
STAGE_STATUS: dict[str, VisitStatus] = {
    "nurse": VisitStatus.WITH_NURSE,
    "doctor": VisitStatus.WITH_DOCTOR,
}

CREATE_ROLES: set[UserRole] = {UserRole.RECEPTIONIST, UserRole.NURSE, UserRole.DOCTOR}

VITALS_KEYS = ("pulse_rate", "spo2", "temperature")
BLOOD_PRESSURE_KEYS = ("systolic", "diastolic")


def initial_status(creator_role: UserRole, start_immediately: bool = False) -> tuple[VisitStatus, bool]:
    """Return (status, is_nurse_assisted_visit) for a new visit."""
    if creator_role not in CREATE_ROLES:
        raise RoleViolation(f"Role '{creator_role.value}' cannot create visits")
    if not start_immediately:
        return VisitStatus.PENDING, True
    if creator_role == UserRole.NURSE:
        return VisitStatus.DRAFT, True
    if creator_role == UserRole.DOCTOR:
        return VisitStatus.DRAFT, False
    raise RoleViolation(f"Role '{creator_role.value}' cannot start a visit immediately")


def allowed_sources(transition: str, is_nurse_assisted: bool = True) -> list[VisitStatus]:
    rule = VALID_TRANSITIONS.get(transition)
    if rule is None:
        raise ValueError(f"Unknown transition: {transition}")
    sources = list(rule.sources)
    if rule.claims and VisitStatus.DRAFT in sources and DRAFT_EXITS[is_nurse_assisted] != transition:
        sources.remove(VisitStatus.DRAFT)
    return sources


def validate_transition(transition: str, visit: Visit) -> TransitionRule:
    """Return the rule if ``visit.status`` permits the transition, raise InvalidTransition otherwise."""
    allowed = allowed_sources(transition, visit.is_nurse_assisted_visit)
    if visit.status not in allowed:
        raise InvalidTransition(transition, visit.status.value, [s.value for s in allowed])
    return VALID_TRANSITIONS[transition]


def available_transitions(visit: Visit) -> list[str]:
    return [
        name
        for name in VALID_TRANSITIONS
        if visit.status in allowed_sources(name, visit.is_nurse_assisted_visit)
    ]


def is_terminal(status: VisitStatus) -> bool:
    return status in TERMINAL_STATES


def active_claim(visit: Visit) -> tuple[str, int] | None:
    """The (stage, staff id) owning the visit right now, if any."""
    if visit.status == STAGE_STATUS["nurse"] and visit.assigned_nurse_id is not None:
        return "nurse", visit.assigned_nurse_id
    if visit.status == STAGE_STATUS["doctor"] and visit.assigned_doctor_id is not None:
        return "doctor", visit.assigned_doctor_id
    return None


def _filled(value) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def missing_pre_consultation_fields(visit: Visit) -> list[str]:
    missing = []
    vitals = visit.vitals or {}
    bp = vitals.get("blood_pressure") or {}
    has_vitals = any(_filled(vitals.get(key)) for key in VITALS_KEYS) or any(
        _filled(bp.get(key)) for key in BLOOD_PRESSURE_KEYS
    )
    if not has_vitals:
        missing.append("vitals")
    if not _filled(visit.chief_complaints):
        missing.append("chief_complaints")
    return missing


def missing_consultation_fields(visit: Visit) -> list[str]:
    return [field for field in ("diagnosis", "treatment") if not _filled(getattr(visit, field))]
