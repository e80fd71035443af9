from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


class UserRole(str, Enum):
    RECEPTIONIST = "receptionist"
    NURSE = "nurse"
    DOCTOR = "doctor"
    ADMIN = "admin"


class VisitStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    WITH_NURSE = "with-nurse"
    READY_FOR_DOCTOR = "ready-for-doctor"
    WITH_DOCTOR = "with-doctor"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(unique=True, index=True)
    password_hash: str
    role: UserRole
    hospital_id: int = Field(index=True)
    is_active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Patient(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    age: int
    gender: str
    phone_number: str = ""
    hospital_id: int = Field(index=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Visit(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    patient_id: int = Field(foreign_key="patient.id", index=True)
    hospital_id: int = Field(index=True)
    status: VisitStatus = Field(default=VisitStatus.PENDING, index=True)
    version: int = 0  # bumped on every write
    visit_date: date
    created_by_id: Optional[int] = Field(default=None, foreign_key="user.id")

    # Stage claims
    assigned_nurse_id: Optional[int] = Field(default=None, foreign_key="user.id")
    assigned_doctor_id: Optional[int] = Field(default=None, foreign_key="user.id")

    # Stage 1: nurse pre-consultation
    vitals: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    chief_complaints: Optional[str] = None
    past_history: Optional[str] = None
    family_history: Optional[str] = None
    marital_history: Optional[str] = None
    general_examination: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    blood_investigations: Optional[list] = Field(default=None, sa_column=Column(JSON))

    # Stage 2: doctor consultation
    systemic_examination: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    diagnosis: Optional[str] = None
    treatment: Optional[str] = None
    investigation: Optional[str] = None
    advice: Optional[str] = None
    review_date: Optional[date] = None

    # Audit
    entered_by_nurse_id: Optional[int] = None
    entered_by_nurse_name: Optional[str] = None
    entered_by_doctor_id: Optional[int] = None
    entered_by_doctor_name: Optional[str] = None
    is_nurse_assisted_visit: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)
    nurse_completed_at: Optional[datetime] = None
    doctor_completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = Field(default_factory=datetime.utcnow)

    cancel_reason: Optional[str] = None
    cancelled_by_id: Optional[int] = None
    cancelled_at: Optional[datetime] = None


class VisitEvent(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    visit_id: int = Field(foreign_key="visit.id", index=True)
    transition: str
    actor_id: Optional[int] = Field(default=None, foreign_key="user.id")
    actor_role: Optional[UserRole] = None
    previous_status: str
    new_status: str
    notes: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)


# --- Stage payloads ---


class BloodPressure(BaseModel):
    model_config = ConfigDict(extra="forbid")

    systolic: Optional[int] = PydanticField(default=None, ge=0, le=400)
    diastolic: Optional[int] = PydanticField(default=None, ge=0, le=300)


class Vitals(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pulse_rate: Optional[int] = PydanticField(default=None, ge=0, le=400)
    blood_pressure: Optional[BloodPressure] = None
    spo2: Optional[float] = PydanticField(default=None, ge=0, le=100)
    temperature: Optional[float] = PydanticField(default=None, ge=20, le=50)


class GeneralExamination(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pallor: Optional[bool] = None
    icterus: Optional[bool] = None
    clubbing: Optional[bool] = None
    cyanosis: Optional[bool] = None
    lymphadenopathy: Optional[bool] = None


class BloodInvestigation(BaseModel):
    model_config = ConfigDict(extra="forbid")

    test_name: str = PydanticField(min_length=1, max_length=120)
    value: str = PydanticField(default="", max_length=64)
    unit: str = PydanticField(default="", max_length=32)
    reference_range: str = PydanticField(default="", max_length=64)
    test_date: Optional[date] = None


class SystemicExamination(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cvs: Optional[str] = PydanticField(default=None, max_length=2000)
    rs: Optional[str] = PydanticField(default=None, max_length=2000)
    pa: Optional[str] = PydanticField(default=None, max_length=2000)
    cns: Optional[str] = PydanticField(default=None, max_length=2000)


class PreConsultationPayload(BaseModel):
    """Nurse-owned fields. Unset fields are left untouched on merge."""

    model_config = ConfigDict(extra="forbid")

    vitals: Optional[Vitals] = None
    chief_complaints: Optional[str] = PydanticField(default=None, max_length=2000)
    past_history: Optional[str] = PydanticField(default=None, max_length=2000)
    family_history: Optional[str] = PydanticField(default=None, max_length=2000)
    marital_history: Optional[str] = PydanticField(default=None, max_length=2000)
    general_examination: Optional[GeneralExamination] = None
    blood_investigations: Optional[list[BloodInvestigation]] = PydanticField(default=None, max_length=100)


class ConsultationPayload(BaseModel):
    """Doctor-owned fields. Unset fields are left untouched on merge."""

    model_config = ConfigDict(extra="forbid")

    systemic_examination: Optional[SystemicExamination] = None
    diagnosis: Optional[str] = PydanticField(default=None, max_length=2000)
    treatment: Optional[str] = PydanticField(default=None, max_length=4000)
    investigation: Optional[str] = PydanticField(default=None, max_length=2000)
    advice: Optional[str] = PydanticField(default=None, max_length=2000)
    review_date: Optional[date] = None
