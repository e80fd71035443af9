from __future__ import annotations

import pytest
import httpx
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine, select

from database import get_session
from main import app
from models import Patient, User, UserRole
from services.auth import Caller, create_access_token, hash_password

TEST_ENGINE = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

HOSPITAL_ID = 1
OTHER_HOSPITAL_ID = 2


def _override_get_session():
    with Session(TEST_ENGINE) as session:
        yield session


@pytest.fixture(autouse=True)
def reset_db():
    SQLModel.metadata.drop_all(TEST_ENGINE)
    SQLModel.metadata.create_all(TEST_ENGINE)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def session():
    with Session(TEST_ENGINE) as test_session:
        yield test_session


@pytest.fixture
def client():
    app.dependency_overrides[get_session] = _override_get_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
async def async_client():
    app.dependency_overrides[get_session] = _override_get_session
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def seeded_users():
    users = {
        "receptionist": {
            "name": "Reception",
            "email": "reception@opdflow.local",
            "password": "reception123",
            "role": UserRole.RECEPTIONIST,
            "hospital_id": HOSPITAL_ID,
        },
        "nurse": {
            "name": "Nurse One",
            "email": "nurse@opdflow.local",
            "password": "nurse123",
            "role": UserRole.NURSE,
            "hospital_id": HOSPITAL_ID,
        },
        "nurse2": {
            "name": "Nurse Two",
            "email": "nurse2@opdflow.local",
            "password": "nurse123",
            "role": UserRole.NURSE,
            "hospital_id": HOSPITAL_ID,
        },
        "doctor": {
            "name": "Doctor One",
            "email": "doctor@opdflow.local",
            "password": "doctor123",
            "role": UserRole.DOCTOR,
            "hospital_id": HOSPITAL_ID,
        },
        "doctor2": {
            "name": "Doctor Two",
            "email": "doctor2@opdflow.local",
            "password": "doctor123",
            "role": UserRole.DOCTOR,
            "hospital_id": HOSPITAL_ID,
        },
        "admin": {
            "name": "Admin",
            "email": "admin@opdflow.local",
            "password": "admin123",
            "role": UserRole.ADMIN,
            "hospital_id": HOSPITAL_ID,
        },
        "outside_nurse": {
            "name": "Other Hospital Nurse",
            "email": "nurse@elsewhere.local",
            "password": "nurse123",
            "role": UserRole.NURSE,
            "hospital_id": OTHER_HOSPITAL_ID,
        },
    }

    with Session(TEST_ENGINE) as session:
        for spec in users.values():
            user = User(
                name=spec["name"],
                email=spec["email"],
                password_hash=hash_password(spec["password"]),
                role=spec["role"],
                hospital_id=spec["hospital_id"],
            )
            session.add(user)
            session.commit()
            session.refresh(user)
            spec["id"] = user.id

    return users


def _headers_for(email: str) -> dict[str, str]:
    with Session(TEST_ENGINE) as session:
        user = session.exec(select(User).where(User.email == email)).one()
        token = create_access_token(user)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def callers(seeded_users) -> dict[str, Caller]:
    return {
        key: Caller(id=spec["id"], role=spec["role"], hospital_id=spec["hospital_id"], name=spec["name"])
        for key, spec in seeded_users.items()
    }


@pytest.fixture
def receptionist_headers(seeded_users):
    return _headers_for(seeded_users["receptionist"]["email"])


@pytest.fixture
def nurse_headers(seeded_users):
    return _headers_for(seeded_users["nurse"]["email"])


@pytest.fixture
def nurse2_headers(seeded_users):
    return _headers_for(seeded_users["nurse2"]["email"])


@pytest.fixture
def doctor_headers(seeded_users):
    return _headers_for(seeded_users["doctor"]["email"])


@pytest.fixture
def doctor2_headers(seeded_users):
    return _headers_for(seeded_users["doctor2"]["email"])


@pytest.fixture
def admin_headers(seeded_users):
    return _headers_for(seeded_users["admin"]["email"])


@pytest.fixture
def outside_nurse_headers(seeded_users):
    return _headers_for(seeded_users["outside_nurse"]["email"])


def _insert_patient(name: str, hospital_id: int = HOSPITAL_ID) -> int:
    with Session(TEST_ENGINE) as session:
        patient = Patient(
            name=name,
            age=44,
            gender="Female",
            phone_number="9800012345",
            hospital_id=hospital_id,
        )
        session.add(patient)
        session.commit()
        session.refresh(patient)
        return patient.id


@pytest.fixture
def patient_id():
    return _insert_patient("Patient One")


@pytest.fixture
def make_patient():
    return _insert_patient
