import os

from sqlmodel import Session, select

from database import engine, create_db
from models import Patient, User, UserRole
from services.auth import Caller, hash_password
from services.visit_store import VisitStore
from services.visit_workflow import WorkflowEngine

DEMO_HOSPITAL_ID = 1

DEMO_USERS = [
    {
        "name": "Reception Kiran",
        "email": "reception@opdflow.local",
        "password": "reception123",
        "role": UserRole.RECEPTIONIST,
    },
    {
        "name": "Nurse Riya",
        "email": "nurse@opdflow.local",
        "password": "nurse123",
        "role": UserRole.NURSE,
    },
    {
        "name": "Nurse Tara",
        "email": "nurse2@opdflow.local",
        "password": "nurse123",
        "role": UserRole.NURSE,
    },
    {
        "name": "Dr. Priya",
        "email": "doctor@opdflow.local",
        "password": "doctor123",
        "role": UserRole.DOCTOR,
    },
    {
        "name": "Dr. Arjun",
        "email": "doctor2@opdflow.local",
        "password": "doctor123",
        "role": UserRole.DOCTOR,
    },
    {
        "name": "Admin Sahana",
        "email": "admin@opdflow.local",
        "password": "admin123",
        "role": UserRole.ADMIN,
    },
]

DEMO_PATIENTS = [
    {"name": "Aarav Mehta", "age": 34, "gender": "Male", "phone_number": "9800000001"},
    {"name": "Nisha Verma", "age": 27, "gender": "Female", "phone_number": "9800000002"},
    {"name": "Rahul Kapoor", "age": 61, "gender": "Male", "phone_number": "9800000003"},
    {"name": "Kavya Nair", "age": 45, "gender": "Female", "phone_number": "9800000004"},
]


def run_seed(seed_patients: bool = False):
    create_db()

    with Session(engine) as session:
        existing_user = session.exec(select(User)).first()
        existing_patient = session.exec(select(Patient)).first()
        if existing_user or existing_patient:
            print("Database already seeded. Skipping.")
            return

        users_by_email: dict[str, User] = {}
        for spec in DEMO_USERS:
            user = User(
                name=spec["name"],
                email=spec["email"],
                password_hash=hash_password(spec["password"]),
                role=spec["role"],
                hospital_id=DEMO_HOSPITAL_ID,
            )
            session.add(user)
            session.commit()
            session.refresh(user)
            users_by_email[user.email] = user
            print(f"Created user: {user.email} ({user.role.value})")

        if seed_patients:
            receptionist = Caller.from_user(users_by_email["reception@opdflow.local"])
            workflow = WorkflowEngine(VisitStore(session))
            for spec in DEMO_PATIENTS:
                patient = Patient(hospital_id=DEMO_HOSPITAL_ID, **spec)
                session.add(patient)
                session.commit()
                session.refresh(patient)

                visit = workflow.create_visit(patient.id, receptionist)
                print(f"Created patient: {patient.name} (id={patient.id}), visit #{visit.id} [{visit.status.value}]")
        else:
            print("No demo patients seeded (clean slate).")

        print("Demo credentials:")
        for spec in DEMO_USERS:
            print(f"  {spec['email']} / {spec['password']}")
        print("Seed complete.")


if __name__ == "__main__":
    run_seed(seed_patients=os.getenv("OPDFLOW_SEED_PATIENTS", "0") == "1")
