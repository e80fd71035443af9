import logging
import os
from pathlib import Path

from sqlalchemy import inspect
from sqlmodel import SQLModel, Session, create_engine

DB_FILE = Path(os.getenv("OPDFLOW_DB_FILE", str(Path(__file__).resolve().parent / "opdflow.db")))
DATABASE_URL = f"sqlite:///{DB_FILE}"

engine = create_engine(DATABASE_URL, echo=False, connect_args={"check_same_thread": False})

logger = logging.getLogger("opdflow.database")


REQUIRED_COLUMNS = {
    "user": {
        "id",
        "name",
        "email",
        "password_hash",
        "role",
        "hospital_id",
        "is_active",
        "created_at",
    },
    "patient": {"id", "name", "age", "gender", "phone_number", "hospital_id", "created_at"},
    "visit": {
        "id",
        "patient_id",
        "hospital_id",
        "status",
        "version",
        "visit_date",
        "created_by_id",
        "assigned_nurse_id",
        "assigned_doctor_id",
        "vitals",
        "chief_complaints",
        "general_examination",
        "blood_investigations",
        "systemic_examination",
        "diagnosis",
        "treatment",
        "review_date",
        "entered_by_nurse_id",
        "entered_by_doctor_id",
        "is_nurse_assisted_visit",
        "created_at",
        "nurse_completed_at",
        "doctor_completed_at",
        "updated_at",
        "cancel_reason",
    },
    "visitevent": {
        "id",
        "visit_id",
        "transition",
        "actor_id",
        "actor_role",
        "previous_status",
        "new_status",
        "notes",
        "timestamp",
    },
}


def _schema_needs_rebuild() -> bool:
    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())

    for table_name, required_cols in REQUIRED_COLUMNS.items():
        if table_name not in existing_tables:
            continue
        existing_cols = {col["name"] for col in inspector.get_columns(table_name)}
        if not required_cols.issubset(existing_cols):
            return True

    return False


def create_db():
    if _schema_needs_rebuild():
        logger.warning("[DB] Schema mismatch detected. Rebuilding local SQLite schema.")
        SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)


def get_session():
    with Session(engine) as session:
        yield session
