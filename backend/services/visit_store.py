from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import datetime
import logging
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from errors import ConflictError, NotFound, StoreUnavailable
from models import Visit, VisitEvent, VisitStatus

logger = logging.getLogger("opdflow.store")


class VisitStore:
    """Durable visit records. Every status-changing write goes through compare_and_swap."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, visit_id: int) -> Visit:
        try:
            visit = self.session.get(Visit, visit_id, populate_existing=True)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreUnavailable("Failed to read visit") from exc
        if not visit:
            raise NotFound("Visit", visit_id)
        return visit

    def create(self, visit: Visit, event: VisitEvent | None = None) -> Visit:
        try:
            self.session.add(visit)
            self.session.flush()
            if event is not None:
                event.visit_id = visit.id
                self.session.add(event)
            self.session.commit()
            self.session.refresh(visit)
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreUnavailable("Failed to create visit") from exc
        return visit

    def compare_and_swap(
        self,
        visit_id: int,
        expected_status: VisitStatus,
        changes: Mapping[str, Any],
        event: VisitEvent | None = None,
        expected_version: int | None = None,
    ) -> Visit:
        """Apply ``changes`` only if the visit is still in ``expected_status``.

        With ``expected_version`` the row must also be unchanged since it was
        read, so checks made against that read still hold at commit time.
        The update and the audit event commit together; a lost race rolls back
        both and raises ConflictError.
        """
        values = dict(changes)
        values.setdefault("updated_at", datetime.utcnow())
        values["version"] = Visit.version + 1
        conditions = [Visit.id == visit_id, Visit.status == expected_status]
        if expected_version is not None:
            conditions.append(Visit.version == expected_version)
        statement = (
            update(Visit)
            .where(*conditions)  # type: ignore[arg-type]
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.exec(statement)  # type: ignore[call-overload]
            if result.rowcount != 1:
                self.session.rollback()
                if self.session.get(Visit, visit_id) is None:
                    raise NotFound("Visit", visit_id)
                logger.warning(
                    "[CAS] Visit #%s lost race on status '%s' (version %s)",
                    visit_id,
                    expected_status.value,
                    expected_version,
                )
                raise ConflictError(visit_id, expected_status.value)
            if event is not None:
                event.visit_id = visit_id
                self.session.add(event)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreUnavailable("Failed to save visit") from exc
        return self.get(visit_id)

    def list_for_hospital(
        self,
        hospital_id: int,
        statuses: Iterable[VisitStatus] | None = None,
    ) -> list[Visit]:
        query = select(Visit).where(Visit.hospital_id == hospital_id)
        if statuses is not None:
            query = query.where(Visit.status.in_(list(statuses)))  # type: ignore[union-attr]
        return self._all(query)

    def list_for_patient(self, patient_id: int) -> list[Visit]:
        return self._all(select(Visit).where(Visit.patient_id == patient_id))

    def events_for(self, visit_id: int) -> list[VisitEvent]:
        return self._all(
            select(VisitEvent)
            .where(VisitEvent.visit_id == visit_id)
            .order_by(VisitEvent.timestamp.asc(), VisitEvent.id.asc())  # type: ignore[union-attr]
        )

    def _all(self, query) -> list:
        try:
            return list(self.session.exec(query).all())
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StoreUnavailable("Failed to query visits") from exc
