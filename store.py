"""Persistence for sessions, queue tokens and their side records.

``QueueStore`` wraps a SQLAlchemy engine and exposes the handful of reads and
writes the controller needs.  Every method runs inside ``atomic()``: called on
its own it commits immediately, called inside an outer ``atomic()`` block it
joins that unit of work so a whole queue operation commits or rolls back as
one.

Sessions carry a ``version`` counter.  ``save_session`` only writes when the
stored version still matches the one that was read, which catches writers in
other processes that the in-process session lock cannot see.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterable, Iterator, List, Optional

from sqlalchemy import func, update
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, select

from errors import SessionBusyError
from models import (
    ClinicSession,
    Consultation,
    EventType,
    ProviderSettings,
    QueueEvent,
    QueueStatus,
    QueueToken,
    SessionStatus,
    TokenStatus,
)

logger = logging.getLogger(__name__)


def make_engine(database_url: str):
    """Create an engine for ``database_url``.

    SQLite URLs get ``check_same_thread=False`` so FastAPI's worker threads can
    share the file; in-memory SQLite additionally pins a single connection so
    every session sees the same database.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


class QueueStore:
    def __init__(self, engine) -> None:
        self.engine = engine
        self._local = threading.local()

    def create_tables(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def atomic(self) -> Iterator[Session]:
        current = getattr(self._local, "db", None)
        if current is not None:
            yield current
            return
        db = Session(self.engine, expire_on_commit=False)
        self._local.db = db
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            self._local.db = None
            db.close()

    # ----- sessions -----

    def get_session(self, session_id: str) -> Optional[ClinicSession]:
        with self.atomic() as db:
            return db.get(ClinicSession, session_id)

    def find_session(
        self,
        provider_id: str,
        day: date,
        statuses: Optional[Iterable[SessionStatus]] = None,
    ) -> Optional[ClinicSession]:
        with self.atomic() as db:
            stmt = select(ClinicSession).where(
                ClinicSession.provider_id == provider_id, ClinicSession.date == day
            )
            if statuses is not None:
                stmt = stmt.where(ClinicSession.status.in_(list(statuses)))
            stmt = stmt.order_by(ClinicSession.created_at.desc())
            return db.exec(stmt).first()

    def list_sessions(
        self,
        provider_id: Optional[str] = None,
        day: Optional[date] = None,
        statuses: Optional[Iterable[SessionStatus]] = None,
    ) -> List[ClinicSession]:
        with self.atomic() as db:
            stmt = select(ClinicSession)
            if provider_id is not None:
                stmt = stmt.where(ClinicSession.provider_id == provider_id)
            if day is not None:
                stmt = stmt.where(ClinicSession.date == day)
            if statuses is not None:
                stmt = stmt.where(ClinicSession.status.in_(list(statuses)))
            stmt = stmt.order_by(ClinicSession.date.desc(), ClinicSession.created_at.desc())
            return list(db.exec(stmt).all())

    def add_session(self, session: ClinicSession) -> ClinicSession:
        with self.atomic() as db:
            db.add(session)
            db.flush()
            return session

    def save_session(self, session: ClinicSession) -> ClinicSession:
        """Write ``session`` if nobody else has written it since it was read."""
        with self.atomic() as db:
            expected = session.version
            session.updated_at = datetime.now()
            db.add(session)
            db.flush()
            result = db.execute(
                update(ClinicSession)
                .where(ClinicSession.id == session.id, ClinicSession.version == expected)
                .values(version=expected + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                logger.warning(
                    "Version conflict on session %s (expected version %s)",
                    session.id,
                    expected,
                )
                raise SessionBusyError(
                    "Session was modified concurrently, please retry",
                    {"sessionId": session.id},
                )
            session.version = expected + 1
            db.flush()
            return session

    # ----- tokens -----

    def get_token(self, token_id: str) -> Optional[QueueToken]:
        with self.atomic() as db:
            return db.get(QueueToken, token_id)

    def find_tokens(
        self,
        session_id: str,
        statuses: Optional[Iterable[TokenStatus]] = None,
        queue_statuses: Optional[Iterable[QueueStatus]] = None,
    ) -> List[QueueToken]:
        """Tokens of a session ordered by token number (unnumbered last)."""
        with self.atomic() as db:
            stmt = select(QueueToken).where(QueueToken.session_id == session_id)
            if statuses is not None:
                stmt = stmt.where(QueueToken.status.in_(list(statuses)))
            if queue_statuses is not None:
                stmt = stmt.where(QueueToken.queue_status.in_(list(queue_statuses)))
            tokens = list(db.exec(stmt).all())
        tokens.sort(key=lambda t: (t.token_number is None, t.token_number or 0))
        return tokens

    def save_token(self, token: QueueToken) -> QueueToken:
        with self.atomic() as db:
            token.updated_at = datetime.now()
            db.add(token)
            db.flush()
            return token

    def next_token_number(self, session_id: str) -> int:
        with self.atomic() as db:
            highest = db.exec(
                select(func.max(QueueToken.token_number)).where(
                    QueueToken.session_id == session_id
                )
            ).one()
        return (highest or 0) + 1

    def add_token(
        self,
        session: ClinicSession,
        patient_id: str,
        patient_name: Optional[str] = None,
        patient_phone: Optional[str] = None,
        status: TokenStatus = TokenStatus.scheduled,
        time: Optional[str] = None,
    ) -> QueueToken:
        """Append a token at the end of the session's numbering."""
        with self.atomic():
            token = QueueToken(
                session_id=session.id,
                patient_id=patient_id,
                patient_name=patient_name,
                patient_phone=patient_phone,
                token_number=self.next_token_number(session.id),
                status=status,
                queue_status=QueueStatus.waiting,
                time=time,
            )
            self.save_token(token)
            session.appointments = list(session.appointments or []) + [token.id]
            self.save_session(session)
            return token

    # ----- provider settings -----

    def get_provider_settings(self, provider_id: str) -> Optional[ProviderSettings]:
        with self.atomic() as db:
            return db.get(ProviderSettings, provider_id)

    def save_provider_settings(self, settings: ProviderSettings) -> ProviderSettings:
        with self.atomic() as db:
            return db.merge(settings)

    # ----- consultations and audit trail -----

    def complete_consultation(
        self, token: QueueToken, provider_id: str, now: datetime
    ) -> Consultation:
        """Create the consultation record for ``token`` or mark it completed."""
        with self.atomic() as db:
            consultation = db.exec(
                select(Consultation).where(Consultation.appointment_id == token.id)
            ).first()
            if consultation is None:
                consultation = Consultation(
                    appointment_id=token.id,
                    patient_id=token.patient_id,
                    provider_id=provider_id,
                    consultation_date=now,
                )
            consultation.status = "completed"
            consultation.completed_at = now
            db.add(consultation)
            db.flush()
            return consultation

    def record_event(
        self,
        session_id: str,
        event_type: EventType,
        token_id: Optional[str] = None,
        detail: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> None:
        with self.atomic() as db:
            db.add(
                QueueEvent(
                    session_id=session_id,
                    token_id=token_id,
                    event_type=event_type,
                    detail=detail,
                    at=at or datetime.now(),
                )
            )

    def list_events(self, session_id: str) -> List[QueueEvent]:
        with self.atomic() as db:
            stmt = (
                select(QueueEvent)
                .where(QueueEvent.session_id == session_id)
                .order_by(QueueEvent.id)
            )
            return list(db.exec(stmt).all())
