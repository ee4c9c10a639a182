"""Database models for the clinic queue scheduler.

We use SQLModel to define the schema.  A ``ClinicSession`` is one provider's
working day; ``QueueToken`` rows are the booked patients in that day's queue,
each holding a token number.  ``ProviderSettings`` keeps per-provider
configuration such as the average consultation length, ``Consultation`` is the
downstream record opened when a patient is seen, and ``QueueEvent`` rows are
an audit trail of every queue operation.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date as date_type
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Union

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


def new_id() -> str:
    return uuid.uuid4().hex


def timestamp_column(nullable: bool = True) -> Column:
    """A timezone-naive ``DATETIME`` column; clinic times are local wall-clock times."""
    return Column(DateTime(timezone=False), nullable=nullable)


class SessionStatus(str, Enum):
    scheduled = "scheduled"
    live = "live"
    paused = "paused"
    completed = "completed"
    cancelled = "cancelled"


class TokenStatus(str, Enum):
    """Coarse appointment lifecycle."""

    scheduled = "scheduled"
    confirmed = "confirmed"
    waiting = "waiting"
    called = "called"
    in_consultation = "in-consultation"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no-show"


class QueueStatus(str, Enum):
    """Scheduler-level state; drives ETA and reordering eligibility."""

    waiting = "waiting"
    called = "called"
    in_consultation = "in-consultation"
    skipped = "skipped"
    no_show = "no-show"
    completed = "completed"
    cancelled = "cancelled"


class EventType(str, Enum):
    opened = "opened"
    started = "started"
    called = "called"
    skipped = "skipped"
    moved = "moved"
    recalled = "recalled"
    no_show = "no_show"
    status_changed = "status_changed"
    completed = "completed"
    paused = "paused"
    resumed = "resumed"
    ended = "ended"
    cancelled = "cancelled"


TERMINAL_SESSION_STATUSES = frozenset({SessionStatus.completed, SessionStatus.cancelled})

# scheduled -> live -> paused -> live -> ... -> completed, or -> cancelled from
# any non-terminal state.
SESSION_TRANSITIONS = {
    SessionStatus.scheduled: frozenset({SessionStatus.live, SessionStatus.cancelled}),
    SessionStatus.live: frozenset(
        {SessionStatus.paused, SessionStatus.completed, SessionStatus.cancelled}
    ),
    SessionStatus.paused: frozenset(
        {SessionStatus.live, SessionStatus.completed, SessionStatus.cancelled}
    ),
    SessionStatus.completed: frozenset(),
    SessionStatus.cancelled: frozenset(),
}

# Tokens in these statuses anchor the numbering and are never renumbered.
FIXED_STATUSES = frozenset({TokenStatus.completed, TokenStatus.cancelled})

# Statuses call-next may pick from.
CALLABLE_STATUSES = frozenset(
    {TokenStatus.scheduled, TokenStatus.confirmed, TokenStatus.waiting}
)

# Tokens still owed a consultation.
PENDING_STATUSES = frozenset(
    {
        TokenStatus.scheduled,
        TokenStatus.confirmed,
        TokenStatus.waiting,
        TokenStatus.called,
        TokenStatus.in_consultation,
    }
)

ACTIVE_CALL_STATUSES = frozenset({TokenStatus.called, TokenStatus.in_consultation})

# A token with one of these queue statuses is not counted as "ahead" of anyone.
OUT_OF_LINE_QUEUE_STATUSES = frozenset(
    {
        QueueStatus.skipped,
        QueueStatus.no_show,
        QueueStatus.completed,
        QueueStatus.cancelled,
    }
)


class ClinicSession(SQLModel, table=True):
    __tablename__ = "clinic_session"

    id: str = Field(default_factory=new_id, primary_key=True)
    provider_id: str = Field(index=True)
    date: date_type = Field(index=True)
    status: SessionStatus = Field(default=SessionStatus.scheduled, index=True)
    current_token: int = Field(default=0)
    max_tokens: Optional[int] = None
    session_start_time: str
    session_end_time: str
    appointments: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    started_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    ended_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    paused_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    paused_minutes_total: int = Field(default=0)
    pause_history: List[dict] = Field(default_factory=list, sa_column=Column(JSON))
    version: int = Field(default=0)
    created_at: datetime = Field(default_factory=datetime.now, sa_column=timestamp_column(False))
    updated_at: datetime = Field(default_factory=datetime.now, sa_column=timestamp_column(False))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    @property
    def is_paused(self) -> bool:
        return self.status == SessionStatus.paused


class QueueToken(SQLModel, table=True):
    """An appointment as it sits in a session's queue."""

    __tablename__ = "queue_token"

    id: str = Field(default_factory=new_id, primary_key=True)
    session_id: str = Field(foreign_key="clinic_session.id", index=True)
    patient_id: str = Field(index=True)
    patient_name: Optional[str] = None
    patient_phone: Optional[str] = None
    token_number: Optional[int] = Field(default=None, index=True)
    status: TokenStatus = Field(default=TokenStatus.scheduled)
    queue_status: QueueStatus = Field(default=QueueStatus.waiting)
    recall_count: int = Field(default=0)
    time: Optional[str] = None
    called_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    completed_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    cancelled_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    consultation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now, sa_column=timestamp_column(False))
    updated_at: datetime = Field(default_factory=datetime.now, sa_column=timestamp_column(False))

    @property
    def is_fixed(self) -> bool:
        return self.status in FIXED_STATUSES

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_STATUSES


class ProviderSettings(SQLModel, table=True):
    __tablename__ = "provider_settings"

    provider_id: str = Field(primary_key=True)
    average_consultation_minutes: Optional[int] = None


class Consultation(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    appointment_id: str = Field(index=True, unique=True)
    patient_id: str
    provider_id: str
    status: str = Field(default="in-progress")
    consultation_date: datetime = Field(default_factory=datetime.now, sa_column=timestamp_column(False))
    completed_at: Optional[datetime] = Field(default=None, sa_column=timestamp_column())


class QueueEvent(SQLModel, table=True):
    __tablename__ = "queue_event"

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(index=True)
    token_id: Optional[str] = Field(default=None, index=True)
    event_type: EventType
    detail: Optional[str] = None
    at: datetime = Field(default_factory=datetime.now, sa_column=timestamp_column(False))


@dataclass(frozen=True)
class Fixed:
    """A slot held by a completed or cancelled token."""

    token_number: int


@dataclass
class Movable:
    """A token whose number the scheduler may reassign."""

    token: QueueToken

    @property
    def token_number(self) -> int:
        return self.token.token_number


Slot = Union[Fixed, Movable]


def partition(tokens: Iterable[QueueToken]) -> List[Slot]:
    """Classify a session's numbered tokens in one pass, ordered by number."""
    slots: List[Slot] = []
    for token in tokens:
        if token.token_number is None:
            continue
        if token.is_fixed:
            slots.append(Fixed(token.token_number))
        else:
            slots.append(Movable(token))
    slots.sort(key=lambda slot: slot.token_number)
    return slots
