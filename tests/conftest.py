"""
Fixtures for the queue scheduler tests.

Provides:
- an in-memory SQLite store
- a controllable clock
- recording (and failing) publisher/notifier fakes
- a controller wired to all of the above
- ``build_queue`` to lay out a session and its tokens directly in the store
"""

from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Union

import pytest

from events import Dispatcher
from locks import SessionLocks
from models import ClinicSession, QueueStatus, QueueToken, SessionStatus, TokenStatus
from providers import ConsultationConfig
from services import QueueController
from store import QueueStore, make_engine

DAY = date(2025, 1, 6)
PROVIDER = "dr-ahmed"


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, minutes: int) -> None:
        self.current += timedelta(minutes=minutes)


class RecordingPublisher:
    def __init__(self) -> None:
        self.events = []

    def publish(self, topic, payload):
        self.events.append((topic, payload))

    def on(self, topic):
        return [payload for t, payload in self.events if t == topic]


class RecordingNotifier:
    def __init__(self) -> None:
        self.notifications = []

    def notify(self, user_id, event_type, payload):
        self.notifications.append((user_id, event_type, payload))

    def of_type(self, event_type):
        return [(user, payload) for user, kind, payload in self.notifications if kind == event_type]


class FailingNotifier:
    def __init__(self) -> None:
        self.attempts = 0

    def notify(self, user_id, event_type, payload):
        self.attempts += 1
        raise RuntimeError("notification channel down")


# ============================================================================
# CORE FIXTURES
# ============================================================================


@pytest.fixture
def store():
    store = QueueStore(make_engine("sqlite://"))
    store.create_tables()
    return store


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 1, 6, 9, 30))


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def locks():
    return SessionLocks(timeout=0.2)


@pytest.fixture
def controller(store, clock, publisher, notifier, locks):
    return QueueController(
        store,
        clock=clock,
        consultation_config=ConsultationConfig(store, default_minutes=20),
        dispatcher=Dispatcher(publisher, notifier),
        locks=locks,
        max_recalls=2,
    )


TokenLayout = Union[int, tuple]


@pytest.fixture
def build_queue(store):
    """
    Lay out a session with tokens.

    Each token entry is either a token number (a waiting, scheduled patient)
    or ``(number, TokenStatus, QueueStatus)``.  Returns the session and a
    ``{token_number: token}`` map; patient ids are ``patient-<number>``.
    """

    def build(
        tokens: Iterable[TokenLayout],
        status: SessionStatus = SessionStatus.live,
        current_token: int = 0,
        provider_id: str = PROVIDER,
        start: str = "09:00",
        paused_at: Optional[datetime] = None,
    ):
        session = ClinicSession(
            provider_id=provider_id,
            date=DAY,
            status=status,
            current_token=current_token,
            session_start_time=start,
            session_end_time="13:00",
            paused_at=paused_at,
        )
        store.add_session(session)
        by_number = {}
        for entry in tokens:
            if isinstance(entry, int):
                number, token_status, queue_status = entry, TokenStatus.scheduled, QueueStatus.waiting
            else:
                number, token_status, queue_status = entry
            token = QueueToken(
                session_id=session.id,
                patient_id=f"patient-{number}",
                patient_name=f"Patient {number}",
                patient_phone=f"+1555000{number:04d}",
                token_number=number,
                status=token_status,
                queue_status=queue_status,
            )
            store.save_token(token)
            by_number[number] = token
        session.appointments = [t.id for t in by_number.values() if t.is_pending]
        store.save_session(session)
        return session, by_number

    return build


def numbers_by_patient(store, session_id):
    return {t.patient_id: t.token_number for t in store.find_tokens(session_id)}
