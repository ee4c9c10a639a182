"""Queue controller: the stateful operations on a provider's live queue.

Each mutating operation follows the same shape:

1. take the session's lock (bounded wait, ``SessionBusyError`` on timeout);
2. open one store unit of work and read the session and all of its tokens;
3. mutate, then check that no two non-fixed tokens share a token number and
   that none sits on a fixed token's number (``ConsistencyError`` rolls the
   whole unit of work back);
4. recompute ETAs over the post-mutation token set;
5. after commit, hand the collected events and notifications to the
   dispatcher, which delivers them best-effort.

Token numbers of completed and cancelled tokens are fixed: no operation here
ever renumbers them.
"""

from __future__ import annotations

import logging
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import config
from errors import (
    ConsistencyError,
    InvalidStateError,
    NoEligibleTokenError,
    NotFoundError,
    RecallLimitExceededError,
    SessionBusyError,
    UnauthorizedError,
)
from eta import ETA, compute_etas, parse_clock, token_time
from events import Dispatcher, Outbox, RedisEventPublisher, RedisNotifier, patient_topic, session_topic
from locks import SessionLocks
from models import (
    ACTIVE_CALL_STATUSES,
    CALLABLE_STATUSES,
    SESSION_TRANSITIONS,
    ClinicSession,
    EventType,
    Fixed,
    Movable,
    QueueStatus,
    QueueToken,
    SessionStatus,
    TokenStatus,
    partition,
)
from providers import Clock, ConsultationConfig
from store import QueueStore

logger = logging.getLogger(__name__)

UPDATABLE_QUEUE_STATUSES = frozenset(
    {
        QueueStatus.waiting,
        QueueStatus.in_consultation,
        QueueStatus.no_show,
        QueueStatus.completed,
    }
)

NO_SHOW_REASON = "Patient did not show up for appointment"


@dataclass
class CallNextResult:
    session: ClinicSession
    appointment: QueueToken
    etas: List[ETA]


@dataclass
class SkipResult:
    old_token_number: int
    new_token_number: int
    patients_shifted: int
    appointment: QueueToken
    etas: List[ETA] = field(default_factory=list)


@dataclass
class RecallResult:
    appointment: QueueToken
    recall_count: int
    can_recall_again: bool
    eta: Optional[ETA] = None


@dataclass
class NoShowResult:
    appointment: QueueToken
    can_reschedule: bool = True


@dataclass
class MoveResult:
    appointment: QueueToken
    moved: bool
    swapped_with: Optional[QueueToken] = None


@dataclass
class QueueView:
    session: Optional[ClinicSession]
    queue: List[Tuple[QueueToken, Optional[ETA]]]
    current_token: int


@dataclass
class AppointmentETA:
    eta: ETA
    current_token: int


@dataclass
class _TokenContext:
    session: ClinicSession
    token: QueueToken
    tokens: List[QueueToken]
    outbox: Outbox


def _value(status: Any) -> str:
    return status.value if hasattr(status, "value") else str(status)


def token_payload(token: QueueToken) -> Dict[str, Any]:
    return token.model_dump(mode="json")


def session_payload(session: ClinicSession) -> Dict[str, Any]:
    data = session.model_dump(mode="json")
    data["is_paused"] = session.is_paused
    return data


def check_token_numbers(tokens: List[QueueToken]) -> None:
    """Raise ``ConsistencyError`` if non-fixed token numbers collide."""
    slots = partition(tokens)
    fixed = {slot.token_number for slot in slots if isinstance(slot, Fixed)}
    counts = Counter(slot.token_number for slot in slots if isinstance(slot, Movable))
    duplicated = sorted(number for number, seen in counts.items() if seen > 1)
    on_fixed = sorted(number for number in counts if number in fixed)
    if duplicated or on_fixed:
        raise ConsistencyError(
            "Queue operation would leave duplicate token numbers",
            {"duplicateTokens": duplicated, "tokensOnFixedSlots": on_fixed},
        )


class QueueController:
    def __init__(
        self,
        store: QueueStore,
        clock: Optional[Clock] = None,
        consultation_config: Optional[ConsultationConfig] = None,
        dispatcher: Optional[Dispatcher] = None,
        locks: Optional[SessionLocks] = None,
        max_recalls: int = config.MAX_RECALLS,
    ) -> None:
        self.store = store
        self.clock = clock or Clock()
        self.consultation_config = consultation_config or ConsultationConfig(store)
        self.dispatcher = dispatcher or Dispatcher(RedisEventPublisher(), RedisNotifier())
        self.locks = locks or SessionLocks()
        self.max_recalls = max_recalls

    # ----- plumbing -----

    @contextmanager
    def _operation(self, session_id: str) -> Iterator[Outbox]:
        outbox = Outbox()
        with self.locks.hold(session_id):
            with self.store.atomic():
                yield outbox
        self.dispatcher.flush(outbox)

    @contextmanager
    def _token_operation(self, appointment_id: str, provider_id: Optional[str]) -> Iterator[_TokenContext]:
        _, session = self._locate(appointment_id, provider_id)
        with self._operation(session.id) as outbox:
            token, session = self._locate(appointment_id, provider_id)
            tokens = self.store.find_tokens(session.id)
            token = next(t for t in tokens if t.id == token.id)
            yield _TokenContext(session, token, tokens, outbox)

    def _load_session(self, session_id: str, provider_id: Optional[str] = None) -> ClinicSession:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError("Session not found", {"sessionId": session_id})
        if provider_id is not None and session.provider_id != provider_id:
            raise UnauthorizedError("Unauthorized access to this session", {"sessionId": session_id})
        return session

    def _locate(self, appointment_id: str, provider_id: Optional[str]) -> Tuple[QueueToken, ClinicSession]:
        token = self.store.get_token(appointment_id)
        if token is None:
            raise NotFoundError("Appointment not found", {"appointmentId": appointment_id})
        session = self.store.get_session(token.session_id)
        if session is None:
            raise NotFoundError("Session not found", {"sessionId": token.session_id})
        if provider_id is not None and session.provider_id != provider_id:
            raise NotFoundError("Appointment not found", {"appointmentId": appointment_id})
        return token, session

    def _average(self, session: ClinicSession) -> int:
        return self.consultation_config.get_average_consultation_minutes(session.provider_id)

    @staticmethod
    def _ensure_open(session: ClinicSession) -> None:
        if session.is_terminal:
            raise InvalidStateError(
                f"Session is already {_value(session.status)}",
                {"sessionId": session.id, "status": _value(session.status)},
            )

    @staticmethod
    def _transition(session: ClinicSession, target: SessionStatus) -> None:
        if target not in SESSION_TRANSITIONS[SessionStatus(session.status)]:
            raise InvalidStateError(
                f"Cannot change session from {_value(session.status)} to {target.value}",
                {"sessionId": session.id, "status": _value(session.status)},
            )
        session.status = target

    @staticmethod
    def _close_pause(session: ClinicSession, now: datetime) -> int:
        """Record the pause in progress in ``pause_history``; returns its minutes."""
        if session.paused_at is None:
            return 0
        duration = max(0, int((now - session.paused_at).total_seconds() // 60))
        session.pause_history = list(session.pause_history or []) + [
            {
                "paused_at": session.paused_at.isoformat(),
                "resumed_at": now.isoformat(),
                "duration_minutes": duration,
            }
        ]
        session.paused_minutes_total = (session.paused_minutes_total or 0) + duration
        session.paused_at = None
        return duration

    def _complete_session(self, session: ClinicSession, now: datetime, outbox: Outbox) -> None:
        if session.status not in (SessionStatus.live, SessionStatus.paused):
            logger.info(
                "Session %s has no pending patients but is %s, leaving it",
                session.id,
                _value(session.status),
            )
            return
        if session.is_paused:
            self._close_pause(session, now)
        self._transition(session, SessionStatus.completed)
        session.ended_at = now
        self.store.record_event(session.id, EventType.ended, at=now)
        outbox.publish(
            session_topic(session.id),
            {"type": "session_completed", "session_id": session.id, "ended_at": now},
        )
        logger.info("Session %s completed: no pending patients left", session.id)

    @staticmethod
    def _remove_from_roster(session: ClinicSession, token: QueueToken) -> None:
        session.appointments = [a for a in (session.appointments or []) if a != token.id]

    @staticmethod
    def _add_to_roster(session: ClinicSession, token: QueueToken) -> None:
        roster = list(session.appointments or [])
        if token.id not in roster:
            roster.append(token.id)
            session.appointments = roster

    def _refresh_etas(
        self,
        session: ClinicSession,
        tokens: List[QueueToken],
        outbox: Outbox,
        include: Tuple[str, ...] = (),
    ) -> List[ETA]:
        """Recompute ETAs over ``tokens`` and queue them for publication."""
        etas = compute_etas(session, tokens, self._average(session), self.clock.now(), include)
        outbox.publish(
            session_topic(session.id),
            {
                "type": "queue_updated",
                "session_id": session.id,
                "status": _value(session.status),
                "current_token": session.current_token,
                "is_paused": session.is_paused,
                "etas": [eta.to_dict() for eta in etas],
            },
        )
        for eta in etas:
            outbox.publish(patient_topic(eta.patient_id), {"type": "token_eta_update", **eta.to_dict()})
        return etas

    def _save(self, session: ClinicSession, *tokens: QueueToken) -> None:
        """Write ``tokens`` and bump the session version, so writers in other processes conflict."""
        for token in tokens:
            self.store.save_token(token)
        self.store.save_session(session)

    # ----- session lifecycle -----

    def open_session(
        self,
        provider_id: str,
        day: date,
        session_start_time: str,
        session_end_time: str,
        max_tokens: Optional[int] = None,
    ) -> ClinicSession:
        """Get or create the provider's session for ``day``."""
        existing = self.store.find_session(
            provider_id,
            day,
            [SessionStatus.scheduled, SessionStatus.live, SessionStatus.paused, SessionStatus.completed],
        )
        if existing is not None:
            return existing

        start = parse_clock(session_start_time)
        end = parse_clock(session_end_time)
        if start is None or end is None or end <= start:
            raise InvalidStateError(
                f"Invalid session window: {session_start_time} to {session_end_time}",
                {"sessionStartTime": session_start_time, "sessionEndTime": session_end_time},
            )
        if max_tokens is None:
            average = self.consultation_config.get_average_consultation_minutes(provider_id)
            max_tokens = max(1, (end - start) // average)

        session = ClinicSession(
            provider_id=provider_id,
            date=day,
            session_start_time=session_start_time,
            session_end_time=session_end_time,
            max_tokens=max_tokens,
        )
        with self.store.atomic():
            self.store.add_session(session)
            self.store.record_event(session.id, EventType.opened, at=self.clock.now())
        logger.info(
            "Opened session %s for provider %s on %s (%s-%s, %s tokens)",
            session.id,
            provider_id,
            day,
            session_start_time,
            session_end_time,
            max_tokens,
        )
        return session

    def register_token(
        self,
        session_id: str,
        patient_id: str,
        patient_name: Optional[str] = None,
        patient_phone: Optional[str] = None,
        status: TokenStatus = TokenStatus.scheduled,
    ) -> QueueToken:
        """Append a booked patient to the end of the session's numbering."""
        with self._operation(session_id):
            session = self._load_session(session_id)
            self._ensure_open(session)
            number = self.store.next_token_number(session.id)
            token = self.store.add_token(
                session,
                patient_id,
                patient_name=patient_name,
                patient_phone=patient_phone,
                status=status,
                time=token_time(session.session_start_time, number, self._average(session)),
            )
        return token

    def start_session(self, session_id: str, provider_id: Optional[str] = None) -> ClinicSession:
        with self._operation(session_id) as outbox:
            session = self._load_session(session_id, provider_id)
            now = self.clock.now()
            self._transition(session, SessionStatus.live)
            session.started_at = session.started_at or now
            self._save(session)
            self.store.record_event(session.id, EventType.started, at=now)
            tokens = self.store.find_tokens(session.id)
            self._refresh_etas(session, tokens, outbox)
            for token in tokens:
                if token.is_pending:
                    outbox.notify(
                        token.patient_id,
                        "session_started",
                        {
                            "session_id": session.id,
                            "appointment_id": token.id,
                            "token_number": token.token_number,
                            "phone": token.patient_phone,
                        },
                    )
        logger.info("Session %s started", session_id)
        return session

    def end_session(self, session_id: str, provider_id: Optional[str] = None) -> ClinicSession:
        with self._operation(session_id) as outbox:
            session = self._load_session(session_id, provider_id)
            now = self.clock.now()
            if session.is_paused:
                self._close_pause(session, now)
            self._transition(session, SessionStatus.completed)
            session.ended_at = now
            self._save(session)
            self.store.record_event(session.id, EventType.ended, at=now)
            tokens = self.store.find_tokens(session.id)
            self._refresh_etas(session, tokens, outbox)
            for token in tokens:
                if token.is_pending:
                    outbox.notify(
                        token.patient_id,
                        "session_ended",
                        {"session_id": session.id, "appointment_id": token.id, "phone": token.patient_phone},
                    )
        logger.info("Session %s ended", session_id)
        return session

    def cancel_session(
        self, session_id: str, reason: Optional[str] = None, provider_id: Optional[str] = None
    ) -> ClinicSession:
        """Cancel the session and every appointment in it that was not completed."""
        reason = reason or "Session cancelled by doctor"
        with self._operation(session_id) as outbox:
            session = self._load_session(session_id, provider_id)
            now = self.clock.now()
            if session.is_paused:
                self._close_pause(session, now)
            self._transition(session, SessionStatus.cancelled)
            tokens = self.store.find_tokens(session.id)
            for token in tokens:
                if token.status == TokenStatus.completed:
                    continue
                was_cancelled = token.status == TokenStatus.cancelled
                token.status = TokenStatus.cancelled
                if token.queue_status != QueueStatus.no_show:
                    token.queue_status = QueueStatus.cancelled
                if not was_cancelled:
                    token.cancelled_at = now
                    token.cancelled_by = "doctor"
                    token.cancellation_reason = reason
                    outbox.notify(
                        token.patient_id,
                        "session_cancelled",
                        {
                            "session_id": session.id,
                            "appointment_id": token.id,
                            "reason": reason,
                            "can_reschedule": True,
                            "phone": token.patient_phone,
                        },
                    )
                self.store.save_token(token)
            session.appointments = []
            session.ended_at = now
            self._save(session)
            self.store.record_event(session.id, EventType.cancelled, detail=reason, at=now)
            outbox.publish(
                session_topic(session.id),
                {"type": "session_cancelled", "session_id": session.id, "reason": reason},
            )
        self.locks.forget(session_id)
        logger.info("Session %s cancelled: %s", session_id, reason)
        return session

    def auto_end_expired_sessions(self, now: Optional[datetime] = None) -> List[ClinicSession]:
        """Complete today's live sessions whose end time has passed.

        A session past its end time that still has pending patients keeps
        running; its ETAs are republished instead.  Returns the sessions that
        were completed.
        """
        now = now or self.clock.now()
        current = now.hour * 60 + now.minute
        ended = []
        for candidate in self.store.list_sessions(day=now.date(), statuses=[SessionStatus.live]):
            end = parse_clock(candidate.session_end_time)
            if end is None or current < end:
                continue
            try:
                session = self._end_if_idle(candidate.id, now)
            except SessionBusyError:
                logger.warning("Session %s is busy, leaving it for the next sweep", candidate.id)
                continue
            if session is not None:
                ended.append(session)
        if ended:
            logger.info("Auto-ended %s session(s) past their end time", len(ended))
        return ended

    def _end_if_idle(self, session_id: str, now: datetime) -> Optional[ClinicSession]:
        with self._operation(session_id) as outbox:
            session = self._load_session(session_id)
            if session.status != SessionStatus.live:
                return None
            tokens = self.store.find_tokens(session.id)
            pending = sum(1 for t in tokens if t.is_pending)
            if pending:
                logger.info(
                    "Session %s is past its end time with %s patient(s) pending, keeping it live",
                    session.id,
                    pending,
                )
                self._refresh_etas(session, tokens, outbox)
                return None
            self._complete_session(session, now, outbox)
            self._save(session)
        return session

    # ----- reads -----

    def get_session(self, session_id: str, provider_id: Optional[str] = None) -> ClinicSession:
        return self._load_session(session_id, provider_id)

    def list_sessions(
        self,
        provider_id: str,
        day: Optional[date] = None,
        status: Optional[SessionStatus] = None,
    ) -> List[ClinicSession]:
        """The provider's sessions, newest day first, after ending expired ones."""
        self.auto_end_expired_sessions()
        return self.store.list_sessions(
            provider_id=provider_id,
            day=day,
            statuses=[status] if status is not None else None,
        )

    def get_queue(self, provider_id: str, day: date) -> QueueView:
        session = self.store.find_session(
            provider_id,
            day,
            [SessionStatus.scheduled, SessionStatus.live, SessionStatus.paused],
        )
        if session is None:
            return QueueView(session=None, queue=[], current_token=0)
        tokens = self.store.find_tokens(session.id)
        etas = {
            eta.appointment_id: eta
            for eta in compute_etas(session, tokens, self._average(session), self.clock.now())
        }
        return QueueView(
            session=session,
            queue=[(token, etas.get(token.id)) for token in tokens],
            current_token=session.current_token,
        )

    def get_eta(self, appointment_id: str, provider_id: Optional[str] = None) -> AppointmentETA:
        token, session = self._locate(appointment_id, provider_id)
        if token.token_number is None or token.is_fixed:
            raise InvalidStateError(
                "Unable to calculate ETA for this appointment", {"appointmentId": appointment_id}
            )
        tokens = self.store.find_tokens(session.id)
        etas = compute_etas(
            session, tokens, self._average(session), self.clock.now(), include=(token.id,)
        )
        eta = next(e for e in etas if e.appointment_id == token.id)
        return AppointmentETA(eta=eta, current_token=session.current_token)

    # ----- queue operations -----

    def call_next(
        self,
        session_id: str,
        appointment_id: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> CallNextResult:
        with self._operation(session_id) as outbox:
            session = self._load_session(session_id, provider_id)
            self._ensure_open(session)
            if session.is_paused:
                raise InvalidStateError(
                    "Cannot call next patient while session is paused", {"sessionId": session.id}
                )
            tokens = self.store.find_tokens(session.id)

            if appointment_id is not None:
                token = next((t for t in tokens if t.id == appointment_id), None)
                if token is None:
                    raise NotFoundError("Appointment not found in this session", {"appointmentId": appointment_id})
                if token.status not in CALLABLE_STATUSES or token.token_number is None:
                    raise NoEligibleTokenError(
                        "Appointment already called or finished",
                        {"appointmentId": appointment_id, "status": _value(token.status)},
                    )
            else:
                token = next(
                    (
                        t
                        for t in tokens
                        if t.token_number is not None
                        and t.token_number > (session.current_token or 0)
                        and t.status in CALLABLE_STATUSES
                    ),
                    None,
                )
                if token is None:
                    raise NoEligibleTokenError(
                        "No more patients in queue",
                        {"sessionId": session.id, "currentToken": session.current_token},
                    )

            now = self.clock.now()
            if session.status == SessionStatus.scheduled:
                self._transition(session, SessionStatus.live)
                session.started_at = session.started_at or now
            session.current_token = token.token_number
            token.status = TokenStatus.called
            token.queue_status = QueueStatus.called
            token.called_at = now

            check_token_numbers(tokens)
            self._save(session, token)
            self.store.record_event(
                session.id, EventType.called, token_id=token.id, detail=f"token {token.token_number}", at=now
            )
            etas = self._refresh_etas(session, tokens, outbox)

            outbox.publish(
                session_topic(session.id),
                {"type": "queue_next_called", "appointment": token_payload(token), "current_token": session.current_token},
            )
            outbox.publish(
                patient_topic(token.patient_id),
                {"type": "token_called", "appointment_id": token.id, "token_number": token.token_number},
            )
            outbox.notify(
                token.patient_id,
                "token_called",
                {"appointment_id": token.id, "token_number": token.token_number, "phone": token.patient_phone},
            )

            upcoming = next(
                (
                    t
                    for t in tokens
                    if t.token_number is not None
                    and t.token_number > token.token_number
                    and t.status in CALLABLE_STATUSES
                ),
                None,
            )
            if upcoming is not None:
                upcoming_eta = next((e for e in etas if e.appointment_id == upcoming.id), None)
                if upcoming_eta is not None:
                    outbox.notify(
                        upcoming.patient_id,
                        "queue_next",
                        {
                            "appointment_id": upcoming.id,
                            "token_number": upcoming.token_number,
                            "estimated_wait_minutes": upcoming_eta.estimated_wait_minutes,
                            "estimated_call_time": upcoming_eta.estimated_call_time,
                            "patients_ahead": upcoming_eta.patients_ahead,
                            "phone": upcoming.patient_phone,
                        },
                    )

        logger.info("Session %s called token %s", session_id, token.token_number)
        return CallNextResult(session=session, appointment=token, etas=etas)

    def skip(self, appointment_id: str, provider_id: Optional[str] = None) -> SkipResult:
        """Move a patient to the back of the remaining queue.

        Everyone behind the patient moves up one place, stepping over the
        numbers held by completed and cancelled tokens, and the patient takes
        the highest number that is not fixed.  Repeating a skip on a patient
        who is already skipped and already last changes nothing.
        """
        with self._token_operation(appointment_id, provider_id) as ctx:
            session, token, tokens, outbox = ctx.session, ctx.token, ctx.tokens, ctx.outbox
            self._ensure_open(session)
            if (
                token.status in (TokenStatus.cancelled, TokenStatus.completed)
                or token.queue_status in (QueueStatus.no_show, QueueStatus.cancelled, QueueStatus.completed)
            ):
                raise InvalidStateError(
                    "Cannot skip a cancelled, completed or no-show appointment",
                    {"appointmentId": token.id, "status": _value(token.status)},
                )
            if token.token_number is None:
                raise InvalidStateError("Appointment has no token number", {"appointmentId": token.id})

            now = self.clock.now()
            average = self._average(session)
            original = token.token_number
            slots = partition(tokens)
            fixed = {slot.token_number for slot in slots if isinstance(slot, Fixed)}
            movable = [
                slot.token
                for slot in slots
                if isinstance(slot, Movable) and slot.token.id != token.id and slot.token_number > original
            ]

            target = max(slot.token_number for slot in slots)
            while target > original and target in fixed:
                target -= 1
            if target <= original:
                target = original

            if token.queue_status == QueueStatus.skipped and original == target:
                if token.status in ACTIVE_CALL_STATUSES:
                    token.status = TokenStatus.scheduled
                token.time = token_time(session.session_start_time, original, average)
                self._save(session, token)
                etas = compute_etas(session, tokens, average, now, include=(token.id,))
                logger.info("Token %s already skipped and last, nothing to move", original)
                return SkipResult(original, original, 0, token, etas)

            holder = next(
                (
                    t
                    for t in tokens
                    if t.token_number == session.current_token and not t.is_fixed and t.id != token.id
                ),
                None,
            )
            previous = {t.id: (t.token_number, t.time) for t in movable}

            claimed = set()
            for other in movable:
                candidate = other.token_number - 1
                while candidate >= original and (candidate in fixed or candidate in claimed):
                    candidate -= 1
                if original <= candidate < other.token_number:
                    claimed.add(candidate)
                    other.token_number = candidate
                    other.time = token_time(session.session_start_time, candidate, average)

            token.token_number = target
            token.queue_status = QueueStatus.skipped
            if token.status in ACTIVE_CALL_STATUSES:
                token.status = TokenStatus.scheduled
            token.time = token_time(session.session_start_time, target, average)

            if session.current_token == original:
                session.current_token = max(0, original - 1)
            elif holder is not None and holder.token_number != session.current_token:
                session.current_token = holder.token_number

            check_token_numbers(tokens)
            self._save(session, token, *movable)
            self.store.record_event(
                session.id, EventType.skipped, token_id=token.id, detail=f"{original} -> {target}", at=now
            )
            etas = self._refresh_etas(session, tokens, outbox, include=(token.id,))
            self._announce_skip(session, token, original, etas, outbox)

            for other in movable:
                old_number, old_time = previous[other.id]
                if (old_number, old_time) == (other.token_number, other.time):
                    continue
                change = {
                    "appointment_id": other.id,
                    "old_token_number": old_number,
                    "new_token_number": other.token_number,
                    "old_time": old_time,
                    "time": other.time,
                    "phone": other.patient_phone,
                }
                outbox.publish(patient_topic(other.patient_id), {"type": "token_reordered", **change})
                outbox.notify(other.patient_id, "token_reordered", change)

        logger.info(
            "Skipped token %s -> %s in session %s (%s shifted)",
            original,
            target,
            session.id,
            len(movable),
        )
        return SkipResult(original, target, len(movable), token, etas)

    def _announce_skip(
        self, session: ClinicSession, token: QueueToken, original: int, etas: List[ETA], outbox: Outbox
    ) -> None:
        eta = next((e for e in etas if e.appointment_id == token.id), None)
        payload = {
            "appointment_id": token.id,
            "old_token_number": original,
            "new_token_number": token.token_number,
            "time": token.time,
            "estimated_wait_minutes": eta.estimated_wait_minutes if eta else 0,
            "estimated_call_time": eta.estimated_call_time if eta else None,
            "phone": token.patient_phone,
        }
        outbox.publish(patient_topic(token.patient_id), {"type": "appointment_skipped", **payload})
        outbox.notify(token.patient_id, "appointment_skipped", payload)

    def move(self, appointment_id: str, direction: str, provider_id: Optional[str] = None) -> MoveResult:
        """Swap a waiting patient with the neighbour above or below them."""
        if direction not in ("up", "down"):
            raise InvalidStateError("Direction must be 'up' or 'down'", {"direction": direction})
        with self._token_operation(appointment_id, provider_id) as ctx:
            session, token, tokens, outbox = ctx.session, ctx.token, ctx.tokens, ctx.outbox
            self._ensure_open(session)
            line = [
                t
                for t in tokens
                if t.token_number is not None
                and t.status in (TokenStatus.scheduled, TokenStatus.confirmed)
            ]
            index = next((i for i, t in enumerate(line) if t.id == token.id), None)
            if index is None:
                raise InvalidStateError("Appointment is not waiting in the queue", {"appointmentId": token.id})
            neighbour_index = index - 1 if direction == "up" else index + 1
            if not 0 <= neighbour_index < len(line):
                return MoveResult(appointment=token, moved=False)

            neighbour = line[neighbour_index]
            average = self._average(session)
            token.token_number, neighbour.token_number = neighbour.token_number, token.token_number
            for t in (token, neighbour):
                t.time = token_time(session.session_start_time, t.token_number, average)

            check_token_numbers(tokens)
            self._save(session, token, neighbour)
            self.store.record_event(
                session.id, EventType.moved, token_id=token.id, detail=f"{direction} to {token.token_number}", at=self.clock.now()
            )
            self._refresh_etas(session, tokens, outbox)
            for t in (token, neighbour):
                outbox.publish(
                    patient_topic(t.patient_id),
                    {"type": "token_reordered", "appointment_id": t.id, "new_token_number": t.token_number, "time": t.time},
                )
        return MoveResult(appointment=token, moved=True, swapped_with=neighbour)

    def recall(self, appointment_id: str, provider_id: Optional[str] = None) -> RecallResult:
        """Put a skipped, no-show or unresponsive called patient back in line.

        The patient keeps their token number.  Every recall, whatever the
        reason, draws on the same budget of ``max_recalls``.
        """
        with self._token_operation(appointment_id, provider_id) as ctx:
            session, token, tokens, outbox = ctx.session, ctx.token, ctx.tokens, ctx.outbox
            recall_count = token.recall_count or 0
            if recall_count >= self.max_recalls:
                raise RecallLimitExceededError(
                    f"Patient has already been recalled maximum times ({self.max_recalls}). Cannot recall again.",
                    {"recallCount": recall_count, "maxRecalls": self.max_recalls},
                )
            self._ensure_open(session)
            recallable = (
                token.queue_status in (QueueStatus.skipped, QueueStatus.no_show)
                or token.status in ACTIVE_CALL_STATUSES
            )
            if not recallable:
                raise InvalidStateError(
                    "Can only recall skipped, no-show, or called patients who did not attend",
                    {"appointmentId": token.id, "status": _value(token.status)},
                )

            now = self.clock.now()
            token.recall_count = recall_count + 1
            token.status = TokenStatus.waiting
            token.queue_status = QueueStatus.waiting
            token.cancelled_at = None
            token.cancelled_by = None
            token.cancellation_reason = None
            self._add_to_roster(session, token)

            check_token_numbers(tokens)
            self._save(session, token)
            self.store.record_event(
                session.id, EventType.recalled, token_id=token.id, detail=f"recall {token.recall_count}", at=now
            )
            etas = self._refresh_etas(session, tokens, outbox, include=(token.id,))
            eta = next((e for e in etas if e.appointment_id == token.id), None)
            payload = {
                "appointment_id": token.id,
                "token_number": token.token_number,
                "recall_count": token.recall_count,
                "estimated_wait_minutes": eta.estimated_wait_minutes if eta else 0,
                "estimated_call_time": eta.estimated_call_time if eta else None,
                "phone": token.patient_phone,
            }
            outbox.publish(patient_topic(token.patient_id), {"type": "token_recalled", **payload})
            outbox.notify(token.patient_id, "token_recalled", payload)

        logger.info("Recalled token %s (%s/%s)", token.token_number, token.recall_count, self.max_recalls)
        return RecallResult(
            appointment=token,
            recall_count=token.recall_count,
            can_recall_again=token.recall_count < self.max_recalls,
            eta=eta,
        )

    def _apply_no_show(
        self, session: ClinicSession, token: QueueToken, tokens: List[QueueToken], now: datetime, outbox: Outbox
    ) -> None:
        token.status = TokenStatus.cancelled
        token.queue_status = QueueStatus.no_show
        token.cancelled_at = now
        token.cancelled_by = "doctor"
        token.cancellation_reason = NO_SHOW_REASON
        self._remove_from_roster(session, token)

        active = sum(1 for t in tokens if t.is_pending)
        session.current_token = max(0, active - 1)
        if active == 0:
            self._complete_session(session, now, outbox)

        self.store.record_event(
            session.id, EventType.no_show, token_id=token.id, detail=f"token {token.token_number}", at=now
        )
        payload = {
            "appointment_id": token.id,
            "reason": NO_SHOW_REASON,
            "cancelled_by": "doctor",
            "can_reschedule": True,
            "phone": token.patient_phone,
        }
        outbox.publish(patient_topic(token.patient_id), {"type": "appointment_cancelled", **payload})
        outbox.notify(token.patient_id, "appointment_no_show", payload)

    def mark_no_show(self, appointment_id: str, provider_id: Optional[str] = None) -> NoShowResult:
        with self._token_operation(appointment_id, provider_id) as ctx:
            session, token, tokens, outbox = ctx.session, ctx.token, ctx.tokens, ctx.outbox
            self._ensure_open(session)
            if token.status in (TokenStatus.completed, TokenStatus.cancelled):
                raise InvalidStateError(
                    "Cannot mark no-show for completed or cancelled appointment",
                    {"appointmentId": token.id, "status": _value(token.status)},
                )
            self._apply_no_show(session, token, tokens, self.clock.now(), outbox)
            check_token_numbers(tokens)
            self._save(session, token)
            self._refresh_etas(session, tokens, outbox)

        logger.info("Token %s marked no-show in session %s", token.token_number, session.id)
        return NoShowResult(appointment=token, can_reschedule=True)

    def update_queue_status(
        self, appointment_id: str, status: str, provider_id: Optional[str] = None
    ) -> QueueToken:
        try:
            target = QueueStatus(status)
        except ValueError:
            target = None
        if target not in UPDATABLE_QUEUE_STATUSES:
            raise InvalidStateError(
                "Invalid status",
                {"status": status, "allowed": sorted(s.value for s in UPDATABLE_QUEUE_STATUSES)},
            )

        with self._token_operation(appointment_id, provider_id) as ctx:
            session, token, tokens, outbox = ctx.session, ctx.token, ctx.tokens, ctx.outbox
            self._ensure_open(session)
            if token.is_fixed:
                raise InvalidStateError(
                    f"Appointment is already {_value(token.status)}",
                    {"appointmentId": token.id, "status": _value(token.status)},
                )
            now = self.clock.now()

            if target == QueueStatus.no_show:
                self._apply_no_show(session, token, tokens, now, outbox)
            elif target == QueueStatus.completed:
                token.status = TokenStatus.completed
                token.queue_status = QueueStatus.completed
                token.completed_at = now
                consultation = self.store.complete_consultation(token, session.provider_id, now)
                token.consultation_id = consultation.id
                self._remove_from_roster(session, token)
                self.store.record_event(
                    session.id, EventType.completed, token_id=token.id, detail=f"token {token.token_number}", at=now
                )
                payload = {"appointment_id": token.id, "consultation_id": consultation.id, "phone": token.patient_phone}
                outbox.publish(patient_topic(token.patient_id), {"type": "consultation_completed", **payload})
                outbox.notify(token.patient_id, "consultation_completed", payload)
            else:
                token.status = (
                    TokenStatus.waiting if target == QueueStatus.waiting else TokenStatus.in_consultation
                )
                token.queue_status = target
                self.store.record_event(
                    session.id, EventType.status_changed, token_id=token.id, detail=target.value, at=now
                )

            if target in (QueueStatus.completed, QueueStatus.no_show):
                if token.token_number is not None and session.current_token < token.token_number:
                    session.current_token = token.token_number
                if not session.is_terminal and not any(t.is_pending for t in tokens):
                    self._complete_session(session, now, outbox)

            check_token_numbers(tokens)
            self._save(session, token)
            self._refresh_etas(session, tokens, outbox)
            outbox.publish(
                patient_topic(token.patient_id),
                {"type": "appointment_status_updated", "appointment_id": token.id, "status": target.value},
            )

        logger.info("Token %s queue status -> %s", token.token_number, target.value)
        return token

    def pause(self, session_id: str, provider_id: Optional[str] = None) -> ClinicSession:
        with self._operation(session_id) as outbox:
            session = self._load_session(session_id, provider_id)
            if session.status != SessionStatus.live:
                raise InvalidStateError(
                    "Can only pause live sessions", {"sessionId": session.id, "status": _value(session.status)}
                )
            now = self.clock.now()
            self._transition(session, SessionStatus.paused)
            session.paused_at = now
            self._save(session)
            self.store.record_event(session.id, EventType.paused, at=now)
            self._refresh_etas(session, self.store.find_tokens(session.id), outbox)
            outbox.publish(
                session_topic(session.id), {"type": "session_paused", "session_id": session.id, "paused_at": now}
            )
            outbox.notify(session.provider_id, "session_paused", {"session_id": session.id, "paused_at": now})

        logger.info("Session %s paused", session_id)
        return session

    def resume(self, session_id: str, provider_id: Optional[str] = None) -> ClinicSession:
        with self._operation(session_id) as outbox:
            session = self._load_session(session_id, provider_id)
            if session.status != SessionStatus.paused or session.paused_at is None:
                raise InvalidStateError(
                    "Session is not paused", {"sessionId": session.id, "status": _value(session.status)}
                )
            now = self.clock.now()
            duration = self._close_pause(session, now)
            self._transition(session, SessionStatus.live)
            self._save(session)
            self.store.record_event(session.id, EventType.resumed, detail=f"{duration} min", at=now)
            self._refresh_etas(session, self.store.find_tokens(session.id), outbox)
            outbox.publish(
                session_topic(session.id),
                {"type": "session_resumed", "session_id": session.id, "paused_duration": duration},
            )
            outbox.notify(session.provider_id, "session_resumed", {"session_id": session.id, "paused_duration": duration})

        logger.info("Session %s resumed after %s min", session_id, duration)
        return session
