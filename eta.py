"""ETA engine.

Pure functions that rank a session's tokens and project, for every waiting
patient, how many patients are ahead, how long they will wait and the clock
time they are expected to be called.  Nothing here touches the store; callers
pass in the session, its tokens, the provider's average consultation length
and "now".

Projection rules:

* tokens are ranked by ascending token number;
* a token counts as "ahead" when its status is still pending and its queue
  status has not taken it out of line (skipped, no-show, completed,
  cancelled);
* ``estimated_wait_minutes`` is ``patients_ahead * average``;
* ``estimated_call_time`` is the session start plus every minute the session
  has spent paused (including a pause still in progress) plus
  ``patients_ahead * average``.
"""

from __future__ import annotations

import bisect
import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Collection, Dict, Iterable, List, Optional

import config
from models import (
    OUT_OF_LINE_QUEUE_STATUSES,
    PENDING_STATUSES,
    ClinicSession,
    QueueStatus,
    QueueToken,
    TokenStatus,
)

logger = logging.getLogger(__name__)

_CLOCK_12H = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*([AaPp][Mm])\s*$")
_CLOCK_24H = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*$")

WAITING_TOKEN_STATUSES = frozenset(
    {TokenStatus.scheduled, TokenStatus.confirmed, TokenStatus.waiting}
)


@dataclass
class ETA:
    appointment_id: str
    patient_id: str
    token_number: int
    patients_ahead: int
    estimated_wait_minutes: int
    estimated_call_time: datetime
    projected_time: Optional[str]
    queue_status: str
    is_paused: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["estimated_call_time"] = self.estimated_call_time.isoformat()
        return data


def parse_clock(value: Optional[str]) -> Optional[int]:
    """Minutes after midnight for ``"14:30"`` or ``"2:30 PM"``; None if unreadable."""
    if not value:
        return None
    match = _CLOCK_12H.match(value)
    if match:
        hours, minutes, period = int(match.group(1)), int(match.group(2)), match.group(3).upper()
        if not 1 <= hours <= 12 or minutes > 59:
            return None
        if period == "PM" and hours != 12:
            hours += 12
        elif period == "AM" and hours == 12:
            hours = 0
        return hours * 60 + minutes
    match = _CLOCK_24H.match(value)
    if match:
        hours, minutes = int(match.group(1)), int(match.group(2))
        if hours > 23 or minutes > 59:
            return None
        return hours * 60 + minutes
    return None


def format_clock(minutes: int) -> str:
    """Render minutes after midnight as ``h:MM AM``."""
    hours, mins = divmod(int(minutes) % (24 * 60), 60)
    period = "PM" if hours >= 12 else "AM"
    display = hours % 12 or 12
    return f"{display}:{mins:02d} {period}"


def token_time(session_start_time: Optional[str], token_number: int, average_minutes: int) -> Optional[str]:
    """Displayable slot time of ``token_number`` within the session."""
    start = parse_clock(session_start_time)
    if start is None or token_number is None:
        return None
    return format_clock(start + (token_number - 1) * average_minutes)


def session_start(session: ClinicSession) -> Optional[datetime]:
    minutes = parse_clock(session.session_start_time)
    if minutes is None:
        logger.warning(
            "Session %s has an unreadable start time %r", session.id, session.session_start_time
        )
        return None
    return datetime(session.date.year, session.date.month, session.date.day) + timedelta(minutes=minutes)


def paused_offset(session: ClinicSession, now: datetime) -> timedelta:
    """Time the session has spent paused, counting a pause still in progress."""
    total = timedelta()
    for entry in session.pause_history or []:
        paused_at = _as_datetime(entry.get("paused_at"))
        resumed_at = _as_datetime(entry.get("resumed_at"))
        if paused_at and resumed_at and resumed_at > paused_at:
            total += resumed_at - paused_at
    if session.is_paused and session.paused_at is not None and now > session.paused_at:
        total += now - session.paused_at
    return total


def counts_ahead(token: QueueToken) -> bool:
    return token.status in PENDING_STATUSES and token.queue_status not in OUT_OF_LINE_QUEUE_STATUSES


def is_waiting(token: QueueToken) -> bool:
    return token.queue_status == QueueStatus.waiting and token.status in WAITING_TOKEN_STATUSES


def compute_etas(
    session: ClinicSession,
    tokens: Iterable[QueueToken],
    average_minutes: Optional[int],
    now: datetime,
    include: Collection[str] = (),
) -> List[ETA]:
    """One ETA per waiting token, plus any token whose id is in ``include``."""
    average = average_minutes or config.DEFAULT_CONSULTATION_MINUTES
    numbered = [t for t in tokens if isinstance(t.token_number, int)]
    numbered.sort(key=lambda t: t.token_number)
    ahead_numbers = [t.token_number for t in numbered if counts_ahead(t)]

    anchor = session_start(session) or session.started_at or now
    anchor += paused_offset(session, now)

    etas: List[ETA] = []
    for token in numbered:
        if not (is_waiting(token) or token.id in include):
            continue
        ahead = bisect.bisect_left(ahead_numbers, token.token_number)
        etas.append(
            ETA(
                appointment_id=token.id,
                patient_id=token.patient_id,
                token_number=token.token_number,
                patients_ahead=ahead,
                estimated_wait_minutes=ahead * average,
                estimated_call_time=anchor + timedelta(minutes=ahead * average),
                projected_time=token.time,
                queue_status=_value(token.queue_status),
                is_paused=session.is_paused,
            )
        )
    return etas


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


def _value(status: Any) -> str:
    return status.value if hasattr(status, "value") else str(status)
