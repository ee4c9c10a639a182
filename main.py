"""FastAPI application for the clinic queue scheduler.

The app exposes the doctor-facing queue operations (call next, skip, recall,
no-show, status updates, pause/resume), the session lifecycle, per-patient
ETAs and a Server-Sent Events stream of a session's live updates.  It reads
configuration from environment variables (see ``config.py``) and persists
through SQLModel.  Redis is optional and used only for event publishing and
notification queueing.

The caller's provider id arrives in the ``X-Provider-Id`` header; verifying
who the caller is happens upstream.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import date as date_type
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

import config
from errors import QueueError
from eta import ETA
from events import get_redis, session_topic
from models import SessionStatus
from schemas import (
    CallNextRequest,
    CancelSessionRequest,
    MoveRequest,
    OpenSessionRequest,
    RegisterTokenRequest,
    SessionActionRequest,
    StatusUpdateRequest,
)
from services import QueueController, session_payload, token_payload
from store import QueueStore, make_engine

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format=config.LOG_FORMAT,
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

engine = make_engine(config.DATABASE_URL)
store = QueueStore(engine)
controller = QueueController(store)

app = FastAPI(title="Clinic Queue Scheduler")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_controller() -> QueueController:
    return controller


def ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def eta_payload(eta: Optional[ETA]) -> Optional[Dict[str, Any]]:
    if eta is None:
        return None
    return {
        "appointmentId": eta.appointment_id,
        "patientId": eta.patient_id,
        "tokenNumber": eta.token_number,
        "patientsAhead": eta.patients_ahead,
        "estimatedWaitMinutes": eta.estimated_wait_minutes,
        "estimatedCallTime": eta.estimated_call_time.isoformat(),
        "projectedTime": eta.projected_time,
        "queueStatus": eta.queue_status,
        "isPaused": eta.is_paused,
    }


@app.on_event("startup")
def on_startup() -> None:
    store.create_tables()
    logger.info("Clinic queue scheduler started (database: %s)", engine.url.render_as_string())


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    if exc.retryable:
        logger.warning("%s %s busy: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.get("/health")
def health() -> Dict[str, Any]:
    return {"status": "ok", "redis": get_redis() is not None}


# ----- sessions -----


@app.get("/sessions")
def list_sessions(
    date: Optional[date_type] = None,
    status: Optional[SessionStatus] = None,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    """The caller's sessions, optionally for one day or in one status."""
    sessions = queue.list_sessions(x_provider_id, day=date, status=status)
    return ok({"items": [session_payload(s) for s in sessions], "total": len(sessions)})


@app.post("/sessions")
def open_session(
    request: OpenSessionRequest,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    """Get or create the caller's session for the given day."""
    session = queue.open_session(
        x_provider_id,
        request.date,
        request.session_start_time,
        request.session_end_time,
        request.max_tokens,
    )
    return ok({"session": session_payload(session)})


@app.post("/sessions/{session_id}/start")
def start_session(
    session_id: str,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    return ok({"session": session_payload(queue.start_session(session_id, provider_id=x_provider_id))})


@app.post("/sessions/{session_id}/end")
def end_session(
    session_id: str,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    return ok({"session": session_payload(queue.end_session(session_id, provider_id=x_provider_id))})


@app.post("/sessions/{session_id}/cancel")
def cancel_session(
    session_id: str,
    request: CancelSessionRequest,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    session = queue.cancel_session(session_id, reason=request.reason, provider_id=x_provider_id)
    return ok({"session": session_payload(session)})


@app.post("/sessions/{session_id}/tokens")
def register_token(
    session_id: str,
    request: RegisterTokenRequest,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    """Add a booked patient to the end of the session's queue."""
    queue.get_session(session_id, x_provider_id)
    token = queue.register_token(
        session_id,
        request.patient_id,
        patient_name=request.patient_name,
        patient_phone=request.patient_phone,
    )
    return ok({"appointment": token_payload(token)})


HEARTBEAT_SECONDS = 5.0
POLL_SECONDS = 0.1


def _heartbeat() -> str:
    return f"data: {json.dumps({'type': 'heartbeat'})}\n\n"


async def relay_session_events(redis_client, session_id: str, heartbeat_seconds: float = HEARTBEAT_SECONDS):
    """Relay a session's pub/sub channel as SSE frames, with periodic heartbeats.

    Polls without blocking so one open stream never stalls the event loop.
    """
    if not redis_client:
        # Without Redis there is nothing to relay; keep the stream alive
        while True:
            yield _heartbeat()
            await asyncio.sleep(heartbeat_seconds)
    pubsub = redis_client.pubsub()
    pubsub.subscribe(session_topic(session_id))
    loop = asyncio.get_running_loop()
    last_beat = loop.time()
    try:
        while True:
            message = pubsub.get_message(ignore_subscribe_messages=True, timeout=0)
            if message and message["type"] == "message":
                yield f"data: {message['data']}\n\n"
            elif loop.time() - last_beat >= heartbeat_seconds:
                last_beat = loop.time()
                yield _heartbeat()
            await asyncio.sleep(POLL_SECONDS)
    finally:
        pubsub.close()


@app.get("/sessions/{session_id}/events")
def session_events(
    session_id: str,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
):
    """Server-Sent Events stream of a session's queue updates."""
    queue.get_session(session_id, x_provider_id)
    return StreamingResponse(
        relay_session_events(get_redis(), session_id),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ----- queue -----


@app.get("/queue")
def get_queue(
    date: Optional[date_type] = None,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    """The caller's queue for ``date`` (today by default), each entry with its ETA."""
    day = date or queue.clock.now().date()
    view = queue.get_queue(x_provider_id, day)
    entries = []
    for token, eta in view.queue:
        entry = token_payload(token)
        entry["eta"] = eta_payload(eta)
        entries.append(entry)
    return ok(
        {
            "session": session_payload(view.session) if view.session else None,
            "queue": entries,
            "currentToken": view.current_token,
        }
    )


@app.post("/queue/call-next")
def call_next(
    request: CallNextRequest,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    result = queue.call_next(request.session_id, request.appointment_id, provider_id=x_provider_id)
    return ok(
        {
            "appointment": token_payload(result.appointment),
            "session": session_payload(result.session),
            "etas": [eta_payload(eta) for eta in result.etas],
        }
    )


@app.post("/queue/pause")
def pause(
    request: SessionActionRequest,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    return ok({"session": session_payload(queue.pause(request.session_id, provider_id=x_provider_id))})


@app.post("/queue/resume")
def resume(
    request: SessionActionRequest,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    return ok({"session": session_payload(queue.resume(request.session_id, provider_id=x_provider_id))})


@app.patch("/queue/{appointment_id}/skip")
def skip(
    appointment_id: str,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    result = queue.skip(appointment_id, provider_id=x_provider_id)
    return ok(
        {
            "oldTokenNumber": result.old_token_number,
            "newTokenNumber": result.new_token_number,
            "patientsShifted": result.patients_shifted,
            "appointment": token_payload(result.appointment),
        }
    )


@app.patch("/queue/{appointment_id}/recall")
def recall(
    appointment_id: str,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    result = queue.recall(appointment_id, provider_id=x_provider_id)
    return ok(
        {
            "appointment": token_payload(result.appointment),
            "recallCount": result.recall_count,
            "canRecallAgain": result.can_recall_again,
            "eta": eta_payload(result.eta),
        }
    )


@app.patch("/queue/{appointment_id}/no-show")
def no_show(
    appointment_id: str,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    result = queue.mark_no_show(appointment_id, provider_id=x_provider_id)
    return ok({"appointment": token_payload(result.appointment), "canReschedule": result.can_reschedule})


@app.patch("/queue/{appointment_id}/status")
def update_status(
    appointment_id: str,
    request: StatusUpdateRequest,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    token = queue.update_queue_status(appointment_id, request.status.value, provider_id=x_provider_id)
    return ok({"appointment": token_payload(token)})


@app.patch("/queue/{appointment_id}/move")
def move(
    appointment_id: str,
    request: MoveRequest,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    result = queue.move(appointment_id, request.direction.value, provider_id=x_provider_id)
    return ok(
        {
            "appointment": token_payload(result.appointment),
            "moved": result.moved,
            "swappedWith": token_payload(result.swapped_with) if result.swapped_with else None,
        }
    )


@app.get("/queue/{appointment_id}/eta")
def get_eta(
    appointment_id: str,
    x_provider_id: str = Header(...),
    queue: QueueController = Depends(get_controller),
) -> Dict[str, Any]:
    result = queue.get_eta(appointment_id, provider_id=x_provider_id)
    data = eta_payload(result.eta)
    data["currentToken"] = result.current_token
    return ok(data)
