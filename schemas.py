"""Pydantic schemas for requests.

We define only the request bodies here.  Responses are built as plain dicts
from the controller's results in ``main.py``.
"""
from datetime import date as date_type
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class StatusUpdate(str, Enum):
    waiting = "waiting"
    in_consultation = "in-consultation"
    no_show = "no-show"
    completed = "completed"


class Direction(str, Enum):
    up = "up"
    down = "down"


class CallNextRequest(BaseModel):
    session_id: str = Field(alias="sessionId")
    appointment_id: Optional[str] = Field(default=None, alias="appointmentId")

    model_config = {"populate_by_name": True}


class SessionActionRequest(BaseModel):
    session_id: str = Field(alias="sessionId")

    model_config = {"populate_by_name": True}


class StatusUpdateRequest(BaseModel):
    status: StatusUpdate


class MoveRequest(BaseModel):
    direction: Direction


class OpenSessionRequest(BaseModel):
    date: date_type
    session_start_time: str = Field(alias="sessionStartTime")
    session_end_time: str = Field(alias="sessionEndTime")
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens", gt=0)

    model_config = {"populate_by_name": True}


class CancelSessionRequest(BaseModel):
    reason: Optional[str] = None


class RegisterTokenRequest(BaseModel):
    patient_id: str = Field(alias="patientId")
    patient_name: Optional[str] = Field(default=None, alias="patientName")
    patient_phone: Optional[str] = Field(default=None, alias="patientPhone")

    model_config = {"populate_by_name": True}
