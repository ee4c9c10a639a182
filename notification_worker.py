#!/usr/bin/env python3
"""
Queue Notification Worker

Drains the notification list that the queue controller pushes onto and
delivers each message to the patient through Twilio (SMS or WhatsApp,
depending on ``TWILIO_FROM_NUMBER``).  Run this as a separate background
process next to the API.

Usage:
    python notification_worker.py

Environment Variables:
    REDIS_URL - Redis connection URL (required)
    TWILIO_ACCOUNT_SID - Your Twilio Account SID
    TWILIO_AUTH_TOKEN - Your Twilio Auth Token
    TWILIO_FROM_NUMBER - Sender, e.g. whatsapp:+14155238886 or +15005550006
    NOTIFICATION_LIST - Redis list to drain (default: queue_notifications)

Without Twilio credentials the worker runs in simulation mode and only logs
the messages it would have sent.
"""

import json
import logging
import sys
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import redis
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

import config

logger = logging.getLogger(__name__)


def describe_wait(minutes: Optional[int]) -> str:
    """Human wording for a wait, e.g. ``"in 1 hour 5 minutes"``."""
    if not minutes or minutes <= 0:
        return "now"
    if minutes < 60:
        return f"in {minutes} minute{'s' if minutes != 1 else ''}"
    hours, rest = divmod(minutes, 60)
    text = f"in {hours} hour{'s' if hours != 1 else ''}"
    if rest:
        text += f" {rest} minute{'s' if rest != 1 else ''}"
    return text


def _call_time(payload: Dict[str, Any]) -> str:
    value = payload.get("estimated_call_time")
    if not value:
        return ""
    try:
        when = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return ""
    return f" (around {when.strftime('%I:%M %p').lstrip('0')})"


def _called(p: Dict[str, Any]) -> str:
    return f"It's your turn! Token #{p.get('token_number')}, please proceed to the doctor's room now."


def _queue_next(p: Dict[str, Any]) -> str:
    return (
        f"You're next in line with token #{p.get('token_number')}. "
        f"Expected {describe_wait(p.get('estimated_wait_minutes'))}{_call_time(p)}. Please be ready."
    )


def _skipped(p: Dict[str, Any]) -> str:
    return (
        f"You missed your turn, so your token moved from #{p.get('old_token_number')} "
        f"to #{p.get('new_token_number')}. New estimate: {describe_wait(p.get('estimated_wait_minutes'))}"
        f"{_call_time(p)}."
    )


def _reordered(p: Dict[str, Any]) -> str:
    message = f"Queue update: your token is now #{p.get('new_token_number')}"
    if p.get("time"):
        message += f", expected at {p['time']}"
    return message + "."


def _recalled(p: Dict[str, Any]) -> str:
    return (
        f"You're back in the queue with token #{p.get('token_number')}. "
        f"Expected {describe_wait(p.get('estimated_wait_minutes'))}{_call_time(p)}."
    )


def _no_show(p: Dict[str, Any]) -> str:
    message = "Your appointment was marked as missed because you were not present when called."
    if p.get("can_reschedule"):
        message += " You can book a new appointment at any time."
    return message


def _completed(p: Dict[str, Any]) -> str:
    return "Your consultation is complete. Thank you for visiting!"


def _session_started(p: Dict[str, Any]) -> str:
    return f"The doctor has started today's session. Your token is #{p.get('token_number')}."


def _session_ended(p: Dict[str, Any]) -> str:
    return "The doctor has ended today's session. Please contact the clinic to reschedule."


def _session_cancelled(p: Dict[str, Any]) -> str:
    message = "Today's session has been cancelled"
    if p.get("reason"):
        message += f": {p['reason']}"
    return message + ". You can book a new appointment at any time."


FORMATTERS: Dict[str, Callable[[Dict[str, Any]], str]] = {
    "token_called": _called,
    "queue_next": _queue_next,
    "appointment_skipped": _skipped,
    "token_reordered": _reordered,
    "token_recalled": _recalled,
    "appointment_no_show": _no_show,
    "consultation_completed": _completed,
    "session_started": _session_started,
    "session_ended": _session_ended,
    "session_cancelled": _session_cancelled,
}


def format_message(event_type: str, payload: Dict[str, Any]) -> Optional[str]:
    formatter = FORMATTERS.get(event_type)
    if formatter is None:
        return None
    return formatter(payload)


class NotificationWorker:
    def __init__(self, redis_client=None, twilio_client=None, list_name: str = config.NOTIFICATION_LIST):
        self.redis_client = redis_client
        self.twilio_client = twilio_client
        self.list_name = list_name

    def setup_connections(self) -> bool:
        """Initialize Redis and Twilio connections."""
        if self.redis_client is None:
            if not config.REDIS_URL:
                logger.error("REDIS_URL environment variable required")
                return False
            try:
                self.redis_client = redis.from_url(config.REDIS_URL, decode_responses=True)
                self.redis_client.ping()
                logger.info("Connected to Redis: %s", config.REDIS_URL)
            except redis.RedisError as e:
                logger.error("Failed to connect to Redis: %s", e)
                self.redis_client = None
                return False

        if self.twilio_client is None:
            if config.TWILIO_ACCOUNT_SID and config.TWILIO_AUTH_TOKEN:
                self.twilio_client = Client(config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN)
                logger.info("Connected to Twilio: %s", config.TWILIO_FROM_NUMBER)
            else:
                logger.warning("Twilio not configured - running in simulation mode")
        return True

    def send_message(self, to_number: str, body: str) -> bool:
        """Send one message via Twilio; returns whether it went out."""
        if not self.twilio_client:
            logger.info("[SIMULATION] Message to %s: %s", to_number, body[:50])
            return True

        if config.TWILIO_FROM_NUMBER.startswith("whatsapp:") and not to_number.startswith("whatsapp:"):
            to_number = f"whatsapp:{to_number}"
        try:
            message_obj = self.twilio_client.messages.create(
                from_=config.TWILIO_FROM_NUMBER,
                body=body,
                to=to_number,
            )
        except TwilioException as e:
            logger.error("Failed to send message to %s: %s", to_number, e)
            return False
        logger.info("Message sent to %s: %s", to_number, message_obj.sid)
        return True

    def process_one(self, raw: str) -> bool:
        """Deliver one queued notification; returns whether it was sent."""
        notification = json.loads(raw)
        event_type = notification.get("type")
        payload = notification.get("payload") or {}
        phone = payload.get("phone")
        body = format_message(event_type, payload)

        if body is None:
            logger.debug("No patient message for %s, dropping", event_type)
            return False
        if not phone:
            logger.warning("Notification %s for %s has no phone number", event_type, notification.get("user_id"))
            return False

        if self.send_message(phone, body):
            log_data = {
                "phone": phone[-4:],
                "type": event_type,
                "user_id": notification.get("user_id"),
                "sent_at": datetime.now().isoformat(),
                "status": "sent",
            }
            self.redis_client.lpush(config.NOTIFICATION_LOG_LIST, json.dumps(log_data))
            return True

        # Retry failed messages once
        if not notification.get("retry"):
            retry_notification = dict(notification, retry=True)
            self.redis_client.lpush(self.list_name, json.dumps(retry_notification))
            logger.info("Re-queued %s for %s", event_type, notification.get("user_id"))
        else:
            logger.error("Giving up on %s for %s after retry", event_type, notification.get("user_id"))
        return False

    def process_notifications(self) -> None:
        """Main worker loop to process notification queue."""
        logger.info("Notification worker started - waiting on %s", self.list_name)
        while True:
            try:
                item = self.redis_client.brpop(self.list_name, timeout=5)
                if not item:
                    continue
                self.process_one(item[1])
            except KeyboardInterrupt:
                logger.info("Worker stopped by user")
                break
            except (redis.RedisError, ValueError) as e:
                logger.error("Error processing notification: %s", e)
                time.sleep(1)


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format=config.LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    worker = NotificationWorker()
    if not worker.setup_connections():
        logger.error("Cannot start without Redis connection")
        sys.exit(1)
    worker.process_notifications()


if __name__ == "__main__":
    main()
